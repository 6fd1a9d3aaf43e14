from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError, TelegramBadRequest
from aiogram.types import InlineKeyboardMarkup

from capadmin.core.errors import DeliveryError

logger = logging.getLogger(__name__)


class EditOutcome(str, Enum):
    EDITED = "edited"
    UNCHANGED = "unchanged"


@dataclass
class DeliveryResult:
    chat_id: int
    ok: bool
    action: str
    message_id: int | None = None
    error: str | None = None


def _is_not_modified(exc: TelegramAPIError) -> bool:
    return "message is not modified" in str(exc).lower()


class TelegramGateway:
    def __init__(self, bot: Bot) -> None:
        self.bot = bot

    async def send(self, chat_id: int, text: str, keyboard: InlineKeyboardMarkup | None = None) -> int:
        try:
            message = await self.bot.send_message(
                chat_id=chat_id,
                text=text,
                parse_mode="HTML",
                reply_markup=keyboard,
                disable_web_page_preview=True,
            )
        except TelegramAPIError as exc:
            raise DeliveryError(f"send to {chat_id} failed: {exc}") from exc
        return message.message_id

    async def edit(
        self, chat_id: int, message_id: int, text: str, keyboard: InlineKeyboardMarkup | None = None
    ) -> EditOutcome:
        try:
            await self.bot.edit_message_text(
                chat_id=chat_id,
                message_id=message_id,
                text=text,
                parse_mode="HTML",
                reply_markup=keyboard,
                disable_web_page_preview=True,
            )
        except TelegramBadRequest as exc:
            if _is_not_modified(exc):
                return EditOutcome.UNCHANGED
            raise DeliveryError(f"edit of {message_id} in {chat_id} failed: {exc}") from exc
        except TelegramAPIError as exc:
            raise DeliveryError(f"edit of {message_id} in {chat_id} failed: {exc}") from exc
        return EditOutcome.EDITED

    async def delete(self, chat_id: int, message_id: int) -> bool:
        try:
            await self.bot.delete_message(chat_id=chat_id, message_id=message_id)
        except TelegramAPIError as exc:
            logger.warning(
                "message_delete_failed",
                extra={"event": "message_delete_failed", "chat_id": chat_id, "error": str(exc)},
            )
            return False
        return True

    async def delete_many(self, chat_id: int, message_ids: list[int]) -> int:
        deleted = 0
        for message_id in message_ids:
            if await self.delete(chat_id, message_id):
                deleted += 1
        return deleted
