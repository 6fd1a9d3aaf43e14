from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class SubscriptionService:
    """Allow-listed chats and the subset currently receiving broadcasts."""

    def __init__(self, allowed_chat_ids: list[int]) -> None:
        self.allowed = frozenset(allowed_chat_ids)
        self._subscribed: set[int] = set(allowed_chat_ids)

    def is_allowed(self, chat_id: int) -> bool:
        return chat_id in self.allowed

    def chat_ids(self) -> set[int]:
        return set(self._subscribed)

    def subscribe(self, chat_id: int) -> bool:
        if not self.is_allowed(chat_id) or chat_id in self._subscribed:
            return False
        self._subscribed.add(chat_id)
        logger.info("chat_subscribed", extra={"event": "chat_subscribed", "chat_id": chat_id})
        return True

    def unsubscribe(self, chat_id: int) -> bool:
        if chat_id not in self._subscribed:
            return False
        self._subscribed.discard(chat_id)
        logger.info("chat_unsubscribed", extra={"event": "chat_unsubscribed", "chat_id": chat_id})
        return True
