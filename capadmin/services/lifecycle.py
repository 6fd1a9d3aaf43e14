from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field

from capadmin.adapters.ledger import LedgerClient
from capadmin.bot.templates import render
from capadmin.core.errors import DeliveryError, ItemNotFoundError, LedgerError, ValidationError
from capadmin.core.fmt import as_int, positive_nano, ton_to_nano
from capadmin.core.models import (
    EDITABLE_FIELDS,
    NUMERIC_EDIT_FIELDS,
    TX_ID_KEYS,
    AnnouncedItem,
    ItemFamily,
    LedgerRecord,
    LifecycleState,
    record_identifier,
)
from capadmin.services.delivery import DeliveryResult, EditOutcome, TelegramGateway
from capadmin.services.item_store import ItemStore
from capadmin.services.subscriptions import SubscriptionService

logger = logging.getLogger(__name__)

_ITEM_LOCKS_MAX = 1000

_SOLD_PENDING = frozenset(
    {LifecycleState.SOLD_PUBLISHED, LifecycleState.SOLD_REJECTED, LifecycleState.APPROVED_SOLD}
)


def approve_target(state: LifecycleState, has_sale_data: bool) -> LifecycleState | None:
    """Next state for Approve, or None when approving is not allowed."""
    if state == LifecycleState.PUBLISHED:
        return LifecycleState.APPROVED
    if state in (LifecycleState.APPROVED, LifecycleState.REJECTED):
        if has_sale_data:
            return LifecycleState.APPROVED_SOLD
        return LifecycleState.APPROVED if state == LifecycleState.APPROVED else None
    if state in _SOLD_PENDING or state == LifecycleState.SOLD_APPROVED:
        return LifecycleState.SOLD_APPROVED
    return None


def reject_target(state: LifecycleState) -> LifecycleState:
    if state in (LifecycleState.SOLD_PUBLISHED, LifecycleState.SOLD_APPROVED, LifecycleState.APPROVED_SOLD):
        return LifecycleState.SOLD_REJECTED
    return LifecycleState.REJECTED


@dataclass
class TransitionResult:
    item: AnnouncedItem
    previous: LifecycleState
    changed: bool
    deliveries: list[DeliveryResult] = field(default_factory=list)

    @property
    def failed_chats(self) -> list[int]:
        return [d.chat_id for d in self.deliveries if not d.ok]


class LifecycleService:
    def __init__(
        self,
        stores: dict[ItemFamily, ItemStore],
        ledger: LedgerClient,
        gateway: TelegramGateway,
        subscriptions: SubscriptionService,
    ) -> None:
        self.stores = stores
        self.ledger = ledger
        self.gateway = gateway
        self.subscriptions = subscriptions
        self._locks: dict[str, asyncio.Lock] = {}

    def item_lock(self, key: str) -> asyncio.Lock:
        """Serializes transitions, edits and sale merges of one item."""
        lock = self._locks.get(key)
        if lock is None:
            if len(self._locks) >= _ITEM_LOCKS_MAX:
                idle = [k for k, v in list(self._locks.items()) if not v.locked()]
                for k in idle[: len(idle) // 2 + 1]:
                    self._locks.pop(k, None)
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def store_for(self, item: AnnouncedItem) -> ItemStore:
        return self.stores[item.family]

    def find(self, key: str) -> AnnouncedItem:
        for store in self.stores.values():
            item = store.get(key)
            if item is not None:
                return item
        raise ItemNotFoundError(f"No announced item with address {key}")

    def find_by_number(self, number: int, family: ItemFamily = ItemFamily.CAP) -> AnnouncedItem:
        item = self.stores[family].find_by_numeric_id(number)
        if item is None:
            raise ItemNotFoundError(f"Could not find an announced {family.value} with gift number {number}.")
        return item

    # ledger records, each created at most once per item

    async def _ensure_buy_transaction(self, item: AnnouncedItem) -> LedgerRecord:
        if item.buy_transaction_record is None:
            item.buy_transaction_record = await self.ledger.create_buy_transaction(item)
            self.store_for(item).save()
        return item.buy_transaction_record

    async def _ensure_cap_record(self, item: AnnouncedItem, buy_record: LedgerRecord) -> LedgerRecord:
        if item.cap_record is None:
            buy_tx_id = record_identifier(buy_record, TX_ID_KEYS)
            if buy_tx_id is None:
                raise ValidationError("Unable to determine the buy transaction id from the backend response.")
            item.cap_record = await self.ledger.create_cap_record(item, LifecycleState.APPROVED, buy_tx_id)
            self.store_for(item).save()
        return item.cap_record

    async def _ensure_sell_transaction(self, item: AnnouncedItem) -> LedgerRecord:
        if item.sell_transaction_record is None:
            item.sell_transaction_record = await self.ledger.create_sell_transaction(item)
            self.store_for(item).save()
        return item.sell_transaction_record

    async def _approve_listing(self, item: AnnouncedItem) -> None:
        if item.gift_numeric_id is None:
            raise ValidationError("Unable to resolve giftId for this item.")
        buy_record = await self._ensure_buy_transaction(item)
        await self._ensure_cap_record(item, buy_record)

    async def _approve_sale(self, item: AnnouncedItem) -> None:
        f = item.fields
        if positive_nano(ton_to_nano(f.sale_price_ton)) is None or f.sale_time is None:
            raise ValidationError("Sale price and sale time are required before approving a sale.")
        number = item.gift_numeric_id
        if number is None:
            raise ValidationError("Unable to resolve giftId for this item.")
        sell_record = await self._ensure_sell_transaction(item)
        sell_tx_id = record_identifier(sell_record, TX_ID_KEYS)
        if sell_tx_id is None:
            raise ValidationError("Unable to determine the sell transaction id from the backend response.")
        await self.ledger.mark_sold(number, ton_to_nano(f.sale_price_ton), f.sale_time, sell_tx_id)

    async def approve(self, item: AnnouncedItem) -> TransitionResult:
        if not item.profile.actionable:
            raise ValidationError(f"{item.profile.noun} announcements cannot be approved.")
        async with self.item_lock(item.external_key):
            return await self._approve_locked(item)

    async def _approve_locked(self, item: AnnouncedItem) -> TransitionResult:
        previous = item.state
        target = approve_target(previous, item.has_sale_data())
        if target is None:
            raise ValidationError(f"Cannot approve an item in state {previous.value}.")
        if target == previous and previous != LifecycleState.SOLD_APPROVED:
            logger.info(
                "approve_ignored",
                extra={"event": "approve_ignored", "key": item.external_key, "state": previous.value},
            )
            return TransitionResult(item=item, previous=previous, changed=False)

        try:
            if previous == LifecycleState.PUBLISHED:
                await self._approve_listing(item)
            elif previous in _SOLD_PENDING:
                await self._approve_sale(item)
        except LedgerError as exc:
            logger.exception(
                "approve_ledger_failed",
                extra={"event": "approve_ledger_failed", "key": item.external_key, "state": previous.value, "error": str(exc)},
            )
            raise

        return await self._commit(item, previous, target)

    async def reject(self, item: AnnouncedItem) -> TransitionResult:
        if not item.profile.actionable:
            raise ValidationError(f"{item.profile.noun} announcements cannot be rejected.")
        async with self.item_lock(item.external_key):
            previous = item.state
            return await self._commit(item, previous, reject_target(previous))

    async def _commit(self, item: AnnouncedItem, previous: LifecycleState, target: LifecycleState) -> TransitionResult:
        item.state = target
        self.store_for(item).save()
        logger.info(
            "item_transition",
            extra={"event": "item_transition", "family": item.family.value, "key": item.external_key, "state": target.value},
        )
        deliveries = await self.refresh(item)
        return TransitionResult(item=item, previous=previous, changed=previous != target, deliveries=deliveries)

    async def apply_edit(self, item: AnnouncedItem, field_index: int, raw_value: str) -> list[DeliveryResult]:
        if not 0 <= field_index < len(EDITABLE_FIELDS):
            raise ValidationError("Unknown field selection.")
        label, attr = EDITABLE_FIELDS[field_index]
        text = (raw_value or "").strip()
        if not text:
            raise ValidationError(f"{label} cannot be empty.")
        value: object = text
        if attr in NUMERIC_EDIT_FIELDS:
            value = as_int(text)
            if value is None:
                raise ValidationError(f"{label} must be a number of epoch milliseconds.")
        async with self.item_lock(item.external_key):
            fields = dataclasses.replace(item.fields, **{attr: value})
            self.store_for(item).update_fields(item.external_key, fields)
            logger.info(
                "item_edited",
                extra={"event": "item_edited", "family": item.family.value, "key": item.external_key, "state": attr},
            )
            return await self.refresh(item)

    async def refresh(self, item: AnnouncedItem) -> list[DeliveryResult]:
        """Show the current rendering in every known and subscribed chat: edit in place, else resend."""
        text, keyboard = render(item)
        results: list[DeliveryResult] = []
        for chat_id in item.target_chats(self.subscriptions.chat_ids()):
            message_id = item.message_ids.get(chat_id)
            if message_id is not None:
                try:
                    outcome = await self.gateway.edit(chat_id, message_id, text, keyboard)
                except DeliveryError as exc:
                    logger.warning(
                        "message_edit_failed",
                        extra={"event": "message_edit_failed", "chat_id": chat_id, "key": item.external_key, "error": str(exc)},
                    )
                else:
                    action = "edited" if outcome == EditOutcome.EDITED else "unchanged"
                    results.append(DeliveryResult(chat_id=chat_id, ok=True, action=action, message_id=message_id))
                    continue
            try:
                new_id = await self.gateway.send(chat_id, text, keyboard)
            except DeliveryError as exc:
                logger.warning(
                    "message_send_failed",
                    extra={"event": "message_send_failed", "chat_id": chat_id, "key": item.external_key, "error": str(exc)},
                )
                results.append(DeliveryResult(chat_id=chat_id, ok=False, action="failed", error=str(exc)))
                continue
            item.message_ids[chat_id] = new_id
            item.published_chat_ids.add(chat_id)
            results.append(DeliveryResult(chat_id=chat_id, ok=True, action="sent", message_id=new_id))
        self.store_for(item).save()
        return results

    async def broadcast_new(self, item: AnnouncedItem) -> list[DeliveryResult]:
        return await self.refresh(item)
