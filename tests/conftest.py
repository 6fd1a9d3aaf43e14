from __future__ import annotations

import asyncio

import pytest

from capadmin.core.errors import DeliveryError, LedgerError
from capadmin.core.fmt import ton_to_nano
from capadmin.core.models import FAMILIES, ItemFamily
from capadmin.services.delivery import EditOutcome
from capadmin.services.item_store import ItemStore, build_stores
from capadmin.services.lifecycle import LifecycleService
from capadmin.services.subscriptions import SubscriptionService


class DummyGateway:
    def __init__(self) -> None:
        self.sent: list[tuple[int, int, str, object]] = []
        self.edits: list[tuple[int, int, str, object]] = []
        self.deleted: list[tuple[int, int]] = []
        self.fail_send: set[int] = set()
        self.fail_edit: set[int] = set()
        self._next_id = 1000

    async def send(self, chat_id: int, text: str, keyboard=None) -> int:
        if chat_id in self.fail_send:
            raise DeliveryError(f"send to {chat_id} failed: bot was blocked by the user")
        self._next_id += 1
        self.sent.append((chat_id, self._next_id, text, keyboard))
        return self._next_id

    async def edit(self, chat_id: int, message_id: int, text: str, keyboard=None) -> EditOutcome:
        if chat_id in self.fail_edit:
            raise DeliveryError(f"edit of {message_id} in {chat_id} failed: message to edit not found")
        self.edits.append((chat_id, message_id, text, keyboard))
        return EditOutcome.EDITED

    async def delete(self, chat_id: int, message_id: int) -> bool:
        self.deleted.append((chat_id, message_id))
        return True

    async def delete_many(self, chat_id: int, message_ids: list[int]) -> int:
        for message_id in message_ids:
            await self.delete(chat_id, message_id)
        return len(message_ids)


class DummyLedger:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.fail_on: set[str] = set()
        self.delay = 0.0
        self._next_id = 500

    async def _record(self, name: str, **kwargs) -> dict:
        if self.delay:
            await asyncio.sleep(self.delay)
        if name in self.fail_on:
            raise LedgerError(f"{name} failed with HTTP 500", status_code=500, body="boom")
        self.calls.append((name, kwargs))
        self._next_id += 1
        if name == "cap":
            return {"success": True, "data": {"CapStrCapID": self._next_id, "SellTransaction": None}}
        return {"success": True, "data": {"TxID": self._next_id}}

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    async def create_buy_transaction(self, item) -> dict:
        return await self._record("buy", key=item.external_key, amount=ton_to_nano(item.fields.buy_price_ton))

    async def create_sell_transaction(self, item) -> dict:
        return await self._record("sell", key=item.external_key, amount=ton_to_nano(item.fields.sale_price_ton))

    async def create_cap_record(self, item, state, buy_transaction_id) -> dict:
        return await self._record("cap", key=item.external_key, buy_transaction_id=buy_transaction_id)

    async def mark_sold(self, gift_numeric_id, sold_for_nano, sell_date, sell_transaction_id) -> dict:
        return await self._record(
            "mark_sold",
            gift=gift_numeric_id,
            sold_for=sold_for_nano,
            sell_date=sell_date,
            sell_transaction_id=sell_transaction_id,
        )

    async def create_transaction(self, kind, **kwargs) -> dict:
        return await self._record(f"tx:{kind.value}", **kwargs)

    async def patch_cap_sell_transaction(self, cap_id, sell_transaction_id, sell_date) -> dict:
        return await self._record("patch_cap", cap_id=cap_id, sell_transaction_id=sell_transaction_id, sell_date=sell_date)


def make_payload(key: str = "EQ-cap-x", number: int = 7, family: ItemFamily = ItemFamily.CAP, **overrides) -> dict:
    payload = {
        "offchainGetgemsAddress": key,
        "onchainAddress": None,
        "name": "Durov's Cap",
        FAMILIES[family].number_key: number,
        "giftId": number,
        "saleType": "auction",
        "buyPriceTon": "5",
        "salePriceTon": None,
        "detectedAt": 1_699_999_000_000,
        "buyTime": 1_699_999_999_000,
        "getGemsUrl": "https://getgems.io/collection/caps/x",
        "txHash": "c0ffee",
        "fromWalletAddress": "EQseller",
        "toWalletAddress": "EQDp00TOpFDpJ0IvBgIn6rOUiCQeNZQSAPzI7kNPT65pjyr2",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def cap_store(tmp_path) -> ItemStore:
    return ItemStore(FAMILIES[ItemFamily.CAP], tmp_path)


@pytest.fixture
def stores(tmp_path) -> dict[ItemFamily, ItemStore]:
    return build_stores(tmp_path)


@pytest.fixture
def gateway() -> DummyGateway:
    return DummyGateway()


@pytest.fixture
def ledger() -> DummyLedger:
    return DummyLedger()


@pytest.fixture
def subscriptions() -> SubscriptionService:
    return SubscriptionService([-1001, -1002])


@pytest.fixture
def lifecycle(stores, ledger, gateway, subscriptions) -> LifecycleService:
    return LifecycleService(stores, ledger, gateway, subscriptions)


@pytest.fixture
def payload_factory():
    return make_payload
