from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from capadmin.adapters.ledger import LedgerClient
from capadmin.adapters.ton import TonOracle
from capadmin.core.errors import ItemNotFoundError, ValidationError
from capadmin.core.fmt import as_int, positive_nano, ton_to_nano
from capadmin.core.models import (
    CAP_ID_KEYS,
    TX_ID_KEYS,
    AnnouncedItem,
    ItemFamily,
    TransactionKind,
    numeric_identifier,
    record_identifier,
)
from capadmin.services.item_store import ItemStore

logger = logging.getLogger(__name__)

_GIFT_NUMBER_KEYS = ("giftNumber", "giftNo", "gift_num", "gift", "GiftNumber", "capNumber")

# first non-empty alias wins
_SELL_BUY_BURN_ALIASES = {
    "sell": ("sellTxHash", "capSellTxHash", "pepeSellTxHash", "pepeSellTxhash", "pepeselltxhash"),
    "buy": ("tokenBuyTxHash", "buyTxHash", "capstrBuyTxHash", "pepestrBuyTxHash", "pepeStrBuyTxHash", "pepeBuyTxHash"),
    "burn": (
        "tokenBurnTxHash",
        "burnTxHash",
        "capstrBurnTxHash",
        "pepestrBurnTxHash",
        "pepeStrBurnTxHash",
        "pepeBurnTxHash",
    ),
    "value": ("tokenValue", "capstrValue", "pepestrValue", "pepeStrValue", "value", "amount"),
}

_BATCH_HASH_KEYS = {
    TransactionKind.BUY: ("buyTxHashes", "txHashes", "hashes"),
    TransactionKind.SELL: ("sellTxHashes", "txHashes", "hashes"),
    TransactionKind.BURN: ("burnTxHashes", "txHashes", "hashes"),
}


def _first(payload: dict, keys: tuple[str, ...]):
    for key in keys:
        value = payload.get(key)
        if value is not None and str(value).strip():
            return value
    return None


def normalize_hashes(value) -> list[str]:
    if not isinstance(value, list):
        return []
    out: list[str] = []
    for entry in value:
        if entry is None:
            continue
        text = str(entry).strip()
        if text and text not in out:
            out.append(text)
    return out


@dataclass
class SellBuyBurnResult:
    label: str
    token: str
    gift_id: int
    sell_tx_hash: str
    buy_tx_hash: str
    burn_tx_hash: str
    token_amount_nano: str
    sell_transaction_id: str | int | None = None
    cap_id: int | None = None


@dataclass
class BatchEntry:
    tx_hash: str
    amount_nano: str
    transaction_id: str | int | None = None


@dataclass
class BatchResult:
    label: str
    token: str
    kind: TransactionKind
    entries: list[BatchEntry] = field(default_factory=list)

    @property
    def total_nano(self) -> int:
        return sum(int(e.amount_nano) for e in self.entries)


class RegistrationService:
    def __init__(self, stores: dict[ItemFamily, ItemStore], ledger: LedgerClient, oracle: TonOracle) -> None:
        self.stores = stores
        self.ledger = ledger
        self.oracle = oracle

    def _resolve_item(self, family: ItemFamily, payload: dict) -> tuple[AnnouncedItem, int]:
        number = as_int(_first(payload, _GIFT_NUMBER_KEYS))
        if number is None:
            raise ValidationError("giftNumber is required and must be numeric.")
        store = self.stores[family]
        item = store.find_by_numeric_id(number)
        if item is None:
            raise ItemNotFoundError(f"Could not find an announced {store.profile.noun} with gift number {number}.")
        gift_id = item.gift_numeric_id
        if gift_id is None:
            raise ValidationError("Unable to resolve giftId for this item.")
        return item, gift_id

    async def register_sell_buy_burn(self, family: ItemFamily, payload: dict) -> SellBuyBurnResult:
        values = {name: _first(payload, keys) for name, keys in _SELL_BUY_BURN_ALIASES.items()}
        missing = [name for name, value in values.items() if value is None]
        if _first(payload, _GIFT_NUMBER_KEYS) is None:
            missing.append("giftNumber")
        if missing:
            raise ValidationError(f"Missing required field(s): {', '.join(missing)}.")
        token_amount = positive_nano(ton_to_nano(values["value"]))
        if token_amount is None:
            raise ValidationError("tokenValue must be a positive number.")

        item, gift_id = self._resolve_item(family, payload)
        store = self.stores[family]
        profile = store.profile
        if family == ItemFamily.CAP and item.cap_record is None:
            raise ValidationError(
                "CapStr record not found for this cap. Approve the cap before registering sell/buy/burn transactions."
            )

        sell_hash, buy_hash, burn_hash = (str(values[k]).strip() for k in ("sell", "buy", "burn"))
        sell_details, buy_details, burn_details = await asyncio.gather(
            self.oracle.fetch(sell_hash), self.oracle.fetch(buy_hash), self.oracle.fetch(burn_hash)
        )

        # a retry after a failed buy, burn or patch reuses the sell already written
        sell_record = item.sell_transaction_record
        if sell_record is None:
            sell_record = await self.ledger.create_transaction(
                TransactionKind.SELL,
                tx_hash=sell_hash,
                from_wallet=sell_details.from_wallet,
                to_wallet=sell_details.to_wallet,
                gift_id=gift_id,
                currency="TON",
                amount_nano=sell_details.amount_nano,
                timestamp_ms=sell_details.timestamp_ms,
                family=family,
            )
            item.sell_transaction_record = sell_record
            store.save()
        for kind, tx_hash, details in (
            (TransactionKind.BUY, buy_hash, buy_details),
            (TransactionKind.BURN, burn_hash, burn_details),
        ):
            await self.ledger.create_transaction(
                kind,
                tx_hash=tx_hash,
                from_wallet=details.from_wallet,
                to_wallet=details.to_wallet,
                gift_id=gift_id,
                currency=profile.token,
                amount_nano=token_amount,
                timestamp_ms=details.timestamp_ms,
                family=family,
            )

        result =SellBuyBurnResult(
            label=profile.label,
            token=profile.token,
            gift_id=gift_id,
            sell_tx_hash=sell_hash,
            buy_tx_hash=buy_hash,
            burn_tx_hash=burn_hash,
            token_amount_nano=token_amount,
            sell_transaction_id=record_identifier(sell_record, TX_ID_KEYS),
        )

        if family == ItemFamily.CAP:
            sell_tx_id = numeric_identifier(sell_record, TX_ID_KEYS)
            if sell_tx_id is None:
                store.save()
                raise ValidationError("Unable to determine the sell transaction identifier from the backend response.")
            cap_id = numeric_identifier(item.cap_record, CAP_ID_KEYS)
            if cap_id is None:
                store.save()
                raise ValidationError("Unable to determine CapStrCapID for this cap; cannot patch sell transaction.")
            item.cap_record = await self.ledger.patch_cap_sell_transaction(cap_id, sell_tx_id, sell_details.timestamp_ms)
            result.cap_id = cap_id
            result.sell_transaction_id = sell_tx_id

        store.save()
        logger.info(
            "sell_buy_burn_registered",
            extra={"event": "sell_buy_burn_registered", "family": family.value, "key": item.external_key},
        )
        return result

    async def register_batch(self, family: ItemFamily, kind: TransactionKind, payload: dict) -> BatchResult:
        hashes = normalize_hashes(_first(payload, _BATCH_HASH_KEYS[kind]))
        if not hashes:
            raise ValidationError(f"{_BATCH_HASH_KEYS[kind][0]} must be a non-empty array of TON transaction hashes.")
        _, gift_id = self._resolve_item(family, payload)
        profile = self.stores[family].profile
        currency = "TON" if kind == TransactionKind.SELL else profile.token
        result = BatchResult(label=profile.label, token=currency, kind=kind)

        for tx_hash in hashes:
            details = await self.oracle.fetch(tx_hash)
            amount = positive_nano(details.amount_nano)
            if amount is None:
                raise ValidationError(f"Transaction {tx_hash} does not contain a positive amount.")
            record = await self.ledger.create_transaction(
                kind,
                tx_hash=tx_hash,
                from_wallet=details.from_wallet,
                to_wallet=details.to_wallet,
                gift_id=gift_id,
                currency=currency,
                amount_nano=amount,
                timestamp_ms=details.timestamp_ms,
                family=family,
            )
            result.entries.append(
                BatchEntry(tx_hash=tx_hash, amount_nano=amount, transaction_id=record_identifier(record, TX_ID_KEYS))
            )

        logger.info(
            "batch_registered",
            extra={"event": "batch_registered", "family": family.value, "state": kind.value, "count": len(result.entries)},
        )
        return result
