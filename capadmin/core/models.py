from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any

from capadmin.core.fmt import as_int

LedgerRecord = dict[str, Any]

TX_ID_KEYS = ("TxID", "txId", "transactionId", "id")
CAP_ID_KEYS = ("CapStrCapID", "capStrCapId", "id")


class LifecycleState(str, Enum):
    PUBLISHED = "PUBLISHED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    SOLD_PUBLISHED = "SOLD_PUBLISHED"
    SOLD_APPROVED = "SOLD_APPROVED"
    SOLD_REJECTED = "SOLD_REJECTED"
    APPROVED_SOLD = "APPROVED_SOLD"


TERMINAL_FOR_PHASE = frozenset(
    {
        LifecycleState.APPROVED,
        LifecycleState.REJECTED,
        LifecycleState.SOLD_APPROVED,
        LifecycleState.SOLD_REJECTED,
        LifecycleState.APPROVED_SOLD,
    }
)


class TransactionKind(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    BURN = "BURN"


class ItemFamily(str, Enum):
    CAP = "cap"
    GIFT = "gift"


@dataclass(frozen=True)
class FamilyProfile:
    family: ItemFamily
    label: str
    noun: str
    ledger_prefix: str
    poll_path: str
    snapshot_file: str
    audit_file: str
    collection_key: str
    new_items_key: str
    total_key: str
    number_key: str
    token: str
    actionable: bool


FAMILIES: dict[ItemFamily, FamilyProfile] = {
    ItemFamily.CAP: FamilyProfile(
        family=ItemFamily.CAP,
        label="CapStrategy",
        noun="Cap",
        ledger_prefix="capStr",
        poll_path="/capStr/durovCaps/owner/poll",
        snapshot_file="announced.json",
        audit_file="raw-caps-log.json",
        collection_key="caps",
        new_items_key="newCaps",
        total_key="totalCaps",
        number_key="capNumber",
        token="CAPSTR",
        actionable=True,
    ),
    ItemFamily.GIFT: FamilyProfile(
        family=ItemFamily.GIFT,
        label="PepeStrategy",
        noun="Pepe Gift",
        ledger_prefix="pepeStr",
        poll_path="/pepeStr/pepeGifts/owner/poll",
        snapshot_file="announced-pepe.json",
        audit_file="raw-pepe-log.json",
        collection_key="gifts",
        new_items_key="newGifts",
        total_key="totalGifts",
        number_key="giftNumber",
        token="PEPESTR",
        actionable=False,
    ),
}


def _as_text(value) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


# attribute -> wire key; "number" is resolved per family
_WIRE_KEYS = {
    "name": "name",
    "sale_type": "saleType",
    "buy_price_ton": "buyPriceTon",
    "sale_price_ton": "salePriceTon",
    "buy_time": "buyTime",
    "sale_time": "saleTime",
    "get_gems_url": "getGemsUrl",
    "tx_hash": "txHash",
    "from_wallet": "fromWalletAddress",
    "to_wallet": "toWalletAddress",
    "onchain_address": "onchainAddress",
    "collection_address": "collectionAddress",
    "image": "image",
    "detected_at": "detectedAt",
    "gift_id": "giftId",
}
_INT_FIELDS = {"buy_time", "sale_time", "detected_at", "gift_id", "number"}

# operator-facing label -> attribute; order defines select_field_<index>
EDITABLE_FIELDS: tuple[tuple[str, str], ...] = (
    ("Name", "name"),
    ("Record Type", "sale_type"),
    ("Buy Price", "buy_price_ton"),
    ("Sale Price", "sale_price_ton"),
    ("Buy Time (UTC)", "buy_time"),
    ("Sale Time (UTC)", "sale_time"),
    ("GetGems URL", "get_gems_url"),
    ("Link to Gift", "onchain_address"),
    ("Tx Hash", "tx_hash"),
    ("Seller Wallet", "from_wallet"),
    ("Buyer Wallet", "to_wallet"),
)
NUMERIC_EDIT_FIELDS = frozenset({"buy_time", "sale_time"})


@dataclass
class ItemFields:
    name: str | None = None
    sale_type: str | None = None
    buy_price_ton: str | None = None
    sale_price_ton: str | None = None
    buy_time: int | None = None
    sale_time: int | None = None
    get_gems_url: str | None = None
    tx_hash: str | None = None
    from_wallet: str | None = None
    to_wallet: str | None = None
    onchain_address: str | None = None
    collection_address: str | None = None
    image: str | None = None
    detected_at: int | None = None
    gift_id: int | None = None
    number: int | None = None

    @classmethod
    def from_payload(cls, payload: dict, number_key: str) -> "ItemFields":
        values: dict[str, Any] = {}
        for attr, wire in {**_WIRE_KEYS, "number": number_key}.items():
            raw = payload.get(wire)
            values[attr] = as_int(raw) if attr in _INT_FIELDS else _as_text(raw)
        return cls(**values)

    def to_payload(self, number_key: str) -> dict:
        out = {wire: getattr(self, attr) for attr, wire in _WIRE_KEYS.items()}
        out[number_key] = self.number
        return out

    def coalesce(self, incoming: "ItemFields", keep_existing: bool) -> "ItemFields":
        """Field-by-field merge; a None never overwrites a value.

        With keep_existing the stored value wins wherever both sides carry one,
        otherwise the incoming value wins.
        """
        merged: dict[str, Any] = {}
        for f in fields(self):
            current = getattr(self, f.name)
            update = getattr(incoming, f.name)
            if keep_existing:
                merged[f.name] = current if current is not None else update
            else:
                merged[f.name] = update if update is not None else current
        return ItemFields(**merged)


@dataclass
class AnnouncedItem:
    external_key: str
    family: ItemFamily
    fields: ItemFields
    state: LifecycleState = LifecycleState.PUBLISHED
    is_edited: bool = False
    has_manual_changes: bool = False
    published_chat_ids: set[int] = field(default_factory=set)
    message_ids: dict[int, int] = field(default_factory=dict)
    buy_transaction_record: LedgerRecord | None = None
    cap_record: LedgerRecord | None = None
    sell_transaction_record: LedgerRecord | None = None

    @property
    def profile(self) -> FamilyProfile:
        return FAMILIES[self.family]

    @property
    def gift_numeric_id(self) -> int | None:
        if self.fields.gift_id is not None:
            return self.fields.gift_id
        return self.fields.number

    def matches_number(self, number: int) -> bool:
        return self.fields.gift_id == number or self.fields.number == number

    def has_sale_data(self) -> bool:
        return self.fields.sale_time is not None

    def target_chats(self, subscribed: set[int]) -> list[int]:
        return sorted(self.published_chat_ids | set(self.message_ids) | set(subscribed))

    @classmethod
    def from_payload(cls, payload: dict, family: ItemFamily, state: LifecycleState) -> "AnnouncedItem":
        profile = FAMILIES[family]
        key = str(payload.get("offchainGetgemsAddress") or "").strip()
        if not key:
            raise ValueError("item payload missing offchainGetgemsAddress")
        return cls(
            external_key=key,
            family=family,
            fields=ItemFields.from_payload(payload, profile.number_key),
            state=state,
        )

    def to_snapshot(self) -> dict:
        item = {"offchainGetgemsAddress": self.external_key, **self.fields.to_payload(self.profile.number_key)}
        return {
            "item": item,
            "state": self.state.value,
            "publishedChatIds": sorted(self.published_chat_ids),
            "messageIds": {str(chat_id): message_id for chat_id, message_id in self.message_ids.items()},
            "isEdited": self.is_edited,
            "hasManualChanges": self.has_manual_changes,
            "buyTransactionRecord": self.buy_transaction_record,
            "capStrRecord": self.cap_record,
            "sellTransactionRecord": self.sell_transaction_record,
        }

    @classmethod
    def from_snapshot(cls, entry: dict, family: ItemFamily) -> "AnnouncedItem":
        try:
            state = LifecycleState(entry.get("state") or LifecycleState.PUBLISHED.value)
        except ValueError:
            # PARTIAL_PUBLISHED and other retired states load as freshly published
            state = LifecycleState.PUBLISHED
        stored = cls.from_payload(entry.get("item") or {}, family, state)
        stored.published_chat_ids = {int(x) for x in entry.get("publishedChatIds") or []}
        stored.message_ids = {int(k): int(v) for k, v in (entry.get("messageIds") or {}).items()}
        stored.is_edited = bool(entry.get("isEdited"))
        stored.has_manual_changes = bool(entry.get("hasManualChanges"))
        stored.buy_transaction_record = entry.get("buyTransactionRecord")
        stored.cap_record = entry.get("capStrRecord")
        stored.sell_transaction_record = entry.get("sellTransactionRecord")
        return stored


@dataclass
class TonTransactionDetails:
    from_wallet: str
    to_wallet: str
    amount_nano: str
    timestamp_ms: int


def _normalize_identifier(value) -> str | int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def record_identifier(record: LedgerRecord | None, keys: tuple[str, ...]) -> str | int | None:
    """Identifier of a backend record: looked up in record["data"] first, then the record itself."""
    if not isinstance(record, dict):
        return None
    candidates = []
    if isinstance(record.get("data"), dict):
        candidates.append(record["data"])
    candidates.append(record)
    for candidate in candidates:
        for key in keys:
            value = _normalize_identifier(candidate.get(key))
            if value is not None:
                return value
    return None


def numeric_identifier(record: LedgerRecord | None, keys: tuple[str, ...]) -> int | None:
    value = record_identifier(record, keys)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return None
    return None


def is_sell_transaction_pending(record: LedgerRecord | None) -> bool:
    if not isinstance(record, dict):
        return False
    data = record.get("data") if isinstance(record.get("data"), dict) else record
    sell = data.get("SellTransaction", data.get("sellTransaction"))
    return sell is None
