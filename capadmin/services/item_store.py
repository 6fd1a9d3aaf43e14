from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

import orjson

from capadmin.core.models import (
    FAMILIES,
    AnnouncedItem,
    FamilyProfile,
    ItemFamily,
    ItemFields,
    LifecycleState,
    is_sell_transaction_pending,
)

logger = logging.getLogger(__name__)


def sale_merge_state(prior: LifecycleState | None) -> LifecycleState:
    if prior in (LifecycleState.APPROVED, LifecycleState.APPROVED_SOLD):
        return LifecycleState.APPROVED_SOLD
    if prior in (LifecycleState.REJECTED, LifecycleState.SOLD_REJECTED):
        return LifecycleState.SOLD_REJECTED
    if prior == LifecycleState.SOLD_APPROVED:
        return LifecycleState.SOLD_APPROVED
    return LifecycleState.SOLD_PUBLISHED


class ItemStore:
    """Announced items of one family keyed by external key, mirrored to a JSON snapshot.

    Every mutation writes the full snapshot unless it runs inside ``deferred_save()``,
    in which case a single write happens when the outermost block exits.
    """

    def __init__(self, profile: FamilyProfile, data_dir: Path) -> None:
        self.profile = profile
        self.data_dir = Path(data_dir)
        self.snapshot_path = self.data_dir / profile.snapshot_file
        self.audit_path = self.data_dir / profile.audit_file
        self._items: dict[str, AnnouncedItem] = {}
        self._defer_depth = 0
        self._dirty = False

    @property
    def family(self) -> ItemFamily:
        return self.profile.family

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: str) -> bool:
        return key in self._items

    def get(self, key: str) -> AnnouncedItem | None:
        return self._items.get(key)

    def all(self) -> list[AnnouncedItem]:
        return list(self._items.values())

    def load(self) -> int:
        if not self.snapshot_path.exists():
            return 0
        try:
            payload = orjson.loads(self.snapshot_path.read_bytes())
        except (OSError, orjson.JSONDecodeError) as exc:
            logger.error(
                "snapshot_load_failed",
                extra={"event": "snapshot_load_failed", "family": self.family.value, "error": str(exc)},
            )
            return 0
        entries = payload.get(self.profile.collection_key) if isinstance(payload, dict) else None
        self._items.clear()
        for entry in entries or []:
            if not isinstance(entry, dict):
                continue
            try:
                item = AnnouncedItem.from_snapshot(entry, self.family)
            except (TypeError, ValueError) as exc:
                logger.warning(
                    "snapshot_entry_skipped",
                    extra={"event": "snapshot_entry_skipped", "family": self.family.value, "error": str(exc)},
                )
                continue
            self._items[item.external_key] = item
        logger.info(
            "snapshot_loaded",
            extra={"event": "snapshot_loaded", "family": self.family.value, "count": len(self._items)},
        )
        return len(self._items)

    def save(self) -> None:
        if self._defer_depth:
            self._dirty = True
            return
        self._write_snapshot()

    def _write_snapshot(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        payload = {self.profile.collection_key: [item.to_snapshot() for item in self._items.values()]}
        tmp_path = self.snapshot_path.with_suffix(".tmp")
        tmp_path.write_bytes(orjson.dumps(payload, option=orjson.OPT_INDENT_2))
        tmp_path.replace(self.snapshot_path)
        self._dirty = False

    @contextmanager
    def deferred_save(self) -> Iterator[None]:
        self._defer_depth += 1
        try:
            yield
        finally:
            self._defer_depth -= 1
            if self._defer_depth == 0 and self._dirty:
                self._write_snapshot()

    def upsert_new(self, payloads: list[dict]) -> list[AnnouncedItem]:
        inserted: list[AnnouncedItem] = []
        for payload in payloads:
            try:
                item = AnnouncedItem.from_payload(payload, self.family, LifecycleState.PUBLISHED)
            except ValueError as exc:
                logger.warning(
                    "item_payload_skipped",
                    extra={"event": "item_payload_skipped", "family": self.family.value, "error": str(exc)},
                )
                continue
            if item.external_key in self._items:
                continue
            self._items[item.external_key] = item
            inserted.append(item)
        if inserted:
            self.save()
        return inserted

    def merge_sale_update(self, payload: dict) -> tuple[AnnouncedItem, bool]:
        """Apply a sale event. Returns the stored item and whether it was newly inserted."""
        incoming = AnnouncedItem.from_payload(payload, self.family, LifecycleState.SOLD_PUBLISHED)
        existing = self._items.get(incoming.external_key)
        if existing is None:
            self._items[incoming.external_key] = incoming
            self.save()
            return incoming, True

        existing.fields = existing.fields.coalesce(incoming.fields, keep_existing=existing.has_manual_changes)
        existing.state = sale_merge_state(existing.state)
        self.save()
        return existing, False

    def update_fields(self, key: str, fields: ItemFields) -> AnnouncedItem | None:
        item = self._items.get(key)
        if item is None:
            return None
        item.fields = fields
        item.is_edited = True
        item.has_manual_changes = True
        self.save()
        return item

    def find_by_numeric_id(self, number: int) -> AnnouncedItem | None:
        matches = [item for item in self._items.values() if item.matches_number(number)]
        if not matches:
            return None
        for item in matches:
            if item.cap_record is not None and is_sell_transaction_pending(item.cap_record):
                return item
        for item in matches:
            if item.cap_record is not None:
                return item
        return matches[0]

    def append_audit(self, payloads: list[dict]) -> int:
        if not payloads:
            return 0
        entries: list[dict] = []
        if self.audit_path.exists():
            try:
                existing = orjson.loads(self.audit_path.read_bytes())
                if isinstance(existing, dict) and isinstance(existing.get("entries"), list):
                    entries = existing["entries"]
            except (OSError, orjson.JSONDecodeError) as exc:
                logger.warning(
                    "audit_log_unreadable",
                    extra={"event": "audit_log_unreadable", "family": self.family.value, "error": str(exc)},
                )
        received_at = datetime.now(timezone.utc).isoformat()
        entries.extend({"receivedAt": received_at, "item": payload} for payload in payloads)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.audit_path.write_bytes(orjson.dumps({"entries": entries}, option=orjson.OPT_INDENT_2))
        return len(payloads)


def build_stores(data_dir: Path) -> dict[ItemFamily, ItemStore]:
    return {family: ItemStore(profile, data_dir) for family, profile in FAMILIES.items()}
