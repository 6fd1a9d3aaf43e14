from __future__ import annotations

import orjson
import pytest

from capadmin.core.models import FAMILIES, ItemFamily, LifecycleState
from capadmin.services.item_store import ItemStore, sale_merge_state

from conftest import make_payload


def test_upsert_new_skips_known_and_keyless(cap_store: ItemStore) -> None:
    first = cap_store.upsert_new([make_payload("A"), make_payload("B", number=8)])
    again = cap_store.upsert_new([make_payload("A", name="changed"), {"capNumber": 9}])

    assert [item.external_key for item in first] == ["A", "B"]
    assert again == []
    assert len(cap_store) == 2
    assert cap_store.get("A").fields.name == "Durov's Cap"
    assert cap_store.get("A").state == LifecycleState.PUBLISHED


@pytest.mark.parametrize(
    ("prior", "expected"),
    [
        (None, LifecycleState.SOLD_PUBLISHED),
        (LifecycleState.PUBLISHED, LifecycleState.SOLD_PUBLISHED),
        (LifecycleState.SOLD_PUBLISHED, LifecycleState.SOLD_PUBLISHED),
        (LifecycleState.APPROVED, LifecycleState.APPROVED_SOLD),
        (LifecycleState.APPROVED_SOLD, LifecycleState.APPROVED_SOLD),
        (LifecycleState.REJECTED, LifecycleState.SOLD_REJECTED),
        (LifecycleState.SOLD_REJECTED, LifecycleState.SOLD_REJECTED),
        (LifecycleState.SOLD_APPROVED, LifecycleState.SOLD_APPROVED),
    ],
)
def test_sale_merge_state(prior, expected) -> None:
    assert sale_merge_state(prior) == expected


def test_sale_for_unknown_key_is_inserted_as_sold(cap_store: ItemStore) -> None:
    item, created = cap_store.merge_sale_update(make_payload("S", salePriceTon="9", saleTime=1_700_000_500_000))

    assert created is True
    assert item.state == LifecycleState.SOLD_PUBLISHED
    assert item.fields.sale_time == 1_700_000_500_000


def test_sale_merge_incoming_wins_without_manual_changes(cap_store: ItemStore) -> None:
    cap_store.upsert_new([make_payload("A", name="Original")])
    cap_store.get("A").state = LifecycleState.APPROVED

    item, created = cap_store.merge_sale_update(
        make_payload("A", name="From Backend", salePriceTon="10", saleTime=5, buyPriceTon=None)
    )

    assert created is False
    assert item.state == LifecycleState.APPROVED_SOLD
    assert item.fields.name == "From Backend"
    assert item.fields.sale_price_ton == "10"
    # absent incoming values never erase stored ones
    assert item.fields.buy_price_ton == "5"


def test_sale_merge_keeps_manual_edits(cap_store: ItemStore) -> None:
    cap_store.upsert_new([make_payload("A")])
    edited = cap_store.get("A").fields
    edited.name = "Operator Name"
    cap_store.update_fields("A", edited)

    item, _ = cap_store.merge_sale_update(make_payload("A", name="Backend Name", salePriceTon="10", saleTime=5))

    assert item.is_edited and item.has_manual_changes
    assert item.fields.name == "Operator Name"
    # fields the operator never set still fill in
    assert item.fields.sale_price_ton == "10"


def test_find_by_numeric_id_prefers_pending_cap_record(cap_store: ItemStore) -> None:
    cap_store.upsert_new([make_payload("plain", number=5), make_payload("linked", number=5), make_payload("pending", number=5)])
    cap_store.get("linked").cap_record = {"data": {"CapStrCapID": 1, "SellTransaction": {"TxID": 3}}}
    cap_store.get("pending").cap_record = {"data": {"CapStrCapID": 2, "SellTransaction": None}}

    assert cap_store.find_by_numeric_id(5).external_key == "pending"

    cap_store.get("pending").cap_record = None
    assert cap_store.find_by_numeric_id(5).external_key == "linked"

    cap_store.get("linked").cap_record = None
    assert cap_store.find_by_numeric_id(5).external_key == "plain"
    assert cap_store.find_by_numeric_id(404) is None


def test_snapshot_round_trip(tmp_path) -> None:
    store = ItemStore(FAMILIES[ItemFamily.CAP], tmp_path)
    store.upsert_new([make_payload("A")])
    item = store.get("A")
    item.state = LifecycleState.APPROVED
    item.message_ids = {-1001: 55}
    item.published_chat_ids = {-1001}
    item.buy_transaction_record = {"data": {"TxID": 1}}
    store.save()

    reloaded = ItemStore(FAMILIES[ItemFamily.CAP], tmp_path)
    assert reloaded.load() == 1
    again = reloaded.get("A")
    assert again.state == LifecycleState.APPROVED
    assert again.message_ids == {-1001: 55}
    assert again.published_chat_ids == {-1001}
    assert again.buy_transaction_record == {"data": {"TxID": 1}}
    assert again.fields.number == 7

    raw = orjson.loads((tmp_path / "announced.json").read_bytes())
    assert raw["caps"][0]["messageIds"] == {"-1001": 55}


def test_retired_state_loads_as_published(tmp_path) -> None:
    snapshot = {
        "gifts": [
            {"item": make_payload("G", family=ItemFamily.GIFT), "state": "PARTIAL_PUBLISHED"},
            {"item": {"name": "no key"}, "state": "PUBLISHED"},
            "junk",
        ]
    }
    (tmp_path / "announced-pepe.json").write_bytes(orjson.dumps(snapshot))

    store = ItemStore(FAMILIES[ItemFamily.GIFT], tmp_path)

    assert store.load() == 1
    assert store.get("G").state == LifecycleState.PUBLISHED
    assert store.get("G").fields.number == 7


def test_corrupt_snapshot_loads_empty(tmp_path) -> None:
    (tmp_path / "announced.json").write_text("{not json")
    assert ItemStore(FAMILIES[ItemFamily.CAP], tmp_path).load() == 0


def test_audit_log_appends(cap_store: ItemStore) -> None:
    cap_store.append_audit([make_payload("A")])
    cap_store.append_audit([make_payload("B"), make_payload("C")])
    assert cap_store.append_audit([]) == 0

    entries = orjson.loads(cap_store.audit_path.read_bytes())["entries"]
    assert [e["item"]["offchainGetgemsAddress"] for e in entries] == ["A", "B", "C"]
    assert all(e["receivedAt"] for e in entries)


def test_deferred_save_writes_once_on_exit(cap_store: ItemStore) -> None:
    with cap_store.deferred_save():
        cap_store.upsert_new([make_payload("A")])
        with cap_store.deferred_save():
            cap_store.merge_sale_update(make_payload("B", saleTime=1))
        assert not cap_store.snapshot_path.exists()

    raw = orjson.loads(cap_store.snapshot_path.read_bytes())
    assert {entry["item"]["offchainGetgemsAddress"] for entry in raw["caps"]} == {"A", "B"}
