from __future__ import annotations

import pytest

from capadmin.core.errors import ItemNotFoundError, LedgerError, OracleError, ValidationError
from capadmin.core.models import ItemFamily, TonTransactionDetails, TransactionKind
from capadmin.services.registration import RegistrationService, normalize_hashes

from conftest import make_payload


class DummyOracle:
    def __init__(self, amounts: dict[str, str] | None = None) -> None:
        self.amounts = amounts or {}
        self.fetched: list[str] = []

    async def fetch(self, tx_hash: str) -> TonTransactionDetails:
        self.fetched.append(tx_hash)
        if tx_hash not in self.amounts:
            raise OracleError(f"TonAPI has no transaction {tx_hash}", status_code=404)
        return TonTransactionDetails(
            from_wallet=f"EQfrom-{tx_hash}",
            to_wallet=f"EQto-{tx_hash}",
            amount_nano=self.amounts[tx_hash],
            timestamp_ms=1_700_000_000_000 + len(self.fetched),
        )


def _service(stores, ledger, amounts=None) -> tuple[RegistrationService, DummyOracle]:
    oracle = DummyOracle(amounts)
    return RegistrationService(stores, ledger, oracle), oracle


def test_normalize_hashes() -> None:
    assert normalize_hashes([" a ", "b", "a", None, "", 7]) == ["a", "b", "7"]
    assert normalize_hashes("a") == []


@pytest.mark.asyncio
async def test_register_buys_dedupes_and_totals(stores, ledger) -> None:
    stores[ItemFamily.CAP].upsert_new([make_payload("A", number=3387)])
    service, oracle = _service(stores, ledger, {"h1": "1500000000", "h2": "500000000"})

    result = await service.register_batch(
        ItemFamily.CAP, TransactionKind.BUY, {"giftNumber": "3387", "buyTxHashes": ["h1", "h2", "h1"]}
    )

    assert oracle.fetched == ["h1", "h2"]
    assert ledger.names() == ["tx:BUY", "tx:BUY"]
    assert [call["currency"] for _, call in ledger.calls] == ["CAPSTR", "CAPSTR"]
    assert ledger.calls[0][1]["gift_id"] == 3387
    assert ledger.calls[0][1]["from_wallet"] == "EQfrom-h1"
    assert result.total_nano == 2_000_000_000
    assert [e.transaction_id for e in result.entries] == [501, 502]


@pytest.mark.asyncio
async def test_register_sells_use_ton(stores, ledger) -> None:
    stores[ItemFamily.GIFT].upsert_new([make_payload("G", number=12, family=ItemFamily.GIFT)])
    service, _ = _service(stores, ledger, {"s1": "9000000000"})

    result = await service.register_batch(ItemFamily.GIFT, TransactionKind.SELL, {"giftNumber": 12, "txHashes": ["s1"]})

    assert result.token == "TON"
    assert ledger.calls[0][1]["currency"] == "TON"
    assert ledger.calls[0][1]["family"] == ItemFamily.GIFT


@pytest.mark.asyncio
async def test_zero_amount_aborts_batch(stores, ledger) -> None:
    stores[ItemFamily.CAP].upsert_new([make_payload("A", number=5)])
    service, _ = _service(stores, ledger, {"h1": "0"})

    with pytest.raises(ValidationError):
        await service.register_batch(ItemFamily.CAP, TransactionKind.BURN, {"giftNumber": 5, "burnTxHashes": ["h1"]})
    assert ledger.calls == []


@pytest.mark.asyncio
async def test_batch_input_errors(stores, ledger) -> None:
    service, _ = _service(stores, ledger)

    with pytest.raises(ValidationError):
        await service.register_batch(ItemFamily.CAP, TransactionKind.BUY, {"giftNumber": 5, "buyTxHashes": []})
    with pytest.raises(ValidationError):
        await service.register_batch(ItemFamily.CAP, TransactionKind.BUY, {"giftNumber": "five", "buyTxHashes": ["h"]})
    with pytest.raises(ItemNotFoundError):
        await service.register_batch(ItemFamily.CAP, TransactionKind.BUY, {"giftNumber": 404, "buyTxHashes": ["h"]})


@pytest.mark.asyncio
async def test_sell_buy_burn_patches_cap(stores, ledger) -> None:
    (item,) = stores[ItemFamily.CAP].upsert_new([make_payload("A", number=3387)])
    item.cap_record = {"success": True, "data": {"CapStrCapID": 77, "SellTransaction": None}}
    service, _ = _service(stores, ledger, {"sell": "20000000000", "buy": "1", "burn": "1"})

    result = await service.register_sell_buy_burn(
        ItemFamily.CAP,
        {"giftNumber": 3387, "sellTxHash": "sell", "capstrBuyTxHash": "buy", "burnTxHash": "burn", "tokenValue": "1.5"},
    )

    assert ledger.names() == ["tx:SELL", "tx:BUY", "tx:BURN", "patch_cap"]
    sell, buy, burn, patch = (call for _, call in ledger.calls)
    assert (sell["currency"], sell["amount_nano"]) == ("TON", "20000000000")
    assert (buy["currency"], buy["amount_nano"]) == ("CAPSTR", "1500000000")
    assert (burn["currency"], burn["amount_nano"]) == ("CAPSTR", "1500000000")
    assert patch["cap_id"] == 77
    assert patch["sell_transaction_id"] == 501
    assert result.cap_id == 77
    assert result.token_amount_nano == "1500000000"
    assert item.sell_transaction_record == {"success": True, "data": {"TxID": 501}}


@pytest.mark.asyncio
async def test_sell_buy_burn_requires_cap_record(stores, ledger) -> None:
    stores[ItemFamily.CAP].upsert_new([make_payload("A", number=3387)])
    service, oracle = _service(stores, ledger, {"s": "1", "b": "1", "x": "1"})

    with pytest.raises(ValidationError, match="Approve the cap"):
        await service.register_sell_buy_burn(
            ItemFamily.CAP,
            {"giftNumber": 3387, "sellTxHash": "s", "tokenBuyTxHash": "b", "tokenBurnTxHash": "x", "tokenValue": "2"},
        )
    assert oracle.fetched == []
    assert ledger.calls == []


@pytest.mark.asyncio
async def test_sell_buy_burn_reports_missing_fields(stores, ledger) -> None:
    service, _ = _service(stores, ledger)

    with pytest.raises(ValidationError) as exc:
        await service.register_sell_buy_burn(ItemFamily.CAP, {"sellTxHash": "s", "tokenValue": "2"})

    message = str(exc.value)
    assert "buy" in message and "burn" in message and "giftNumber" in message


@pytest.mark.asyncio
async def test_sell_buy_burn_for_gift_skips_cap_patch(stores, ledger) -> None:
    stores[ItemFamily.GIFT].upsert_new([make_payload("G", number=9, family=ItemFamily.GIFT)])
    service, _ = _service(stores, ledger, {"s": "3000000000", "b": "1", "x": "1"})

    result = await service.register_sell_buy_burn(
        ItemFamily.GIFT,
        {"giftNumber": 9, "pepeSellTxHash": "s", "pepestrBuyTxHash": "b", "pepestrBurnTxHash": "x", "pepestrValue": 4},
    )

    assert ledger.names() == ["tx:SELL", "tx:BUY", "tx:BURN"]
    assert ledger.calls[1][1]["currency"] == "PEPESTR"
    assert result.cap_id is None
    assert result.sell_transaction_id == 501


@pytest.mark.asyncio
async def test_sell_buy_burn_retry_reuses_stored_sell(stores, ledger) -> None:
    (item,) = stores[ItemFamily.CAP].upsert_new([make_payload("A", number=3387)])
    item.cap_record = {"success": True, "data": {"CapStrCapID": 77, "SellTransaction": None}}
    service, _ = _service(stores, ledger, {"sell": "20000000000", "buy": "1", "burn": "1"})
    payload = {"giftNumber": 3387, "sellTxHash": "sell", "capstrBuyTxHash": "buy", "burnTxHash": "burn", "tokenValue": "1.5"}
    ledger.fail_on.add("tx:BURN")

    with pytest.raises(LedgerError):
        await service.register_sell_buy_burn(ItemFamily.CAP, payload)
    assert item.sell_transaction_record == {"success": True, "data": {"TxID": 501}}

    ledger.fail_on.clear()
    result = await service.register_sell_buy_burn(ItemFamily.CAP, payload)

    assert ledger.names().count("tx:SELL") == 1
    assert ledger.names()[-1] == "patch_cap"
    assert ledger.calls[-1][1]["sell_transaction_id"] == 501
    assert result.sell_transaction_id == 501
