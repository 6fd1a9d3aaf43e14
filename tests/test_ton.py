from __future__ import annotations

import pytest

from capadmin.adapters.ton import TonOracle, crc16, ton_friendly_address
from capadmin.core.errors import OracleError, UpstreamError

RAW_ACCOUNT = "0:" + "11" * 32
RAW_SENDER = "0:" + "22" * 32
RAW_OTHER = "0:" + "33" * 32


class DummyHTTP:
    def __init__(self, tx: dict, trace: dict | None = None) -> None:
        self.tx = tx
        self.trace = trace
        self.urls: list[str] = []
        self.headers: list[dict] = []

    async def get_json(self, url, params=None, headers=None, timeout=None, retries=None):
        self.urls.append(url)
        self.headers.append(headers or {})
        if "/traces/" in url:
            if self.trace is None:
                raise UpstreamError("trace not found", status_code=404)
            return self.trace
        return self.tx


def test_crc16_matches_ccitt_false_check_value() -> None:
    assert crc16(b"123456789") == 0x29B1


def test_friendly_address_is_url_safe_base64() -> None:
    friendly = ton_friendly_address("0:" + "ab" * 32)
    assert len(friendly) == 48
    assert "+" not in friendly and "/" not in friendly
    assert not friendly.endswith("=")
    assert friendly.startswith("EQ")


def test_friendly_address_masterchain() -> None:
    assert ton_friendly_address("-1:" + "00" * 32).startswith("Ef8")


@pytest.mark.parametrize(
    "raw",
    [
        "999:" + "ab" * 32,
        "0:abc",
        "EQDp00TOpFDpJ0IvBgIn6rOUiCQeNZQSAPzI7kNPT65pjyr2",
        "x:" + "ab" * 32,
        "  EQDp00TOpFDpJ0IvBgIn6rOUiCQeNZQSAPzI7kNPT65pjyr2 ",
        " 0:abc ",
    ],
)
def test_malformed_address_returned_unchanged(raw: str) -> None:
    assert ton_friendly_address(raw) == raw


@pytest.mark.asyncio
async def test_decoded_jetton_amount_wins_over_raw_values() -> None:
    tx = {
        "utime": 1_700_000_000,
        "account": {"address": RAW_ACCOUNT},
        "in_msg": {
            "source": {"address": RAW_SENDER},
            "destination": {"address": RAW_ACCOUNT},
            "value": 5000,
            "decoded_op_name": "jetton_transfer",
            "decoded_body": {"query_id": 0, "amount": "777", "forward_payload": {"value": {"sum_type": "x"}}},
        },
        "out_msgs": [{"destination": {"address": RAW_OTHER}, "value": 1000}],
    }
    http = DummyHTTP(tx)
    oracle = TonOracle(http, "https://tonapi.io/v2/", api_key="secret")

    details = await oracle.fetch("abc123")

    assert details.amount_nano == "777"
    assert details.timestamp_ms == 1_700_000_000_000
    assert details.from_wallet == ton_friendly_address(RAW_SENDER)
    assert details.to_wallet == ton_friendly_address(RAW_ACCOUNT)
    assert http.urls == ["https://tonapi.io/v2/blockchain/transactions/abc123"]
    assert http.headers[0]["Authorization"] == "Bearer secret"


@pytest.mark.asyncio
async def test_out_message_value_used_when_nothing_decoded() -> None:
    tx = {
        "utime": 1_700_000_000,
        "account": {"address": RAW_ACCOUNT},
        "in_msg": {"source": {"address": RAW_SENDER}, "destination": {"address": RAW_ACCOUNT}, "value": 5000},
        "out_msgs": [
            {"source": {"address": RAW_OTHER}, "destination": {"address": RAW_OTHER}, "value": 0},
            {"source": {"address": RAW_ACCOUNT}, "destination": {"address": RAW_ACCOUNT}, "value": "1200"},
        ],
    }
    http = DummyHTTP(tx)

    details = await TonOracle(http, "https://tonapi.io/v2").fetch("abc123")

    assert details.amount_nano == "1200"
    assert http.urls[-1] == "https://tonapi.io/v2/traces/ABC123"


@pytest.mark.asyncio
async def test_trace_decoded_amount_is_collected() -> None:
    tx = {
        "utime": 1_700_000_000,
        "account": {"address": RAW_ACCOUNT},
        "in_msg": {"source": {"address": RAW_SENDER}, "destination": {"address": RAW_ACCOUNT}, "value": 5000},
        "out_msgs": [],
    }
    trace = {
        "transaction": tx,
        "children": [
            {
                "transaction": {
                    "in_msg": {
                        "decoded_op_name": "stonfi_payment_request",
                        "decoded_body": {"params": {"amount_out": "424242"}},
                    }
                },
                "children": [],
            }
        ],
    }

    details = await TonOracle(DummyHTTP(tx, trace), "https://tonapi.io/v2").fetch("abc123")

    assert details.amount_nano == "424242"


@pytest.mark.asyncio
async def test_inbound_value_is_last_resort_before_transaction() -> None:
    tx = {
        "utime": 1_700_000_000,
        "in_msg": {"source": {"address": RAW_SENDER}, "destination": {"address": RAW_ACCOUNT}, "value": -5},
        "credit_phase": {"credit": 9000},
    }

    details = await TonOracle(DummyHTTP(tx), "https://tonapi.io/v2").fetch("abc123")

    assert details.amount_nano == "9000"


@pytest.mark.asyncio
async def test_missing_addresses_raise_oracle_error() -> None:
    with pytest.raises(OracleError):
        await TonOracle(DummyHTTP({"utime": 1}), "https://tonapi.io/v2").fetch("abc123")


@pytest.mark.asyncio
async def test_transport_failure_raises_oracle_error() -> None:
    class FailingHTTP:
        async def get_json(self, url, params=None, headers=None, timeout=None, retries=None):
            raise UpstreamError("not found", status_code=404, body="entity not found")

    with pytest.raises(OracleError) as exc:
        await TonOracle(FailingHTTP(), "https://tonapi.io/v2").fetch("deadbeef")
    assert exc.value.status_code == 404
