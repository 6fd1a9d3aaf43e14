from __future__ import annotations

import base64
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any

from capadmin.core.errors import OracleError, UpstreamError
from capadmin.core.fmt import positive_nano
from capadmin.core.http import ResilientHTTPClient
from capadmin.core.models import TonTransactionDetails

logger = logging.getLogger(__name__)

_BOUNCEABLE_TAG = 0x11
_HEX_RE = re.compile(r"[^0-9a-fA-F]")

_AMOUNT_OUT_KEYS = {
    "amount_out",
    "amountout",
    "amount_out_tokens",
    "amountouttokens",
    "amount_out_jetton",
    "amountoutjetton",
}
_AMOUNT_IN_KEYS = {"amount_in", "amountin"}
_MESSAGE_VALUE_KEYS = ("value", "Value", "amount", "Amount", "coins", "Coins")


def crc16(data: bytes) -> int:
    crc = 0xFFFF
    for byte in data:
        crc ^= byte << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = ((crc << 1) ^ 0x1021) & 0xFFFF
            else:
                crc = (crc << 1) & 0xFFFF
    return crc


def ton_friendly_address(raw: str | None) -> str:
    """Raw "wc:hex" address -> bounceable mainnet base64url form.

    Anything that is not a well-formed raw address is returned as given.
    """
    if not raw:
        return ""
    trimmed = str(raw).strip()
    if ":" not in trimmed:
        return raw
    wc_part, _, hash_part = trimmed.partition(":")
    if not wc_part or not hash_part:
        return raw
    normalized_hash = _HEX_RE.sub("", hash_part).lower()
    if len(normalized_hash) != 64:
        return raw
    try:
        workchain = int(wc_part)
    except ValueError:
        return raw
    if workchain < -128 or workchain > 127:
        return raw

    body = bytes([_BOUNCEABLE_TAG, workchain & 0xFF]) + bytes.fromhex(normalized_hash)
    checksum = crc16(body)
    full = body + bytes([(checksum >> 8) & 0xFF, checksum & 0xFF])
    return base64.urlsafe_b64encode(full).decode("ascii").rstrip("=")


def _address_of(value: Any) -> str | None:
    if isinstance(value, dict):
        value = value.get("address")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _message_address(message: Any, side: str) -> str | None:
    if not isinstance(message, dict):
        return None
    return _address_of(message.get(side))


def _message_value(message: Any) -> str | None:
    if not isinstance(message, dict):
        return None
    for key in _MESSAGE_VALUE_KEYS:
        value = message.get(key)
        if isinstance(value, dict):
            value = value.get("value", value.get("amount"))
        if isinstance(value, bool) or value is None:
            continue
        if isinstance(value, (int, float, str)) and str(value).strip():
            return str(value).strip()
    return None


def _in_message(tx: dict) -> dict | None:
    msg = tx.get("in_msg", tx.get("inMessage"))
    return msg if isinstance(msg, dict) else None


def _out_messages(tx: dict) -> list[dict]:
    msgs = tx.get("out_msgs", tx.get("outMessages")) or []
    return [m for m in msgs if isinstance(m, dict)] if isinstance(msgs, list) else []


@dataclass
class DecodedAmounts:
    priority: list[str] = field(default_factory=list)
    fallback: list[str] = field(default_factory=list)
    has_jetton_amount: bool = False

    def _add(self, bucket: list[str], raw: Any) -> bool:
        amount = positive_nano(raw) if not isinstance(raw, (dict, list)) else None
        if amount is None:
            return False
        if amount not in bucket:
            bucket.append(amount)
        return True

    def collect(self, message: dict | None) -> None:
        if not isinstance(message, dict):
            return
        decoded = message.get("decoded_body", message.get("decodedBody"))
        if not isinstance(decoded, dict):
            return
        op_name = str(message.get("decoded_op_name", message.get("decodedOpName")) or "").lower()
        is_swap = "swap" in op_name
        is_jetton_transfer = bool(re.search(r"jetton.*transfer", op_name)) or "internal_transfer" in op_name
        is_payout = "payout" in op_name
        is_jetton_burn = bool(re.search(r"jetton.*burn", op_name)) or ("burn" in op_name and "jetton" in op_name)

        # decoded bodies are op-specific trees; walk them for the amount keys only
        stack: list[Any] = [decoded]
        while stack:
            current = stack.pop()
            if isinstance(current, list):
                stack.extend(current)
                continue
            if not isinstance(current, dict):
                continue
            for key, raw in current.items():
                if isinstance(raw, (dict, list)):
                    stack.append(raw)
                    continue
                lowered = key.lower()
                if lowered in _AMOUNT_OUT_KEYS:
                    if self._add(self.priority, raw):
                        self.has_jetton_amount = True
                elif lowered == "amount" and (is_jetton_transfer or is_payout or is_jetton_burn):
                    if self._add(self.priority, raw):
                        self.has_jetton_amount = True
                elif lowered == "amount" and is_swap:
                    self._add(self.fallback, raw)
                elif lowered in _AMOUNT_IN_KEYS:
                    self._add(self.fallback, raw)

    def collect_transaction(self, tx: Any) -> None:
        if not isinstance(tx, dict):
            return
        self.collect(_in_message(tx))
        for message in _out_messages(tx):
            self.collect(message)


class TonOracle:
    def __init__(self, http: ResilientHTTPClient, api_url: str, api_key: str = "") -> None:
        self.http = http
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key

    def _headers(self) -> dict[str, str]:
        headers = {"accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _collect_trace(self, tx_hash: str, amounts: DecodedAmounts) -> None:
        try:
            payload = await self.http.get_json(f"{self.api_url}/traces/{tx_hash.upper()}", headers=self._headers())
        except UpstreamError as exc:
            logger.info("ton_trace_unavailable", extra={"event": "ton_trace_unavailable", "key": tx_hash, "error": str(exc)})
            return
        stack = [payload]
        while stack:
            node = stack.pop()
            if not isinstance(node, dict):
                continue
            amounts.collect_transaction(node.get("transaction", node))
            children = node.get("children")
            if isinstance(children, list):
                stack.extend(reversed(children))

    async def fetch(self, tx_hash: str) -> TonTransactionDetails:
        tx_hash = (tx_hash or "").strip()
        if not tx_hash:
            raise OracleError("Transaction hash is empty")
        try:
            payload = await self.http.get_json(
                f"{self.api_url}/blockchain/transactions/{tx_hash}", headers=self._headers()
            )
        except UpstreamError as exc:
            raise OracleError(
                f"Ton API request failed for {tx_hash}: {exc}", status_code=exc.status_code, body=exc.body
            ) from exc
        if not isinstance(payload, dict):
            raise OracleError(f"Ton API returned an unexpected payload for {tx_hash}")

        tx = payload.get("transaction", payload)
        if not isinstance(tx, dict):
            raise OracleError(f"Ton API returned an unexpected payload for {tx_hash}")
        in_msg = _in_message(tx)
        out_msgs = _out_messages(tx)

        amounts = DecodedAmounts()
        amounts.collect_transaction(tx)
        if not amounts.has_jetton_amount:
            await self._collect_trace(tx_hash, amounts)

        account_address = _address_of(tx.get("account"))
        from_raw = _message_address(in_msg, "source") or account_address
        to_raw = (
            _message_address(in_msg, "destination")
            or (_message_address(out_msgs[0], "destination") if out_msgs else None)
            or account_address
        )
        resolved_from = from_raw or to_raw
        resolved_to = to_raw or from_raw
        if not resolved_from or not resolved_to:
            raise OracleError(f"Ton transaction {tx_hash} missing address details")

        friendly_from = ton_friendly_address(resolved_from)
        friendly_to = ton_friendly_address(resolved_to)

        amount_nano, source = self._select_amount(tx, in_msg, out_msgs, amounts, friendly_from, friendly_to)
        logger.info(
            "ton_amount_selected",
            extra={"event": "ton_amount_selected", "key": tx_hash, "state": source or "none"},
        )

        utime = tx.get("utime", tx.get("timestamp"))
        if isinstance(utime, (int, float)) and not isinstance(utime, bool):
            timestamp_ms = int(utime * 1000)
        else:
            timestamp_ms = int(time.time() * 1000)

        return TonTransactionDetails(
            from_wallet=friendly_from,
            to_wallet=friendly_to,
            amount_nano=amount_nano or "0",
            timestamp_ms=timestamp_ms,
        )

    @staticmethod
    def _select_amount(
        tx: dict,
        in_msg: dict | None,
        out_msgs: list[dict],
        amounts: DecodedAmounts,
        friendly_from: str,
        friendly_to: str,
    ) -> tuple[str | None, str]:
        def first_positive(candidates) -> str | None:
            for candidate in candidates:
                amount = positive_nano(candidate)
                if amount:
                    return amount
            return None

        matched: list[str | None] = []
        others: list[str | None] = []
        for msg in out_msgs:
            value = _message_value(msg)
            dest = ton_friendly_address(_message_address(msg, "destination"))
            src = ton_friendly_address(_message_address(msg, "source"))
            if dest == friendly_to or src == friendly_from:
                matched.append(value)
            else:
                others.append(value)

        credit_phase = tx.get("credit_phase")
        steps = (
            ("decoded_priority", lambda: first_positive(amounts.priority)),
            ("out_messages", lambda: first_positive(matched + others)),
            ("decoded_fallback", lambda: first_positive(amounts.fallback)),
            ("input_message", lambda: first_positive([_message_value(in_msg)])),
            (
                "transaction",
                lambda: first_positive(
                    [_message_value(tx), credit_phase.get("credit") if isinstance(credit_phase, dict) else None]
                ),
            ),
        )
        for source, pick in steps:
            amount = pick()
            if amount:
                return amount, source
        return None, ""
