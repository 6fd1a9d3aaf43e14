from __future__ import annotations

import math
from datetime import datetime, timezone
from decimal import ROUND_FLOOR, Decimal, InvalidOperation

NANO_PER_TON = Decimal(10) ** 9


def safe_html(text) -> str:
    """Escape special HTML characters so dynamic content is safe in HTML parse_mode."""
    return str(text).replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _to_decimal(value) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not parsed.is_finite():
        return None
    return parsed


def ton_to_nano(value) -> str:
    """Decimal TON amount -> integer nano string, floor-rounded. Bad or negative input gives "0"."""
    parsed = _to_decimal(value)
    if parsed is None or parsed < 0:
        return "0"
    return str((parsed * NANO_PER_TON).to_integral_value(rounding=ROUND_FLOOR))


def nano_to_ton(amount_nano) -> str:
    """Integer nano string -> trimmed decimal TON string ("1.5", "0")."""
    parsed = _to_decimal(amount_nano)
    if parsed is None or parsed == 0:
        return "0"
    text = f"{parsed / NANO_PER_TON:.9f}".rstrip("0").rstrip(".")
    return text or "0"


def positive_nano(value) -> str | None:
    """Floor a candidate amount to an integer nano string; None unless finite and > 0."""
    parsed = _to_decimal(value)
    if parsed is None or parsed <= 0:
        return None
    floored = parsed.to_integral_value(rounding=ROUND_FLOOR)
    if floored <= 0:
        return None
    return str(floored)


def as_int(value) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        parsed = float(str(value).strip())
    except ValueError:
        return None
    if not math.isfinite(parsed):
        return None
    return int(parsed)


def fmt_timestamp(ms) -> str:
    """Epoch millis -> "2023-11-14 22:13:20 UTC (1700000000)"; "N/A" when missing."""
    if ms is None or isinstance(ms, bool):
        return "N/A"
    try:
        value = float(ms)
    except (TypeError, ValueError):
        return "N/A"
    if not math.isfinite(value):
        return "N/A"
    try:
        stamp = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return "N/A"
    seconds = value / 1000
    seconds_text = str(int(seconds)) if seconds.is_integer() else f"{seconds:.3f}".rstrip("0")
    return f"{stamp.strftime('%Y-%m-%d %H:%M:%S')} UTC ({seconds_text})"
