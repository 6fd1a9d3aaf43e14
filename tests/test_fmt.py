from __future__ import annotations

import pytest

from capadmin.core.fmt import as_int, fmt_timestamp, nano_to_ton, positive_nano, ton_to_nano


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("10", "10000000000"),
        ("1.5", "1500000000"),
        ("0.0000000019", "1"),
        (2, "2000000000"),
        ("-1", "0"),
        ("NaN", "0"),
        ("Infinity", "0"),
        ("abc", "0"),
        (None, "0"),
    ],
)
def test_ton_to_nano(value, expected) -> None:
    assert ton_to_nano(value) == expected


def test_nano_to_ton_trims_zeros() -> None:
    assert nano_to_ton("1500000000") == "1.5"
    assert nano_to_ton(3_000_000_000) == "3"
    assert nano_to_ton("0") == "0"


def test_positive_nano_skips_non_positive() -> None:
    assert positive_nano("12.9") == "12"
    assert positive_nano("0") is None
    assert positive_nano("-3") is None
    assert positive_nano("0.5") is None
    assert positive_nano(True) is None


def test_fmt_timestamp() -> None:
    assert fmt_timestamp(1_700_000_000_000) == "2023-11-14 22:13:20 UTC (1700000000)"
    assert fmt_timestamp(1_700_000_000_500) == "2023-11-14 22:13:20 UTC (1700000000.5)"
    assert fmt_timestamp(None) == "N/A"
    assert fmt_timestamp(float("nan")) == "N/A"
    assert fmt_timestamp("soon") == "N/A"


def test_as_int() -> None:
    assert as_int("1700000000000") == 1_700_000_000_000
    assert as_int(" 42 ") == 42
    assert as_int("tomorrow") is None
    assert as_int(None) is None
