from decimal import Decimal

import pytest

from app.shared.core.money import (
    MAX_CREDITS,
    format_amount,
    minor_units_to_decimal,
    to_credits,
    to_decimal,
)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("12.345678", Decimal("12.3456")),
        (7, Decimal("7.0000")),
        (" 0.00009 ", Decimal("0.0000")),
        ("-1.99999", Decimal("-1.9999")),
        (Decimal("3.5"), Decimal("3.5000")),
    ],
)
def test_credits_truncate_to_four_places(raw, expected):
    assert to_credits(raw) == expected


@pytest.mark.parametrize("raw", [1.5, True, "abc", "NaN", "Infinity", None, [1]])
def test_rejected_amounts(raw):
    with pytest.raises(ValueError):
        to_decimal(raw)


def test_minor_units():
    assert minor_units_to_decimal(4999) == Decimal("49.99")
    assert minor_units_to_decimal("250000") == Decimal("2500.00")
    assert minor_units_to_decimal(None) == Decimal("0")


@pytest.mark.parametrize(
    "value,expected",
    [
        (Decimal("500.0000"), "500"),
        (Decimal("60000.0000"), "60000"),
        (Decimal("-120.2500"), "-120.25"),
        (None, "0"),
    ],
)
def test_format_amount(value, expected):
    assert format_amount(value) == expected


@pytest.mark.parametrize("raw", ["1e40", "100000000000000", "-1e20", Decimal("1E+30")])
def test_credits_outside_column_range_are_rejected(raw):
    with pytest.raises(ValueError, match="out of range"):
        to_credits(raw)


def test_largest_credit_amount_is_accepted():
    assert to_credits("99999999999999.99999") == MAX_CREDITS


def test_huge_minor_units_are_rejected():
    with pytest.raises(ValueError, match="out of range"):
        minor_units_to_decimal(10**40)
