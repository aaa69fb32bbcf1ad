"""Decimal handling for credit and currency amounts. Floats are never accepted."""

from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any

CREDIT_QUANT = Decimal("0.0001")
CURRENCY_QUANT = Decimal("0.01")

# Largest magnitudes the Numeric(18, 4) credit and Numeric(12, 2) money columns hold.
MAX_CREDITS = Decimal("99999999999999.9999")
MAX_CURRENCY = Decimal("9999999999.99")


def to_decimal(value: Any) -> Decimal:
    """Parse an int, str or Decimal into a finite Decimal."""
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError(f"Amounts must be decimal strings or integers, got {value!r}")
    if isinstance(value, Decimal):
        parsed = value
    elif isinstance(value, (int, str)):
        try:
            parsed = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise ValueError(f"Invalid decimal amount: {value!r}") from exc
    else:
        raise ValueError(f"Unsupported amount type: {type(value).__name__}")
    if not parsed.is_finite():
        raise ValueError(f"Amount must be finite: {value!r}")
    return parsed


def _bounded(value: Decimal, quant: Decimal, limit: Decimal, raw: Any) -> Decimal:
    if abs(value) > limit:
        raise ValueError(f"Amount out of range: {raw!r}")
    try:
        return value.quantize(quant, rounding=ROUND_DOWN)
    except InvalidOperation as exc:
        raise ValueError(f"Amount out of range: {raw!r}") from exc


def to_credits(value: Any) -> Decimal:
    """Credits carry four decimal places; extra precision is truncated toward zero."""
    return _bounded(to_decimal(value), CREDIT_QUANT, MAX_CREDITS, value)


def minor_units_to_decimal(value: Any) -> Decimal:
    """Gateway amounts arrive in minor units (cents, kobo)."""
    if value is None:
        return Decimal("0")
    return _bounded(to_decimal(value) / 100, CURRENCY_QUANT, MAX_CURRENCY, value)


def format_amount(value: Decimal | None) -> str:
    if value is None:
        return "0"
    return format(Decimal(value).normalize(), "f")
