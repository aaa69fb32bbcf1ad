"""Request/response field types for credit amounts. Floats are rejected."""

from decimal import Decimal
from typing import Annotated, Any

from pydantic import BeforeValidator, PlainSerializer

from app.shared.core.money import format_amount, to_credits


def _parse_credits(value: Any) -> Decimal:
    return to_credits(value)


CreditAmount = Annotated[
    Decimal,
    BeforeValidator(_parse_credits),
    PlainSerializer(format_amount, return_type=str),
]
