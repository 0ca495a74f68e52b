"""Decimal money helpers.

Amounts are Decimal in code and 2-decimal strings in MongoDB, so no float
ever touches a price, a discount or a final amount.
"""
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Any) -> Decimal:
    """Parse a stored or submitted amount and quantize it to cents."""
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError) as e:
            raise ValueError(f"Invalid money amount: {value!r}") from e
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def money_str(value: Any) -> str:
    return str(to_money(value))
