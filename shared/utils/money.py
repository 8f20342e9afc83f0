"""
Decimal helpers for money values.

Amounts are kept at full precision through every computation. Rounding to two
places (half-up) happens only when a value is presented.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

CENT = Decimal("0.01")
ZERO = Decimal("0")


def to_decimal(value: Any) -> Decimal:
    """
    Convert a store or user value to Decimal.

    Floats go through str() so 10.1 becomes Decimal("10.1"), not its binary
    expansion.
    """
    if isinstance(value, Decimal):
        return value
    if value is None:
        return ZERO
    try:
        if isinstance(value, float):
            return Decimal(str(value))
        return Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValueError(f"Not a money value: {value!r}") from exc


def money(value: Any) -> Decimal:
    """Round to cents for presentation."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def format_currency(value: Any, symbol: str = "$") -> str:
    amount = money(value)
    sign = "-" if amount < 0 else ""
    return f"{sign}{symbol}{abs(amount):,.2f}"
