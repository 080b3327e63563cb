"""Decimal helpers for currency amounts."""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Any) -> Decimal:
    """
    Convert a number or numeric string to a 2-place Decimal.

    Floats go through ``str`` so 4.1 stays 4.10 rather than 4.0999...

    Raises:
        ValueError: If the value is not numeric, not finite or too large to
            hold two decimal places
    """
    if isinstance(value, bool):
        raise ValueError(f"Not a money amount: {value!r}")

    if isinstance(value, float):
        value = str(value)

    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError):
        raise ValueError(f"Not a money amount: {value!r}")

    if not amount.is_finite():
        raise ValueError(f"Not a money amount: {value!r}")

    try:
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValueError(f"Money amount out of range: {value!r}")
