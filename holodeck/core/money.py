"""
Money Utilities - Precision Financial Calculations
===================================================
Every cash, price and quantity value inside the simulator is a
`decimal.Decimal`. Floats only exist at the edges (pandas frames, numpy
statistics) and are converted here, via their string form, so that
`to_decimal(0.1)` is exactly `Decimal("0.1")`.
"""

from decimal import Decimal, InvalidOperation
from typing import Union

ZERO = Decimal("0")
ONE = Decimal("1")

Numeric = Union[Decimal, int, float, str]


def to_decimal(value: Numeric) -> Decimal:
    """
    Convert a value to Decimal without picking up binary float noise.

    Uses string conversion for floats: Decimal(0.1) != Decimal("0.1").

    Raises:
        ValueError: If the value is None, a bool, or not a number.
    """
    if isinstance(value, Decimal):
        return value
    if value is None or isinstance(value, bool):
        raise ValueError(f"Cannot convert {value!r} to Decimal")
    try:
        if isinstance(value, float):
            return Decimal(repr(float(value)))
        return Decimal(str(value).strip())
    except InvalidOperation as e:
        raise ValueError(f"Cannot convert {value!r} to Decimal") from e


def decimal_from_float(value: float) -> Decimal:
    """Statistics helper: numpy float -> Decimal, keeping +/-Infinity."""
    value = float(value)
    if value != value:  # NaN
        return ZERO
    return Decimal(repr(value))
