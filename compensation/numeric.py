"""
compensation/numeric.py

Decimal helpers shared by the resolver and the evaluators.

All payout arithmetic runs on :class:`decimal.Decimal`. Floats coming from
JSON config are converted through their ``str`` form so ``0.05`` becomes
``Decimal("0.05")`` rather than its binary approximation. Rounding happens
only in :func:`quantize_money`, which is reserved for presentation.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

ZERO = Decimal("0")
MONEY_QUANT = Decimal("0.01")

_BOOL_TYPES = (bool,)


def to_decimal(value: Any) -> Decimal | None:
    """
    Convert a scalar to ``Decimal``; return ``None`` when it is not numeric.

    Accepts ints, floats, Decimals and numeric strings (thousands separators
    and surrounding whitespace tolerated). Booleans, NaN and infinities are
    rejected.
    """

    if value is None or isinstance(value, _BOOL_TYPES):
        return None
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        return Decimal(value)
    elif isinstance(value, float):
        result = Decimal(str(value))
    elif isinstance(value, str):
        cleaned = value.strip().replace(",", "")
        if not cleaned:
            return None
        try:
            result = Decimal(cleaned)
        except InvalidOperation:
            return None
    else:
        return None

    if not result.is_finite():
        return None
    return result


def quantize_money(value: Decimal) -> Decimal:
    """Round a monetary amount to cents for display."""

    return value.quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def decimal_to_str(value: Decimal | None) -> str | None:
    """Serialise a Decimal for JSON storage without losing precision."""

    if value is None:
        return None
    return format(value.normalize(), "f") if value != ZERO else "0"
