"""Money — decimal arithmetic with banker's rounding.

All monetary values use Decimal for exact arithmetic. No floats in finance.

Two precisions are used throughout the engine:
- CALC (6 dp) for intermediate calculation amounts
- PAYABLE (2 dp) for anything that is invoiced or paid out

Rounding is ROUND_HALF_EVEN everywhere so that repeated rounding of
large batches does not drift in one direction.
"""

from __future__ import annotations

from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from typing import Union

from fundops.errors import ValidationError

PAYABLE_QUANT = Decimal("0.01")
CALC_QUANT = Decimal("0.000001")
ZERO = Decimal("0")

Numeric = Union[Decimal, int, str]


def to_decimal(value: Numeric, field_name: str = "amount") -> Decimal:
    """Coerce a value into a finite Decimal.

    Floats are rejected: their binary representation would leak
    into the arithmetic.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(
            f"{field_name}: floats are not accepted for money, use str or Decimal",
            {"field": field_name},
        )
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"{field_name}: not a number: {value!r}", {"field": field_name})
    if not result.is_finite():
        raise ValidationError(f"{field_name}: must be finite", {"field": field_name})
    return result


def round_calc(value: Decimal, places: int = 6) -> Decimal:
    """Round to calculation precision (half-even)."""
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_EVEN)


def round_payable(value: Decimal, places: int = 2) -> Decimal:
    """Round to payable precision (half-even)."""
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_EVEN)


def percent_to_rate(percentage: Numeric) -> Decimal:
    """Convert a percentage (e.g. ``"2.5"``) into a rate (``0.025``)."""
    return to_decimal(percentage, "percentage") / Decimal("100")
