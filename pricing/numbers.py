# Decimal helpers shared by the distance index, the fare tables and the engine.
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_decimal(value) -> Optional[Decimal]:
    """Coerce ints, floats, strings and Decimals to Decimal; None and junk map to None."""
    if value is None or value == "":
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None


def round2(value) -> Decimal:
    """Round half-up to two fraction digits."""
    dec = to_decimal(value)
    if dec is None:
        return ZERO
    return dec.quantize(CENT, rounding=ROUND_HALF_UP)


def fmt_km(value) -> str:
    """Render a kilometre bound without trailing zeros; None is the open end."""
    dec = to_decimal(value)
    if dec is None:
        return "∞"
    if dec == dec.to_integral_value():
        return str(dec.quantize(Decimal(1)))
    return format(dec.normalize(), "f")
