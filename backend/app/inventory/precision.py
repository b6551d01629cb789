from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Optional


ZERO = Decimal("0")
Q2 = Decimal("0.01")


def to_decimal(v, *, field: str = "quantity") -> Decimal:
    # Route floats through str() so 0.1 stays 0.1 and never becomes 0.1000000000000000055...
    if isinstance(v, Decimal):
        d = v
    elif isinstance(v, bool):
        raise ValueError(f"{field} must be a number")
    else:
        try:
            d = Decimal(str(v).strip())
        except (InvalidOperation, ValueError):
            raise ValueError(f"{field} must be a number (got {v!r})")
    if not d.is_finite():
        raise ValueError(f"{field} must be finite")
    return d


def fmt_decimal(v: Optional[Decimal]) -> str:
    """
    Render a decimal with at least two fraction digits and no rounding:
    100 -> "100.00", 50.5 -> "50.50", 0.125 -> "0.125".
    """
    if v is None:
        return ""
    d = to_decimal(v)
    if d == d.quantize(Q2):
        return str(d.quantize(Q2))
    return format(d.normalize(), "f")
