"""Shared decimal conventions for vote weights.

Event Replay and Chain Read both go through these helpers so their results
are directly comparable: two decimal places, half-up rounding.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, localcontext

WEIGHT_QUANTUM = Decimal("0.01")
ZERO_WEIGHT = Decimal("0.00")

# Wide enough for a sum of tens of thousands of 18-decimal amounts.
SUM_PRECISION = 80


def format_weight(value: Decimal) -> Decimal:
    """Quantize a token-unit amount to two decimals."""
    with localcontext() as ctx:
        ctx.prec = SUM_PRECISION
        return value.quantize(WEIGHT_QUANTUM, rounding=ROUND_HALF_UP)


def to_base_units(value: Decimal, decimals: int) -> int:
    """Convert a token-unit amount to integer base units (rounded, sign kept)."""
    with localcontext() as ctx:
        ctx.prec = SUM_PRECISION
        return int(value.scaleb(decimals).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_base_units(raw: int, decimals: int) -> Decimal:
    """Format an integer base-unit amount as a two-decimal weight."""
    with localcontext() as ctx:
        ctx.prec = SUM_PRECISION
        return format_weight(Decimal(raw).scaleb(-decimals))


def percent(part: Decimal | int, whole: Decimal | int) -> Decimal:
    """`part / whole * 100` to two decimals; 0.00 when `whole` is zero."""
    if not whole:
        return ZERO_WEIGHT
    with localcontext() as ctx:
        ctx.prec = SUM_PRECISION
        return format_weight(Decimal(part) / Decimal(whole) * 100)
