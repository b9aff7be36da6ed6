"""
Domain: monetary rules for settlement.

All amounts are integers in minor currency units (cents). Percentages are held
as Decimal so the fee split never touches binary floating point.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

PLATFORM_FEE_RATE: Decimal = Decimal("0.05")


def require_minor_units(name: str, value: object) -> None:
    """Prices are non-negative ints; bool is rejected even though it subclasses int."""

    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer amount in minor units")
    if value < 0:
        raise ValueError(f"{name} must be >= 0")


def calculate_platform_fee(total_in_cents: int, rate: Decimal = PLATFORM_FEE_RATE) -> int:
    """
    Platform share of a settled total, rounded half-up to a whole minor unit.

    The result is clamped to [0, total] so a misconfigured rate can never
    produce a negative fee or a fee larger than what was charged.

    Example:
        calculate_platform_fee(2980)  # 149
    """

    if total_in_cents <= 0:
        raise ValueError("total_in_cents must be positive to compute a fee")

    fee = (Decimal(total_in_cents) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return max(0, min(int(fee), total_in_cents))


def seller_payout(total_in_cents: int, platform_fee_in_cents: int) -> int:
    return total_in_cents - platform_fee_in_cents


def reference_price(price_in_cents: int, compare_at_price_in_cents: Optional[int]) -> int:
    """Pre-discount display price: compare-at when it is higher than the sale price."""

    if compare_at_price_in_cents is not None and compare_at_price_in_cents > price_in_cents:
        return compare_at_price_in_cents
    return price_in_cents


def cents_to_units(amount_in_cents: int) -> float:
    """Major units for outbound JSON payloads only; never persisted."""

    return float(Decimal(amount_in_cents) / Decimal(100))


__all__ = [
    "PLATFORM_FEE_RATE",
    "require_minor_units",
    "calculate_platform_fee",
    "seller_payout",
    "reference_price",
    "cents_to_units",
]
