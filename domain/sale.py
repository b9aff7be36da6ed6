"""
Domain: Sale ledger rows.

Contract excerpts relevant here:
- Exactly one Sale exists per upstream transaction id.
- Items are a frozen snapshot taken at settlement time, not a live reference to
  the offer (offers change after a sale).
- total_amount_in_cents == main price * quantity + sum(bump prices); bumps and
  upsells are always quantity 1.
- 0 <= platform_fee_in_cents <= total_amount_in_cents.

Lifecycle:
    PENDING -> SUCCEEDED -> REFUNDED
    PENDING -> FAILED
No transition leaves REFUNDED or FAILED, and REFUNDED is only reachable from
SUCCEEDED.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple
from uuid import UUID

from .money import require_minor_units, seller_payout
from .time import require_utc_timestamp


class SaleStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    REFUNDED = "refunded"
    FAILED = "failed"


_ALLOWED_TRANSITIONS: Dict[SaleStatus, FrozenSet[SaleStatus]] = {
    SaleStatus.PENDING: frozenset({SaleStatus.SUCCEEDED, SaleStatus.FAILED}),
    SaleStatus.SUCCEEDED: frozenset({SaleStatus.REFUNDED}),
    SaleStatus.REFUNDED: frozenset(),
    SaleStatus.FAILED: frozenset(),
}


class InvalidSaleTransition(Exception):
    """Raised when a status change is not allowed by the sale lifecycle."""

    def __init__(self, current: SaleStatus, target: SaleStatus) -> None:
        super().__init__(f"Cannot transition sale from {current.value} to {target.value}")
        self.current = current
        self.target = target


@dataclass(frozen=True, slots=True)
class SaleItem:
    """One purchased line, captured at settlement time."""

    name: str
    price_in_cents: int
    is_order_bump: bool
    product_id: Optional[str] = None
    custom_id: Optional[str] = None
    # Display-only; used to build pre-discount reference totals for outbound
    # payloads and never written to the ledger.
    compare_at_price_in_cents: Optional[int] = None

    def __post_init__(self) -> None:
        require_minor_units("price_in_cents", self.price_in_cents)


def expected_total(items: Tuple[SaleItem, ...], quantity: int) -> int:
    """Sum item prices; only the first (main/upsell) item is multiplied by quantity."""

    if not items:
        return 0
    head, *rest = items
    return head.price_in_cents * quantity + sum(item.price_in_cents for item in rest)


@dataclass(frozen=True, slots=True)
class SaleRecord:
    """
    Immutable ledger row for one settled upstream transaction.

    transaction_id is the idempotency key; storage holds a unique index on it.
    """

    sale_id: UUID
    transaction_id: str
    seller_id: str
    offer_id: str
    customer_name: str
    customer_email: str
    items: Tuple[SaleItem, ...]
    total_amount_in_cents: int
    platform_fee_in_cents: int
    currency: str
    status: SaleStatus
    created_at: datetime
    quantity: int = 1
    is_upsell: bool = False

    def __post_init__(self) -> None:
        require_utc_timestamp("created_at", self.created_at)
        if not self.transaction_id:
            raise ValueError("transaction_id is required")
        if self.quantity < 1:
            raise ValueError("quantity must be >= 1")
        if self.is_upsell and self.quantity != 1:
            raise ValueError("upsell sales always have quantity 1")
        if not 0 <= self.platform_fee_in_cents <= self.total_amount_in_cents:
            raise ValueError("platform_fee_in_cents must be within [0, total_amount_in_cents]")
        if self.total_amount_in_cents != expected_total(self.items, self.quantity):
            raise ValueError("total_amount_in_cents does not match the sum of items")

    @property
    def seller_amount_in_cents(self) -> int:
        return seller_payout(self.total_amount_in_cents, self.platform_fee_in_cents)

    def can_transition_to(self, target: SaleStatus) -> bool:
        return target in _ALLOWED_TRANSITIONS[self.status]

    def transition_to(self, target: SaleStatus) -> "SaleRecord":
        """Return a copy with the new status, or raise InvalidSaleTransition."""

        if not self.can_transition_to(target):
            raise InvalidSaleTransition(self.status, target)
        return replace(self, status=target)


__all__ = [
    "SaleStatus",
    "SaleItem",
    "SaleRecord",
    "InvalidSaleTransition",
    "expected_total",
]
