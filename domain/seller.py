"""
Domain: Seller (offer owner) accounts.

Only the slice of the seller account the settlement pipeline needs:
identity for commission reporting, and optional account-level ad-conversion
credentials used when an offer does not carry its own pixel.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .offer import AdPixel
from .time import require_utc_timestamp

UNKNOWN_SELLER_ID = "unknown_seller"
UNKNOWN_SELLER_EMAIL = "unknown@email.com"


@dataclass(frozen=True, slots=True)
class Seller:
    """
    Seller account as seen by settlement.

    Supports:
    - Commission attribution (seller_id, email)
    - Seller-wide ad pixel credentials (fallback for offers without one)
    """

    seller_id: str
    email: str
    name: Optional[str] = None
    ad_pixel: Optional[AdPixel] = None
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.created_at is not None:
            require_utc_timestamp("created_at", self.created_at)

    @classmethod
    def unknown(cls, seller_id: Optional[str] = None) -> "Seller":
        """Placeholder used when the owner row cannot be loaded after commit."""
        return cls(seller_id=seller_id or UNKNOWN_SELLER_ID, email=UNKNOWN_SELLER_EMAIL)
