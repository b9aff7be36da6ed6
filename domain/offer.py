"""
Domain: Offers (seller-configured checkout bundles).

Offers are created and edited elsewhere; the settlement pipeline only reads
them. An offer bundles:
- a main product
- zero or more order bumps (ids referenced by checkout metadata)
- an optional post-purchase upsell
- per-offer integration settings (analytics webhooks, membership webhook, ad pixels)

Prices are integer minor units. No floating currency amounts live here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple

from .money import require_minor_units


@dataclass(frozen=True, slots=True)
class OfferProduct:
    """A sellable line on an offer: the main product or one order bump."""

    product_id: Optional[str]
    name: str
    price_in_cents: int
    compare_at_price_in_cents: Optional[int] = None
    custom_id: Optional[str] = None  # seller-defined id used by membership platforms

    def __post_init__(self) -> None:
        require_minor_units("price_in_cents", self.price_in_cents)
        if self.compare_at_price_in_cents is not None:
            require_minor_units("compare_at_price_in_cents", self.compare_at_price_in_cents)


@dataclass(frozen=True, slots=True)
class Upsell:
    enabled: bool
    name: str
    price_in_cents: int
    redirect_url: str = ""
    custom_id: Optional[str] = None

    def __post_init__(self) -> None:
        require_minor_units("upsell.price_in_cents", self.price_in_cents)


@dataclass(frozen=True, slots=True)
class MembershipWebhook:
    enabled: bool
    url: str
    auth_token: str = ""

    @property
    def is_active(self) -> bool:
        return self.enabled and bool(self.url)


@dataclass(frozen=True, slots=True)
class AdPixel:
    """Ad-conversion credentials (pixel id + access token)."""

    pixel_id: str
    access_token: str


@dataclass(frozen=True, slots=True)
class OfferIntegrations:
    analytics_webhook_urls: Tuple[str, ...] = ()
    membership_webhook: Optional[MembershipWebhook] = None
    ad_pixels: Tuple[AdPixel, ...] = ()

    def deliverable_analytics_urls(self) -> Tuple[str, ...]:
        """Configured analytics URLs that look like URLs, deduplicated in order."""

        seen: list[str] = []
        for url in self.analytics_webhook_urls:
            if url and url.startswith("http") and url not in seen:
                seen.append(url)
        return tuple(seen)


@dataclass(frozen=True, slots=True)
class Offer:
    offer_id: str
    slug: str
    owner_id: str
    name: str
    main_product: OfferProduct
    currency: str = "brl"
    order_bumps: Tuple[OfferProduct, ...] = ()
    upsell: Optional[Upsell] = None
    integrations: OfferIntegrations = field(default_factory=OfferIntegrations)

    def find_order_bump(self, bump_id: str) -> Optional[OfferProduct]:
        for bump in self.order_bumps:
            if bump.product_id is not None and bump.product_id == bump_id:
                return bump
        return None


__all__ = [
    "OfferProduct",
    "Upsell",
    "MembershipWebhook",
    "AdPixel",
    "OfferIntegrations",
    "Offer",
]
