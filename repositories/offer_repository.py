"""
Offer repository (read-only catalog access).

Offers are owned by the catalog/CRUD side of the platform. Settlement only
looks them up by slug and maps the row into the Offer domain entity.

Rows may still carry the single-value legacy integration columns
(analytics_webhook_url, ad_pixel_id/ad_access_token) next to the list
columns; both are merged here so the rest of the pipeline sees one shape.
"""

from __future__ import annotations

from typing import Any, List, Mapping, Optional

from domain.offer import (
    AdPixel,
    MembershipWebhook,
    Offer,
    OfferIntegrations,
    OfferProduct,
    Upsell,
)
from repositories.client import get_supabase

_OFFERS_TABLE: str = "offers"


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def _product_from_json(data: Mapping[str, Any]) -> OfferProduct:
    product_id = data.get("id") or data.get("_id")
    return OfferProduct(
        product_id=str(product_id) if product_id is not None else None,
        name=str(data["name"]),
        price_in_cents=int(data["price_in_cents"]),
        compare_at_price_in_cents=_optional_int(data.get("compare_at_price_in_cents")),
        custom_id=data.get("custom_id") or None,
    )


def _upsell_from_json(data: Optional[Mapping[str, Any]]) -> Optional[Upsell]:
    if not data:
        return None
    return Upsell(
        enabled=bool(data.get("enabled", False)),
        name=str(data.get("name") or ""),
        price_in_cents=int(data.get("price_in_cents") or 0),
        redirect_url=str(data.get("redirect_url") or ""),
        custom_id=data.get("custom_id") or None,
    )


def _membership_from_json(data: Optional[Mapping[str, Any]]) -> Optional[MembershipWebhook]:
    if not data:
        return None
    return MembershipWebhook(
        enabled=bool(data.get("enabled", False)),
        url=str(data.get("url") or ""),
        auth_token=str(data.get("auth_token") or ""),
    )


def _integrations_from_row(row: Mapping[str, Any]) -> OfferIntegrations:
    urls: List[str] = [str(url) for url in row.get("analytics_webhook_urls") or []]
    legacy_url = row.get("analytics_webhook_url")
    if legacy_url and legacy_url not in urls:
        urls.append(str(legacy_url))

    pixels: List[AdPixel] = [
        AdPixel(pixel_id=str(p.get("pixel_id") or ""), access_token=str(p.get("access_token") or ""))
        for p in row.get("ad_pixels") or []
    ]
    legacy_pixel_id = row.get("ad_pixel_id")
    if legacy_pixel_id and not any(p.pixel_id == legacy_pixel_id for p in pixels):
        pixels.append(AdPixel(pixel_id=str(legacy_pixel_id), access_token=str(row.get("ad_access_token") or "")))

    return OfferIntegrations(
        analytics_webhook_urls=tuple(urls),
        membership_webhook=_membership_from_json(row.get("membership_webhook")),
        ad_pixels=tuple(pixels),
    )


def _row_to_offer(row: Mapping[str, Any]) -> Offer:
    """Convert a Supabase row into an Offer."""

    return Offer(
        offer_id=str(row["offer_id"]),
        slug=str(row["slug"]),
        owner_id=str(row["owner_id"]),
        name=str(row.get("name") or row["slug"]),
        currency=str(row.get("currency") or "brl"),
        main_product=_product_from_json(row["main_product"]),
        order_bumps=tuple(_product_from_json(b) for b in row.get("order_bumps") or []),
        upsell=_upsell_from_json(row.get("upsell")),
        integrations=_integrations_from_row(row),
    )


def get_offer_by_slug(slug: str) -> Optional[Offer]:
    """
    Get an offer by its public slug.

    Slugs are stored lower-cased and trimmed by the catalog; the lookup
    normalizes the same way.

    Returns:
        Offer domain model or None if not found
    """

    response = (
        get_supabase()
        .table(_OFFERS_TABLE)
        .select("*")
        .eq("slug", slug.strip().lower())
        .limit(1)
        .execute()
    )

    error = getattr(response, "error", None)
    if error:
        raise RuntimeError(f"Failed to fetch offer: {error}")

    rows = getattr(response, "data", None) or []
    if not rows:
        return None
    return _row_to_offer(rows[0])


def get_offer_by_id(offer_id: str) -> Optional[Offer]:
    """Get an offer by id (used when replaying integrations for a stored sale)."""

    response = (
        get_supabase()
        .table(_OFFERS_TABLE)
        .select("*")
        .eq("offer_id", offer_id)
        .limit(1)
        .execute()
    )

    error = getattr(response, "error", None)
    if error:
        raise RuntimeError(f"Failed to fetch offer: {error}")

    rows = getattr(response, "data", None) or []
    if not rows:
        return None
    return _row_to_offer(rows[0])


__all__ = ["get_offer_by_slug", "get_offer_by_id"]
