"""
Seller repository for offer owners.

Provides read access to the seller account fields settlement needs for
commission reporting and account-level ad-conversion credentials.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from domain.offer import AdPixel
from domain.seller import Seller
from repositories.client import get_supabase


def _parse_utc_datetime(value: Any) -> datetime:
    """Parse a Supabase timestamp into a timezone-aware UTC datetime."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        text = value.replace("Z", "+00:00")
        dt = datetime.fromisoformat(text)
    else:
        raise TypeError(f"Unsupported timestamp type: {type(value)!r}")

    if dt.tzinfo is None or dt.utcoffset() is None:
        return dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc)


def _row_to_seller(row: Mapping[str, Any]) -> Seller:
    pixel_id = row.get("ad_pixel_id")
    ad_pixel = None
    if pixel_id:
        ad_pixel = AdPixel(pixel_id=str(pixel_id), access_token=str(row.get("ad_access_token") or ""))

    return Seller(
        seller_id=str(row["seller_id"]),
        email=str(row["email"]),
        name=row.get("name"),
        ad_pixel=ad_pixel,
        created_at=_parse_utc_datetime(row["created_at_utc"]) if row.get("created_at_utc") else None,
    )


def get_seller_by_id(seller_id: str) -> Optional[Seller]:
    """
    Get a seller by their ID.

    Args:
        seller_id: Seller (offer owner) identifier

    Returns:
        Seller domain model or None if not found

    Example:
        seller = get_seller_by_id(offer.owner_id) or Seller.unknown(offer.owner_id)
    """
    response = (
        get_supabase()
        .table("sellers")
        .select("*")
        .eq("seller_id", seller_id)
        .limit(1)
        .execute()
    )

    error = getattr(response, "error", None)
    if error:
        raise RuntimeError(f"Failed to fetch seller: {error}")

    rows = getattr(response, "data", None) or []

    if not rows:
        return None

    return _row_to_seller(rows[0])


__all__ = ["get_seller_by_id"]
