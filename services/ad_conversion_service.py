"""
Ad-conversion (server-side pixel) integration.

Sends one "Purchase" event per configured pixel to the conversions API:
    POST {AD_CONVERSION_API_URL}/{pixel_id}/events
    {"data": [event], "access_token": "<token>"}

Buyer PII is normalized (trimmed, lower-cased; phone and zip reduced to digits)
and SHA-256 hashed before it leaves the process. Click-id cookies (fbc, fbp)
are sent as-is.
"""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Any, Dict, List, Optional

from domain.money import cents_to_units
from domain.offer import AdPixel
from services.config import get_settings
from services.metrics import ad_pixels_incomplete_total
from services.webhook_dispatcher import DispatchContext, DispatchPreconditionError, OutboundRequest

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")


def hash_pii(value: str) -> str:
    """SHA-256 hex digest of the trimmed, lower-cased value."""

    return hashlib.sha256(value.strip().lower().encode("utf-8")).hexdigest()


def _digits(value: str) -> str:
    return _NON_DIGITS.sub("", value)


def build_user_data(
    ip: Optional[str],
    user_agent: Optional[str],
    email: Optional[str] = None,
    phone: Optional[str] = None,
    name: Optional[str] = None,
    fbc: Optional[str] = None,
    fbp: Optional[str] = None,
    city: Optional[str] = None,
    state: Optional[str] = None,
    zip_code: Optional[str] = None,
    country: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Build the user_data block. Hashed fields are single-element lists, as the
    conversions API expects; absent fields are omitted.
    """

    user_data: Dict[str, Any] = {
        "client_ip_address": ip or "",
        "client_user_agent": user_agent or "",
    }

    if email:
        user_data["em"] = [hash_pii(email)]
    if phone and _digits(phone):
        user_data["ph"] = [hash_pii(_digits(phone))]

    if name and name.strip():
        names = name.strip().split()
        user_data["fn"] = [hash_pii(names[0])]
        if len(names) > 1:
            user_data["ln"] = [hash_pii(names[-1])]

    if fbc:
        user_data["fbc"] = fbc
    if fbp:
        user_data["fbp"] = fbp

    if city:
        user_data["ct"] = [hash_pii(city)]
    if state:
        user_data["st"] = [hash_pii(state)]
    if zip_code and _digits(zip_code):
        user_data["zp"] = [hash_pii(_digits(zip_code))]
    if country:
        user_data["country"] = [hash_pii(country)]

    return user_data


def resolve_pixels(context: DispatchContext) -> List[AdPixel]:
    """Offer pixels first, then the seller's account pixel, deduplicated by pixel id."""

    pixels = list(context.offer.integrations.ad_pixels)
    seller_pixel = context.seller.ad_pixel
    if seller_pixel is not None and not any(p.pixel_id == seller_pixel.pixel_id for p in pixels):
        pixels.append(seller_pixel)
    return pixels


def build_purchase_event(context: DispatchContext) -> Dict[str, Any]:
    sale, metadata = context.sale, context.metadata
    return {
        "event_name": "Purchase",
        "event_time": int(context.paid_at.timestamp()),
        "event_id": metadata.purchase_event_id,
        "action_source": "website",
        "user_data": build_user_data(
            ip=metadata.ip,
            user_agent=metadata.user_agent,
            email=sale.customer_email,
            phone=metadata.customer_phone,
            name=sale.customer_name,
            fbc=metadata.fbc,
            fbp=metadata.fbp,
            city=metadata.address_city,
            state=metadata.address_state,
            zip_code=metadata.address_zip_code,
            country=metadata.address_country,
        ),
        "custom_data": {
            "currency": sale.currency.upper(),
            "value": cents_to_units(sale.total_amount_in_cents),
            "order_id": str(sale.sale_id),
            "content_ids": [item.product_id or item.custom_id or "unknown" for item in context.order.items],
            "content_type": "product",
        },
    }


def build_ad_conversion_requests(context: DispatchContext) -> List[OutboundRequest]:
    """
    One request per usable pixel; [] when no pixel is configured.

    Pixels missing their id or access token are logged, counted and skipped;
    the remaining pixels still receive the event.

    Raises:
        DispatchPreconditionError: If pixels are configured but none is usable
    """

    configured = resolve_pixels(context)
    if not configured:
        return []

    pixels: List[AdPixel] = []
    for pixel in configured:
        if pixel.pixel_id and pixel.access_token:
            pixels.append(pixel)
            continue
        logger.warning(
            "Skipping ad pixel with incomplete credentials",
            extra={
                "transaction_id": context.sale.transaction_id,
                "pixel_id": pixel.pixel_id or None,
                "missing": "pixel_id" if not pixel.pixel_id else "access_token",
            },
        )
        ad_pixels_incomplete_total.inc()

    if not pixels:
        raise DispatchPreconditionError(
            f"No usable ad pixel: {len(configured)} configured, all missing a pixel id or access token"
        )

    api_url = get_settings().ad_conversion_api_url
    event = build_purchase_event(context)
    return [
        OutboundRequest(
            url=f"{api_url}/{pixel.pixel_id}/events",
            json={"data": [event], "access_token": pixel.access_token},
        )
        for pixel in pixels
    ]


__all__ = [
    "hash_pii",
    "build_user_data",
    "resolve_pixels",
    "build_purchase_event",
    "build_ad_conversion_requests",
]
