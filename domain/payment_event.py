"""
Domain: Payment events delivered by the upstream gateway.

The gateway hands us a flat, string-keyed metadata map that checkout attached
to the payment. It is parsed once, at the ingress boundary, into a typed
CheckoutMetadata so the settlement engine never touches raw strings.

Metadata keys (as written by checkout):
- offerSlug (or originalOfferSlug for upsell payments)
- selectedOrderBumps: JSON-encoded array of bump ids
- quantity: stringified integer
- isUpsell: "true" for post-purchase upsell payments
- customerEmail, customerName, customerPhone
- utm_source, utm_medium, utm_campaign, utm_term, utm_content
- userAgent, ip, fbc, fbp, purchaseEventId
- addressCity, addressState, addressZipCode, addressCountry
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional, Tuple

from .time import require_utc_timestamp, utc_now


class EventType(str, Enum):
    SUCCEEDED = "succeeded"
    REFUNDED = "refunded"


class MalformedMetadataError(ValueError):
    """Raised when checkout metadata cannot be decoded into CheckoutMetadata."""


@dataclass(frozen=True, slots=True)
class CheckoutMetadata:
    offer_slug: Optional[str] = None
    selected_order_bumps: Tuple[str, ...] = ()
    quantity: Optional[int] = None
    is_upsell: bool = False

    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None

    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_term: Optional[str] = None
    utm_content: Optional[str] = None
    user_agent: Optional[str] = None
    ip: Optional[str] = None

    fbc: Optional[str] = None
    fbp: Optional[str] = None
    purchase_event_id: Optional[str] = None

    address_city: Optional[str] = None
    address_state: Optional[str] = None
    address_zip_code: Optional[str] = None
    address_country: Optional[str] = None


def _text(raw: Mapping[str, Any], key: str) -> Optional[str]:
    value = raw.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_order_bumps(value: Optional[str]) -> Tuple[str, ...]:
    if value is None:
        return ()
    try:
        decoded = json.loads(value)
    except json.JSONDecodeError as e:
        raise MalformedMetadataError(f"selectedOrderBumps is not valid JSON: {e}") from e

    if not isinstance(decoded, list):
        raise MalformedMetadataError("selectedOrderBumps must be a JSON array of ids")
    if not all(isinstance(bump_id, str) for bump_id in decoded):
        raise MalformedMetadataError("selectedOrderBumps must contain only string ids")
    return tuple(decoded)


def _parse_quantity(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value, 10)
    except ValueError as e:
        raise MalformedMetadataError(f"quantity is not an integer: {value!r}") from e


def parse_checkout_metadata(raw: Mapping[str, Any]) -> CheckoutMetadata:
    """
    Decode the gateway's flat metadata map.

    Fails fast on malformed encodings (bad JSON in selectedOrderBumps, a
    non-integer quantity). Out-of-range quantities are kept as-is; clamping is
    an order-reconstruction rule, not a parsing rule.

    Raises:
        MalformedMetadataError: If an encoded field cannot be decoded
    """

    return CheckoutMetadata(
        offer_slug=_text(raw, "offerSlug") or _text(raw, "originalOfferSlug"),
        selected_order_bumps=_parse_order_bumps(_text(raw, "selectedOrderBumps")),
        quantity=_parse_quantity(_text(raw, "quantity")),
        is_upsell=_text(raw, "isUpsell") == "true",
        customer_email=_text(raw, "customerEmail"),
        customer_name=_text(raw, "customerName"),
        customer_phone=_text(raw, "customerPhone"),
        utm_source=_text(raw, "utm_source"),
        utm_medium=_text(raw, "utm_medium"),
        utm_campaign=_text(raw, "utm_campaign"),
        utm_term=_text(raw, "utm_term"),
        utm_content=_text(raw, "utm_content"),
        user_agent=_text(raw, "userAgent"),
        ip=_text(raw, "ip"),
        fbc=_text(raw, "fbc"),
        fbp=_text(raw, "fbp"),
        purchase_event_id=_text(raw, "purchaseEventId"),
        address_city=_text(raw, "addressCity"),
        address_state=_text(raw, "addressState"),
        address_zip_code=_text(raw, "addressZipCode"),
        address_country=_text(raw, "addressCountry"),
    )


@dataclass(frozen=True, slots=True)
class PaymentEvent:
    """A decoded gateway notification. Transient; never persisted as-is."""

    transaction_id: str
    event_type: EventType
    amount_in_cents: int
    currency: str
    metadata: CheckoutMetadata = field(default_factory=CheckoutMetadata)
    livemode: bool = True
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if not self.transaction_id:
            raise ValueError("transaction_id is required")
        require_utc_timestamp("created_at", self.created_at)


__all__ = [
    "EventType",
    "CheckoutMetadata",
    "MalformedMetadataError",
    "PaymentEvent",
    "parse_checkout_metadata",
]
