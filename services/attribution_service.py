"""
Attribution analytics integration.

Builds the "Purchase_Order_Confirmed" event sent to each analytics webhook URL
configured on the offer. Amounts are reported in the attribution platform's
currency (BRL by default), converted with the injected rate provider.

Payload outline:
    {
      "Id", "IsTest", "Event": "Purchase_Order_Confirmed", "CreatedAt",
      "Data": {
        "Products": [{"Id", "Name"}],
        "Buyer": {"Id", "Email", "Name", "PhoneNumber"},
        "Seller": {"Id", "Email"},
        "Commissions": [{"Value", "Source": "MARKETPLACE"}, {"Value", "Source": "PRODUCER"}],
        "Purchase": {"PaymentId", "Recurrency", "PaymentDate", "OriginalPrice", "Price", "Payment"},
        "Offer": {"Id", "Name", "Url"},
        "Utm": {...}, "DeviceInfo": {"UserAgent", "ip"}
      }
    }
"""

from __future__ import annotations

import uuid
from typing import Any, Dict, List

from domain.money import cents_to_units
from domain.sale import SaleItem
from domain.time import utc_now
from services.config import get_settings
from services.currency_service import RateProvider, convert_cents
from services.webhook_dispatcher import DispatchContext, OutboundRequest

EVENT_NAME = "Purchase_Order_Confirmed"


def _product_id(item: SaleItem, context: DispatchContext) -> str:
    if item.product_id:
        return item.product_id
    if not item.is_order_bump:
        return context.offer.offer_id
    return str(uuid.uuid4())


def build_attribution_payload(
    context: DispatchContext,
    rate_provider: RateProvider,
    target_currency: str = "BRL",
    checkout_base_url: str = "",
) -> Dict[str, Any]:
    """Assemble the purchase-confirmed event for one settled sale."""

    sale, order, metadata = context.sale, context.order, context.metadata
    source_currency = sale.currency.upper()

    def convert(amount_in_cents: int) -> int:
        return convert_cents(amount_in_cents, source_currency, target_currency, rate_provider)

    total = convert(sale.total_amount_in_cents)
    platform_fee = convert(sale.platform_fee_in_cents)
    original_total = convert(order.reference_total_in_cents)

    return {
        "Id": str(uuid.uuid4()),
        "IsTest": not context.livemode,
        "Event": EVENT_NAME,
        "CreatedAt": utc_now().isoformat(),
        "Data": {
            "Products": [{"Id": _product_id(item, context), "Name": item.name} for item in order.items],
            "Buyer": {
                "Id": str(uuid.uuid5(uuid.NAMESPACE_URL, f"mailto:{sale.customer_email.lower()}")),
                "Email": sale.customer_email,
                "Name": sale.customer_name,
                "PhoneNumber": metadata.customer_phone,
            },
            "Seller": {
                "Id": context.seller.seller_id,
                "Email": context.seller.email,
            },
            "Commissions": [
                {"Value": cents_to_units(platform_fee), "Source": "MARKETPLACE"},
                {"Value": cents_to_units(total - platform_fee), "Source": "PRODUCER"},
            ],
            "Purchase": {
                "PaymentId": sale.transaction_id,
                "Recurrency": 1,
                "PaymentDate": context.paid_at.isoformat(),
                "OriginalPrice": {"Value": cents_to_units(original_total), "Currency": target_currency},
                "Price": {"Value": cents_to_units(total), "Currency": target_currency},
                "Payment": {
                    "NumberOfInstallments": 1,
                    "PaymentMethod": "credit_card",
                    "InterestRateAmount": 0,
                },
            },
            "Offer": {
                "Id": context.offer.offer_id,
                "Name": context.offer.name,
                "Url": f"{checkout_base_url}/p/{context.offer.slug}",
            },
            "Utm": {
                "UtmSource": metadata.utm_source,
                "UtmMedium": metadata.utm_medium,
                "UtmCampaign": metadata.utm_campaign,
                "UtmTerm": metadata.utm_term,
                "UtmContent": metadata.utm_content,
            },
            "DeviceInfo": {
                "UserAgent": metadata.user_agent,
                "ip": metadata.ip,
            },
        },
    }


def build_attribution_requests(context: DispatchContext, rate_provider: RateProvider) -> List[OutboundRequest]:
    """One request per deliverable analytics URL on the offer; [] when none."""

    urls = context.offer.integrations.deliverable_analytics_urls()
    if not urls:
        return []

    settings = get_settings()
    payload = build_attribution_payload(
        context,
        rate_provider=rate_provider,
        target_currency=settings.attribution_currency,
        checkout_base_url=settings.checkout_base_url,
    )
    return [OutboundRequest(url=url, json=payload) for url in urls]


__all__ = ["EVENT_NAME", "build_attribution_payload", "build_attribution_requests"]
