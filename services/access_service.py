"""
Membership / content-access integration.

Notifies the offer's membership platform that the buyer should be granted
access. Runs only when the offer's membership webhook is enabled and has a URL.
"""

from __future__ import annotations

from typing import Any, Dict, List

from services.webhook_dispatcher import DispatchContext, OutboundRequest

ACCESS_GRANTED = "ACCESS_GRANTED"


def build_access_payload(context: DispatchContext) -> Dict[str, Any]:
    sale = context.sale
    return {
        "event": ACCESS_GRANTED,
        "customer": {
            "email": sale.customer_email,
            "name": sale.customer_name,
            "phone": context.metadata.customer_phone or "",
        },
        "products": [
            {"id": item.custom_id or item.product_id or "product-no-id", "name": item.name}
            for item in context.order.items
        ],
        "transactionId": sale.transaction_id,
        "subscriptionId": None,
    }


def build_access_requests(context: DispatchContext) -> List[OutboundRequest]:
    webhook = context.offer.integrations.membership_webhook
    if webhook is None or not webhook.is_active:
        return []

    return [
        OutboundRequest(
            url=webhook.url,
            json=build_access_payload(context),
            headers={"Authorization": f"Bearer {webhook.auth_token}"},
        )
    ]


__all__ = ["ACCESS_GRANTED", "build_access_payload", "build_access_requests"]
