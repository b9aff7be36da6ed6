"""
Prometheus metrics for the settlement pipeline.

Tracks:
- Settlement outcomes (created, duplicate, refunded, rejected)
- Order bumps silently dropped because they no longer exist on the offer
- Events whose charged amount disagrees with the reconstructed order
- Integration dispatch outcomes per dispatcher
- Webhook events received by type
- Currency conversions that fell back to the default rate
- Ad pixels skipped for missing credentials
"""

from prometheus_client import Counter

settlements_total = Counter(
    "settlements_total",
    "Total payment events handled by the settlement engine",
    ["outcome"],  # created, duplicate, refunded, offer_not_found, sale_not_found, rejected
)

dangling_order_bumps_total = Counter(
    "dangling_order_bumps_total",
    "Selected order bump ids that were not found on the offer at settlement time",
)

settlement_amount_mismatch_total = Counter(
    "settlement_amount_mismatch_total",
    "Settled events whose charged amount differs from the reconstructed items total",
)

integration_dispatch_total = Counter(
    "integration_dispatch_total",
    "Integration dispatch outcomes",
    ["dispatcher", "status"],  # status: delivered, partial, failed, skipped
)

webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total gateway webhook events received",
    ["event_type"],
)

exchange_rate_fallback_total = Counter(
    "exchange_rate_fallback_total",
    "Conversions that used the fallback rate because the currency had no known rate",
    ["currency"],
)

ad_pixels_incomplete_total = Counter(
    "ad_pixels_incomplete_total",
    "Configured ad pixels skipped because their id or access token is missing",
)
