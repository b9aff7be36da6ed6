"""
Fan-out of a settled sale to every integration dispatcher.

Dispatchers run concurrently in their own worker threads, each with its own
HTTP client and timeout. One dispatcher failing, raising, or hanging until its
timeout never prevents the others from completing, and nothing here can affect
the sale's status.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import List, Optional, Sequence

from services.access_service import build_access_requests
from services.ad_conversion_service import build_ad_conversion_requests
from services.attribution_service import build_attribution_requests
from services.config import get_settings
from services.currency_service import RateProvider, build_rate_provider
from services.metrics import integration_dispatch_total
from services.webhook_dispatcher import (
    DispatchContext,
    DispatchOutcome,
    DispatchStatus,
    WebhookDispatcher,
)

logger = logging.getLogger(__name__)

ATTRIBUTION = "attribution"
AD_CONVERSION = "ad_conversion"
ACCESS = "access"

DISPATCHER_NAMES = (ATTRIBUTION, AD_CONVERSION, ACCESS)


def default_dispatchers(
    rate_provider: Optional[RateProvider] = None,
    only: Optional[Sequence[str]] = None,
) -> List[WebhookDispatcher]:
    """
    The standard dispatcher set: attribution, ad-conversion, access.

    Args:
        rate_provider: Currency rates for the attribution payload; a provider
            reading the configured rate endpoint when omitted
        only: Optional subset of dispatcher names to build
    """

    if rate_provider is None:
        rate_provider = build_rate_provider()

    timeout = get_settings().dispatch_timeout_seconds
    dispatchers = [
        WebhookDispatcher(
            ATTRIBUTION,
            partial(build_attribution_requests, rate_provider=rate_provider),
            timeout_seconds=timeout,
        ),
        WebhookDispatcher(AD_CONVERSION, build_ad_conversion_requests, timeout_seconds=timeout),
        WebhookDispatcher(ACCESS, build_access_requests, timeout_seconds=timeout),
    ]
    if only:
        dispatchers = [d for d in dispatchers if d.name in only]
    return dispatchers


def _run(dispatcher: WebhookDispatcher, context: DispatchContext) -> DispatchOutcome:
    try:
        return dispatcher.dispatch(context)
    except Exception as e:
        logger.exception(
            f"{dispatcher.name} dispatcher crashed",
            extra={"dispatcher": dispatcher.name, "transaction_id": context.sale.transaction_id},
        )
        return DispatchOutcome(dispatcher.name, DispatchStatus.FAILED, error=str(e))


def fan_out(
    context: DispatchContext,
    dispatchers: Optional[Sequence[WebhookDispatcher]] = None,
) -> List[DispatchOutcome]:
    """
    Deliver a settled sale to all dispatchers in parallel.

    Returns:
        One DispatchOutcome per dispatcher, in dispatcher order. Never raises.
    """

    if dispatchers is None:
        dispatchers = default_dispatchers()
    if not dispatchers:
        return []

    with ThreadPoolExecutor(max_workers=len(dispatchers), thread_name_prefix="dispatch") as pool:
        futures = [pool.submit(_run, dispatcher, context) for dispatcher in dispatchers]
        outcomes = [future.result() for future in futures]

    for outcome in outcomes:
        integration_dispatch_total.labels(dispatcher=outcome.dispatcher, status=outcome.status.value).inc()

    logger.info(
        "Integration fan-out finished",
        extra={
            "transaction_id": context.sale.transaction_id,
            "outcomes": {o.dispatcher: o.status.value for o in outcomes},
        },
    )
    return outcomes


__all__ = [
    "ATTRIBUTION",
    "AD_CONVERSION",
    "ACCESS",
    "DISPATCHER_NAMES",
    "default_dispatchers",
    "fan_out",
]
