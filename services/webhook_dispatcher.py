"""
Generic outbound webhook dispatcher.

Every downstream integration has the same shape: build one or more JSON
requests from a settled sale, POST them, log the outcome. The per-integration
part is only the request builder, so a single WebhookDispatcher is
parameterized by a builder function instead of each integration carrying its
own HTTP plumbing.

Delivery is best-effort:
- Any 2xx (including 204 No Content) is a success
- Non-2xx responses and transport errors are logged and swallowed
- A builder raising DispatchPreconditionError (missing credentials) fails only
  that dispatcher
- Nothing here is retried; there is no dead-letter queue
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, List, Optional

import httpx

from domain.offer import Offer
from domain.payment_event import CheckoutMetadata
from domain.sale import SaleRecord
from domain.seller import Seller
from domain.time import utc_now
from services.order_reconstruction_service import ReconstructedOrder

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 15.0


class DispatchPreconditionError(Exception):
    """Raised by a request builder when its integration is misconfigured."""


class DispatchStatus(str, Enum):
    DELIVERED = "delivered"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class DispatchContext:
    """Everything a request builder may read. Builders never mutate the sale."""

    offer: Offer
    seller: Seller
    sale: SaleRecord
    order: ReconstructedOrder
    metadata: CheckoutMetadata
    livemode: bool = True
    paid_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class OutboundRequest:
    url: str
    json: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class DispatchOutcome:
    dispatcher: str
    status: DispatchStatus
    delivered: int = 0
    failed: int = 0
    error: Optional[str] = None


RequestBuilder = Callable[[DispatchContext], List[OutboundRequest]]


class WebhookDispatcher:
    """
    POSTs the requests produced by one integration's builder.

    Every request is sent concurrently on its own httpx client with this
    dispatcher's timeout, so a slow endpoint only ever delays its own request.
    """

    def __init__(
        self,
        name: str,
        build_requests: RequestBuilder,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.name = name
        self.build_requests = build_requests
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    def _log_extra(self, context: DispatchContext, **fields: Any) -> Dict[str, Any]:
        return {"dispatcher": self.name, "transaction_id": context.sale.transaction_id, **fields}

    def _deliver(self, context: DispatchContext, request: OutboundRequest) -> Optional[str]:
        """POST one request on its own client. Returns the error, or None when delivered."""

        try:
            with httpx.Client(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = client.post(request.url, json=request.json, headers=request.headers)
        except httpx.HTTPError as e:
            logger.error(
                f"{self.name} delivery failed: {type(e).__name__}",
                extra=self._log_extra(context, url=request.url, error=str(e)),
            )
            return f"{type(e).__name__}: {e}"

        if response.is_success:
            logger.info(
                f"{self.name} delivered ({response.status_code})",
                extra=self._log_extra(context, url=request.url, status_code=response.status_code),
            )
            return None

        logger.error(
            f"{self.name} endpoint returned {response.status_code}",
            extra=self._log_extra(
                context,
                url=request.url,
                status_code=response.status_code,
                response_body=response.text[:500],
            ),
        )
        return f"HTTP {response.status_code}"

    def dispatch(self, context: DispatchContext) -> DispatchOutcome:
        """Build and deliver this integration's requests. Never raises."""

        try:
            requests = self.build_requests(context)
        except DispatchPreconditionError as e:
            logger.error(
                f"{self.name} dispatch skipped: {e}",
                extra=self._log_extra(context, reason="precondition"),
            )
            return DispatchOutcome(self.name, DispatchStatus.FAILED, error=str(e))
        except Exception as e:
            logger.exception(
                f"{self.name} payload could not be built",
                extra=self._log_extra(context, reason="build_error"),
            )
            return DispatchOutcome(self.name, DispatchStatus.FAILED, error=str(e))

        if not requests:
            logger.debug(f"{self.name} not configured for offer", extra=self._log_extra(context))
            return DispatchOutcome(self.name, DispatchStatus.SKIPPED)

        if len(requests) == 1:
            results = [self._deliver(context, requests[0])]
        else:
            # One slow endpoint must not hold back the other targets
            with ThreadPoolExecutor(max_workers=len(requests), thread_name_prefix=self.name) as pool:
                results = list(pool.map(partial(self._deliver, context), requests))

        errors = [error for error in results if error is not None]
        delivered = len(results) - len(errors)

        if not errors:
            status = DispatchStatus.DELIVERED
        elif delivered:
            status = DispatchStatus.PARTIAL
        else:
            status = DispatchStatus.FAILED

        return DispatchOutcome(
            dispatcher=self.name,
            status=status,
            delivered=delivered,
            failed=len(errors),
            error="; ".join(errors) or None,
        )


__all__ = [
    "DispatchContext",
    "DispatchOutcome",
    "DispatchPreconditionError",
    "DispatchStatus",
    "OutboundRequest",
    "RequestBuilder",
    "WebhookDispatcher",
]
