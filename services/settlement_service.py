"""
Settlement engine for gateway payment events.

Handles:
- Idempotent sale creation under at-least-once delivery
- Order reconstruction and platform fee split
- Refund status transitions
- Triggering integration fan-out after the sale is durably committed

Idempotency is a two-step gate: a lookup by transaction id, then an insert
against the storage unique index. A concurrent duplicate that slips past the
lookup loses at the insert and is reported exactly like a sequential duplicate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional
from uuid import uuid4

from domain.money import calculate_platform_fee
from domain.offer import Offer
from domain.payment_event import EventType, MalformedMetadataError, PaymentEvent
from domain.sale import SaleRecord, SaleStatus
from domain.seller import Seller
from domain.time import utc_now
from repositories.offer_repository import get_offer_by_slug
from repositories.sale_repository import (
    DuplicateTransactionError,
    find_sale_by_transaction_id,
    insert_sale,
    mark_sale_refunded,
)
from repositories.seller_repository import get_seller_by_id
from services.config import get_settings
from services.fanout_service import fan_out
from services.metrics import settlement_amount_mismatch_total, settlements_total
from services.order_reconstruction_service import ReconstructedOrder, reconstruct_order
from services.webhook_dispatcher import DispatchContext

logger = logging.getLogger(__name__)

UNIDENTIFIED_CUSTOMER_NAME = "Unidentified Customer"
UNIDENTIFIED_CUSTOMER_EMAIL = "email@not.informed"


class SettlementError(Exception):
    """
    Base class for events that cannot be settled.

    Missing offers and sales may appear later, so the gateway should retry
    those. A non-positive total is a property of the event and never settles.
    """


class OfferNotFoundError(SettlementError):
    def __init__(self, slug: str) -> None:
        super().__init__(f"Offer not found: {slug}")
        self.slug = slug


class SaleNotFoundError(SettlementError):
    def __init__(self, transaction_id: str) -> None:
        super().__init__(f"Sale not found for transaction: {transaction_id}")
        self.transaction_id = transaction_id


class NonPositiveTotalError(SettlementError):
    """Not retry-safe: redelivering the same event yields the same total."""

    def __init__(self, transaction_id: str, total_in_cents: int) -> None:
        super().__init__(f"Refusing to settle non-positive total {total_in_cents} for {transaction_id}")
        self.transaction_id = transaction_id
        self.total_in_cents = total_in_cents


class SettlementOutcome(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    REFUNDED = "refunded"


@dataclass(frozen=True, slots=True)
class SettlementResult:
    """
    Result of handling one payment event.

    outcome: what happened to the ledger
    sale: the ledger row as it stands after handling the event
    order: reconstructed items (only for newly created sales)
    """

    outcome: SettlementOutcome
    sale: SaleRecord
    order: Optional[ReconstructedOrder] = None


Dispatch = Callable[[DispatchContext], Any]


def build_dispatch_context(
    offer: Offer,
    sale: SaleRecord,
    order: ReconstructedOrder,
    event: PaymentEvent,
) -> DispatchContext:
    """Gather what dispatchers read. A missing seller row degrades to a placeholder."""

    seller = get_seller_by_id(offer.owner_id)
    if seller is None:
        logger.warning(
            "Seller not found for offer owner; dispatching with placeholder seller",
            extra={"offer_slug": offer.slug, "owner_id": offer.owner_id},
        )
        seller = Seller.unknown(offer.owner_id)

    return DispatchContext(
        offer=offer,
        seller=seller,
        sale=sale,
        order=order,
        metadata=event.metadata,
        livemode=event.livemode,
        paid_at=event.created_at,
    )


def _trigger_dispatch(
    offer: Offer,
    sale: SaleRecord,
    order: ReconstructedOrder,
    event: PaymentEvent,
    dispatch: Dispatch,
) -> None:
    # The sale is already committed here; nothing below may undo or fail it.
    try:
        dispatch(build_dispatch_context(offer, sale, order, event))
    except Exception:
        logger.exception(
            "Integration fan-out could not be started",
            extra={"transaction_id": sale.transaction_id, "offer_slug": offer.slug},
        )


def _settle_succeeded(event: PaymentEvent, dispatch: Dispatch, fee_rate: Decimal) -> SettlementResult:
    transaction_id = event.transaction_id

    # 1. Idempotency gate
    existing = find_sale_by_transaction_id(transaction_id)
    if existing is not None:
        settlements_total.labels(outcome="duplicate").inc()
        logger.info("Duplicate payment event ignored", extra={"transaction_id": transaction_id})
        return SettlementResult(SettlementOutcome.DUPLICATE, existing)

    # 2. Resolve offer
    slug = event.metadata.offer_slug
    if not slug:
        raise MalformedMetadataError("offerSlug is required for succeeded payment events")

    offer = get_offer_by_slug(slug)
    if offer is None:
        settlements_total.labels(outcome="offer_not_found").inc()
        raise OfferNotFoundError(slug)

    # 3. Reconstruct items and split fee
    order = reconstruct_order(offer, event.metadata, event.amount_in_cents)
    total = order.total_in_cents
    if total <= 0:
        settlements_total.labels(outcome="rejected").inc()
        raise NonPositiveTotalError(transaction_id, total)

    if total != event.amount_in_cents:
        settlement_amount_mismatch_total.inc()
        logger.warning(
            "Charged amount differs from reconstructed order total",
            extra={
                "transaction_id": transaction_id,
                "offer_slug": offer.slug,
                "charged_in_cents": event.amount_in_cents,
                "reconstructed_in_cents": total,
            },
        )

    sale = SaleRecord(
        sale_id=uuid4(),
        transaction_id=transaction_id,
        seller_id=offer.owner_id,
        offer_id=offer.offer_id,
        customer_name=event.metadata.customer_name or UNIDENTIFIED_CUSTOMER_NAME,
        customer_email=event.metadata.customer_email or UNIDENTIFIED_CUSTOMER_EMAIL,
        items=order.items,
        quantity=order.quantity,
        total_amount_in_cents=total,
        platform_fee_in_cents=calculate_platform_fee(total, fee_rate),
        currency=(event.currency or offer.currency).lower(),
        status=SaleStatus.SUCCEEDED,
        is_upsell=order.is_upsell,
        created_at=utc_now(),
    )

    # 4. Durable write; the unique index decides concurrent duplicates
    try:
        insert_sale(sale)
    except DuplicateTransactionError:
        settlements_total.labels(outcome="duplicate").inc()
        logger.info(
            "Concurrent duplicate payment event lost the insert race",
            extra={"transaction_id": transaction_id},
        )
        stored = find_sale_by_transaction_id(transaction_id)
        return SettlementResult(SettlementOutcome.DUPLICATE, stored or sale)

    settlements_total.labels(outcome="created").inc()
    logger.info(
        "Sale settled",
        extra={
            "transaction_id": transaction_id,
            "offer_slug": offer.slug,
            "total_in_cents": sale.total_amount_in_cents,
            "platform_fee_in_cents": sale.platform_fee_in_cents,
            "items": len(sale.items),
        },
    )

    # 5. Fan-out strictly after commit
    _trigger_dispatch(offer, sale, order, event, dispatch)

    return SettlementResult(SettlementOutcome.CREATED, sale, order)


def _settle_refunded(event: PaymentEvent) -> SettlementResult:
    transaction_id = event.transaction_id

    sale = find_sale_by_transaction_id(transaction_id)
    if sale is None:
        settlements_total.labels(outcome="sale_not_found").inc()
        raise SaleNotFoundError(transaction_id)

    if sale.status == SaleStatus.REFUNDED:
        settlements_total.labels(outcome="duplicate").inc()
        return SettlementResult(SettlementOutcome.DUPLICATE, sale)

    # Raises InvalidSaleTransition for anything that is not SUCCEEDED
    sale.transition_to(SaleStatus.REFUNDED)

    updated = mark_sale_refunded(transaction_id)
    if updated is None:
        # Another delivery of the same refund got there first.
        current = find_sale_by_transaction_id(transaction_id)
        if current is not None and current.status == SaleStatus.REFUNDED:
            settlements_total.labels(outcome="duplicate").inc()
            return SettlementResult(SettlementOutcome.DUPLICATE, current)
        raise RuntimeError(f"Failed to mark sale refunded: {transaction_id}")

    settlements_total.labels(outcome="refunded").inc()
    logger.info("Sale refunded", extra={"transaction_id": transaction_id})
    return SettlementResult(SettlementOutcome.REFUNDED, updated)


def settle(
    event: PaymentEvent,
    *,
    dispatch: Optional[Dispatch] = None,
    fee_rate: Optional[Decimal] = None,
) -> SettlementResult:
    """
    Settle one payment event.

    Process for a succeeded payment:
    1. Return the existing sale if this transaction was already settled
    2. Resolve the offer by slug
    3. Reconstruct the purchased items and compute the platform fee
    4. Insert the sale (unique on transaction id)
    5. Hand the settled sale to `dispatch` for integration fan-out

    A refund moves the existing sale from succeeded to refunded. Refunds do not
    trigger fan-out.

    Args:
        event: Decoded payment event
        dispatch: Called once with the DispatchContext after a new sale is
            committed. Defaults to running fan_out synchronously; the API
            passes a background-task scheduler instead.
        fee_rate: Platform fee fraction (defaults to PLATFORM_FEE_RATE setting)

    Returns:
        SettlementResult describing what happened

    Raises:
        OfferNotFoundError: Offer slug does not resolve (retry later)
        SaleNotFoundError: Refund for a transaction not settled yet (retry later)
        NonPositiveTotalError: Reconstructed total is not positive
        MalformedMetadataError: Succeeded event without an offer slug
        InvalidSaleTransition: Refund for a sale that is not succeeded

    Example:
        result = settle(event)
        if result.outcome is SettlementOutcome.CREATED:
            print(f"Settled {result.sale.total_amount_in_cents} cents")
    """

    if event.event_type is EventType.REFUNDED:
        return _settle_refunded(event)

    return _settle_succeeded(
        event,
        dispatch=dispatch or fan_out,
        fee_rate=fee_rate if fee_rate is not None else get_settings().platform_fee_rate,
    )


__all__ = [
    "SettlementError",
    "OfferNotFoundError",
    "SaleNotFoundError",
    "NonPositiveTotalError",
    "SettlementOutcome",
    "SettlementResult",
    "build_dispatch_context",
    "settle",
]
