"""
Payment Webhook Endpoints.

Receives gateway notifications, verifies their signature, decodes them into
PaymentEvents and hands them to the settlement engine. Integration fan-out for
a new sale runs as a background task after the response is sent.
"""

import logging
from typing import Optional

import stripe
from fastapi import APIRouter, BackgroundTasks, Header, HTTPException, Request
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from api.models import ErrorResponse, WebhookAckResponse, WebhookEnvelope
from domain.payment_event import EventType, MalformedMetadataError, PaymentEvent, parse_checkout_metadata
from domain.sale import InvalidSaleTransition
from domain.time import from_unix_seconds, utc_now
from services.config import get_settings
from services.fanout_service import default_dispatchers, fan_out
from services.metrics import webhook_events_received_total
from services.settlement_service import (
    NonPositiveTotalError,
    OfferNotFoundError,
    SaleNotFoundError,
    settle,
)

logger = logging.getLogger(__name__)

router = APIRouter()

SIGNATURE_TOLERANCE_SECONDS = 300

EVENT_TYPES = {
    "payment.succeeded": EventType.SUCCEEDED,
    "payment_intent.succeeded": EventType.SUCCEEDED,
    "payment.refunded": EventType.REFUNDED,
    "charge.refunded": EventType.REFUNDED,
}


def verify_signature(payload: bytes, signature: Optional[str]) -> None:
    """
    Check the Stripe-Signature header against STRIPE_WEBHOOK_SECRET.

    Raises:
        HTTPException: 400 on a missing or invalid signature, 500 when no
            secret is configured and validation is not explicitly skipped
    """
    settings = get_settings()
    secret = settings.stripe_webhook_secret

    if not secret:
        if settings.skip_webhook_validation:
            logger.warning("Webhook signature validation skipped (SKIP_WEBHOOK_VALIDATION is set)")
            return
        logger.error("STRIPE_WEBHOOK_SECRET is not configured")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    if not signature:
        raise HTTPException(status_code=400, detail="Missing Stripe-Signature header")

    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"),
            signature,
            secret,
            SIGNATURE_TOLERANCE_SECONDS,
        )
    except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
        logger.warning("Webhook signature verification failed", extra={"error": str(e)})
        raise HTTPException(status_code=400, detail=f"Webhook signature verification failed: {e}")


def to_payment_event(envelope: WebhookEnvelope) -> Optional[PaymentEvent]:
    """
    Map a gateway envelope to a PaymentEvent; None for event types we ignore.

    Raises:
        MalformedMetadataError: If metadata cannot be decoded
        ValueError: If the envelope lacks a transaction id or amount
    """
    event_type = EVENT_TYPES.get(envelope.type)
    if event_type is None:
        return None

    if envelope.data is not None:
        obj = envelope.data.object
        if envelope.type == "charge.refunded":
            transaction_id = obj.payment_intent or obj.id
        else:
            transaction_id = obj.id
        amount, currency, raw_metadata = obj.amount, obj.currency, obj.metadata
        livemode = obj.livemode if obj.livemode is not None else envelope.livemode
    else:
        transaction_id = envelope.id
        amount, currency, raw_metadata = envelope.amount, envelope.currency, envelope.metadata
        livemode = envelope.livemode

    if not transaction_id:
        raise ValueError("Event has no transaction id")
    if event_type is EventType.SUCCEEDED and amount is None:
        raise ValueError("Succeeded event has no amount")

    return PaymentEvent(
        transaction_id=transaction_id,
        event_type=event_type,
        amount_in_cents=amount or 0,
        currency=(currency or "").lower(),
        metadata=parse_checkout_metadata(raw_metadata),
        livemode=livemode,
        created_at=from_unix_seconds(envelope.created) if envelope.created else utc_now(),
    )


@router.post(
    "/webhooks/payments",
    response_model=WebhookAckResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Bad signature or malformed event"},
        404: {"model": ErrorResponse, "description": "Offer or sale not found yet; gateway should retry"},
        422: {"model": ErrorResponse, "description": "Order total is not positive"},
    },
    summary="Receive Payment Event",
    description="Gateway webhook. Settles succeeded payments and applies refunds idempotently.",
)
async def receive_payment_event(
    request: Request,
    background_tasks: BackgroundTasks,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
):
    """
    Receive one payment notification from the gateway.

    **Process:**
    1. Verifies the Stripe-Signature header
    2. Decodes the envelope and its checkout metadata
    3. Settles the event (creates the sale, or marks it refunded)
    4. Schedules integration fan-out for newly created sales

    Redelivered events are acknowledged with outcome "duplicate" and never
    create a second sale. Unsupported event types are acknowledged and ignored.

    **Success response:**
    ```json
    {
      "received": true,
      "ignored": false,
      "outcome": "created",
      "saleId": "123e4567-e89b-12d3-a456-426614174003"
    }
    ```
    """
    payload = await request.body()
    verify_signature(payload, stripe_signature)

    try:
        envelope = WebhookEnvelope.model_validate_json(payload)
        event = to_payment_event(envelope)
    except (ValidationError, ValueError) as e:
        # MalformedMetadataError is a ValueError
        logger.warning("Rejected malformed payment event", extra={"error": str(e)})
        raise HTTPException(status_code=400, detail=f"Malformed event: {e}")

    webhook_events_received_total.labels(event_type=envelope.type).inc()

    if event is None:
        logger.info("Ignoring unsupported event type", extra={"event_type": envelope.type})
        return WebhookAckResponse(ignored=True)

    dispatchers = default_dispatchers(rate_provider=getattr(request.app.state, "rate_provider", None))

    def schedule_fan_out(context):
        background_tasks.add_task(fan_out, context, dispatchers)

    try:
        result = await run_in_threadpool(settle, event, dispatch=schedule_fan_out)

    except MalformedMetadataError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (OfferNotFoundError, SaleNotFoundError) as e:
        logger.warning(str(e), extra={"transaction_id": event.transaction_id})
        raise HTTPException(status_code=404, detail=str(e))
    except NonPositiveTotalError as e:
        logger.error(str(e), extra={"transaction_id": event.transaction_id})
        raise HTTPException(status_code=422, detail=str(e))
    except InvalidSaleTransition as e:
        logger.warning(str(e), extra={"transaction_id": event.transaction_id})
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.exception("Settlement failed", extra={"transaction_id": event.transaction_id})
        raise HTTPException(status_code=500, detail=f"Settlement failed: {e}")

    return WebhookAckResponse(outcome=result.outcome.value, sale_id=result.sale.sale_id)
