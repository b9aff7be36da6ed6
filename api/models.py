"""
API Request and Response Models.

Pydantic models for validating gateway webhook envelopes and serializing
ledger responses.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


# ============================================================================
# Webhook Models
# ============================================================================

class PaymentObject(BaseModel):
    """The payment (or charge) object nested in a gateway event."""
    id: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    payment_intent: Optional[str] = None  # charges only
    livemode: Optional[bool] = None


class EventData(BaseModel):
    object: PaymentObject


class WebhookEnvelope(BaseModel):
    """
    Gateway notification.

    Two shapes are accepted:
    - nested: {"id": "evt_...", "type", "created", "data": {"object": {...}}}
    - flat: {"id": "<transaction id>", "type", "amount", "currency", "metadata"}
    """
    type: str
    id: Optional[str] = None
    created: Optional[int] = None
    livemode: bool = True
    data: Optional[EventData] = None

    amount: Optional[int] = None
    currency: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        json_schema_extra = {
            "example": {
                "id": "evt_1PqR2sT3uV4wX5yZ",
                "type": "payment_intent.succeeded",
                "created": 1767225600,
                "livemode": True,
                "data": {
                    "object": {
                        "id": "pi_3PqR2sT3uV4wX5yZ",
                        "amount": 12990,
                        "currency": "brl",
                        "metadata": {
                            "offerSlug": "curso-fotografia",
                            "selectedOrderBumps": "[\"bump-ebook\"]",
                            "quantity": "1",
                            "customerEmail": "maria@example.com",
                            "customerName": "Maria Souza"
                        }
                    }
                }
            }
        }


class WebhookAckResponse(BaseModel):
    """Acknowledgement returned to the gateway."""
    received: bool = True
    ignored: bool = False
    outcome: Optional[str] = None
    sale_id: Optional[UUID] = Field(default=None, serialization_alias="saleId")

    class Config:
        json_schema_extra = {
            "example": {
                "received": True,
                "ignored": False,
                "outcome": "created",
                "saleId": "123e4567-e89b-12d3-a456-426614174003"
            }
        }


# ============================================================================
# Sale Models
# ============================================================================

class SaleItemResponse(BaseModel):
    """Single frozen line item of a sale."""
    name: str
    price_in_cents: int
    is_order_bump: bool
    product_id: Optional[str] = None
    custom_id: Optional[str] = None


class SaleResponse(BaseModel):
    """Ledger row as seen by consumers."""
    sale_id: UUID
    transaction_id: str
    seller_id: str
    offer_id: str
    customer_name: str
    customer_email: str
    items: List[SaleItemResponse]
    quantity: int
    total_amount_in_cents: int
    platform_fee_in_cents: int
    seller_amount_in_cents: int
    currency: str
    status: str  # "succeeded", "refunded", ...
    is_upsell: bool
    created_at: datetime

    class Config:
        json_schema_extra = {
            "example": {
                "sale_id": "123e4567-e89b-12d3-a456-426614174003",
                "transaction_id": "pi_3PqR2sT3uV4wX5yZ",
                "seller_id": "seller-42",
                "offer_id": "offer-7",
                "customer_name": "Maria Souza",
                "customer_email": "maria@example.com",
                "items": [
                    {"name": "Curso de Fotografia", "price_in_cents": 9990, "is_order_bump": False},
                    {"name": "E-book de Edição", "price_in_cents": 3000, "is_order_bump": True}
                ],
                "quantity": 1,
                "total_amount_in_cents": 12990,
                "platform_fee_in_cents": 650,
                "seller_amount_in_cents": 12340,
                "currency": "brl",
                "status": "succeeded",
                "is_upsell": False,
                "created_at": "2026-01-01T12:00:00Z"
            }
        }


# ============================================================================
# Error Models
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str
    detail: Optional[str] = None
    status_code: int

    class Config:
        json_schema_extra = {
            "example": {
                "error": "Offer not found",
                "detail": "Offer not found: curso-fotografia",
                "status_code": 404
            }
        }
