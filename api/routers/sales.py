"""
Sales API Endpoints.

Read-only access to the sale ledger for downstream consumers.
"""

from fastapi import APIRouter, HTTPException

from api.models import ErrorResponse, SaleItemResponse, SaleResponse
from domain.sale import SaleRecord
from repositories.sale_repository import find_sale_by_transaction_id

router = APIRouter()


def to_sale_response(sale: SaleRecord) -> SaleResponse:
    return SaleResponse(
        sale_id=sale.sale_id,
        transaction_id=sale.transaction_id,
        seller_id=sale.seller_id,
        offer_id=sale.offer_id,
        customer_name=sale.customer_name,
        customer_email=sale.customer_email,
        items=[
            SaleItemResponse(
                name=item.name,
                price_in_cents=item.price_in_cents,
                is_order_bump=item.is_order_bump,
                product_id=item.product_id,
                custom_id=item.custom_id,
            )
            for item in sale.items
        ],
        quantity=sale.quantity,
        total_amount_in_cents=sale.total_amount_in_cents,
        platform_fee_in_cents=sale.platform_fee_in_cents,
        seller_amount_in_cents=sale.seller_amount_in_cents,
        currency=sale.currency,
        status=sale.status.value,
        is_upsell=sale.is_upsell,
        created_at=sale.created_at,
    )


@router.get(
    "/sales/{transaction_id}",
    response_model=SaleResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Get Sale by Transaction",
    description="Look up the ledger row settled for a gateway transaction id."
)
def get_sale(transaction_id: str):
    """
    Get the sale recorded for a payment transaction.

    Returns the frozen line items, the fee split and the current status.
    """
    try:
        sale = find_sale_by_transaction_id(transaction_id)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to fetch sale: {e}")

    if sale is None:
        raise HTTPException(status_code=404, detail=f"Sale not found for transaction: {transaction_id}")

    return to_sale_response(sale)
