"""
Sale repository (persistence).

This module provides *only* persistence operations for the SaleRecord domain
entity. The one business rule it owns is the one only storage can enforce:
the unique index on payment_transaction_id (see sql/schema.sql). A second
insert for the same transaction surfaces as DuplicateTransactionError.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional
from uuid import UUID

from postgrest.exceptions import APIError

from domain.sale import SaleItem, SaleRecord, SaleStatus
from domain.time import require_utc_timestamp, utc_now
from repositories.client import UNIQUE_VIOLATION, get_supabase

# Supabase table name for sale records.
# Keep this aligned with sql/schema.sql.
_SALES_TABLE: str = "sales"


class DuplicateTransactionError(Exception):
    """Raised when a sale for the same upstream transaction id already exists."""

    def __init__(self, transaction_id: str) -> None:
        super().__init__(f"Sale already recorded for transaction {transaction_id}")
        self.transaction_id = transaction_id


def _to_iso_utc(dt: datetime, *, name: str) -> str:
    """Serialize a UTC datetime to ISO-8601 (timezone-aware, offset 0)."""

    require_utc_timestamp(name, dt)
    return dt.astimezone(timezone.utc).isoformat()


def _parse_utc_datetime(value: Any) -> datetime:
    """
    Parse a Supabase timestamp into a timezone-aware UTC datetime.

    Supabase commonly returns ISO-8601 strings, sometimes with a trailing 'Z'.
    """

    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise TypeError(f"Unsupported timestamp type: {type(value)!r}")

    if dt.tzinfo is None or dt.utcoffset() is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _item_to_json(item: SaleItem) -> dict[str, Any]:
    # compare_at is display-only and deliberately not persisted
    return {
        "name": item.name,
        "price_in_cents": item.price_in_cents,
        "is_order_bump": item.is_order_bump,
        "product_id": item.product_id,
        "custom_id": item.custom_id,
    }


def _item_from_json(data: Mapping[str, Any]) -> SaleItem:
    return SaleItem(
        name=str(data["name"]),
        price_in_cents=int(data["price_in_cents"]),
        is_order_bump=bool(data.get("is_order_bump", False)),
        product_id=data.get("product_id"),
        custom_id=data.get("custom_id"),
    )


def _row_to_sale(row: Mapping[str, Any]) -> SaleRecord:
    """Convert a Supabase row into a SaleRecord."""

    return SaleRecord(
        sale_id=UUID(str(row["sale_id"])),
        transaction_id=str(row["payment_transaction_id"]),
        seller_id=str(row["seller_id"]),
        offer_id=str(row["offer_id"]),
        customer_name=str(row["customer_name"]),
        customer_email=str(row["customer_email"]),
        items=tuple(_item_from_json(item) for item in row.get("items") or []),
        quantity=int(row.get("quantity") or 1),
        total_amount_in_cents=int(row["total_amount_in_cents"]),
        platform_fee_in_cents=int(row["platform_fee_in_cents"]),
        currency=str(row.get("currency", "brl")),
        status=SaleStatus(str(row["status"])),
        is_upsell=bool(row.get("is_upsell", False)),
        created_at=_parse_utc_datetime(row["created_at_utc"]),
    )


def _sale_to_row(sale: SaleRecord) -> dict[str, Any]:
    return {
        "sale_id": str(sale.sale_id),
        "payment_transaction_id": sale.transaction_id,
        "seller_id": sale.seller_id,
        "offer_id": sale.offer_id,
        "customer_name": sale.customer_name,
        "customer_email": sale.customer_email,
        "items": [_item_to_json(item) for item in sale.items],
        "quantity": sale.quantity,
        "total_amount_in_cents": sale.total_amount_in_cents,
        "platform_fee_in_cents": sale.platform_fee_in_cents,
        "currency": sale.currency,
        "status": sale.status.value,
        "is_upsell": sale.is_upsell,
        "created_at_utc": _to_iso_utc(sale.created_at, name="created_at"),
    }


def find_sale_by_transaction_id(transaction_id: str) -> Optional[SaleRecord]:
    """
    Retrieve the sale recorded for an upstream transaction id.

    Returns:
        SaleRecord or None if the transaction has not been settled
    """

    response = (
        get_supabase()
        .table(_SALES_TABLE)
        .select("*")
        .eq("payment_transaction_id", transaction_id)
        .limit(1)
        .execute()
    )
    error = getattr(response, "error", None)
    if error:
        raise RuntimeError(f"Failed to get sale: {error}")

    rows = getattr(response, "data", None) or []
    if not rows:
        return None
    return _row_to_sale(rows[0])


def insert_sale(sale: SaleRecord) -> SaleRecord:
    """
    Insert a new sale row.

    The insert is the atomic half of the idempotency gate: when two deliveries
    of the same event race past the lookup, the unique index rejects the second.

    Raises:
        DuplicateTransactionError: If a sale for sale.transaction_id already exists
        RuntimeError: On any other storage error
    """

    try:
        response = get_supabase().table(_SALES_TABLE).insert(_sale_to_row(sale)).execute()
    except APIError as e:
        if getattr(e, "code", None) == UNIQUE_VIOLATION:
            raise DuplicateTransactionError(sale.transaction_id) from e
        raise RuntimeError(f"Failed to record sale: {e}") from e

    error = getattr(response, "error", None)
    if error:
        raise RuntimeError(f"Failed to record sale: {error}")

    return sale


def mark_sale_refunded(transaction_id: str) -> Optional[SaleRecord]:
    """
    Move a succeeded sale to refunded.

    The update is conditional on the current status so that concurrent refund
    deliveries cannot both apply it.

    Returns:
        The updated SaleRecord, or None if no succeeded sale matched
    """

    payload: dict[str, Any] = {
        "status": SaleStatus.REFUNDED.value,
        "updated_at_utc": utc_now().isoformat(),
    }

    response = (
        get_supabase()
        .table(_SALES_TABLE)
        .update(payload)
        .eq("payment_transaction_id", transaction_id)
        .eq("status", SaleStatus.SUCCEEDED.value)
        .execute()
    )
    error = getattr(response, "error", None)
    if error:
        raise RuntimeError(f"Failed to update sale status: {error}")

    rows = getattr(response, "data", None) or []
    if not rows:
        return None
    return _row_to_sale(rows[0])


def list_sales(
    status: SaleStatus = SaleStatus.SUCCEEDED,
    created_from: Optional[datetime] = None,
    created_to: Optional[datetime] = None,
    limit: int = 1000,
) -> List[SaleRecord]:
    """
    List sales by status, oldest first, optionally bounded by creation time.

    Returns:
        List[SaleRecord] (possibly empty)
    """

    query = get_supabase().table(_SALES_TABLE).select("*").eq("status", status.value)
    if created_from is not None:
        query = query.gte("created_at_utc", _to_iso_utc(created_from, name="created_from"))
    if created_to is not None:
        query = query.lte("created_at_utc", _to_iso_utc(created_to, name="created_to"))

    response = query.order("created_at_utc").limit(limit).execute()
    error = getattr(response, "error", None)
    if error:
        raise RuntimeError(f"Failed to list sales: {error}")

    rows = getattr(response, "data", None) or []
    return [_row_to_sale(row) for row in rows]


__all__ = [
    "DuplicateTransactionError",
    "find_sale_by_transaction_id",
    "insert_sale",
    "mark_sale_refunded",
    "list_sales",
]
