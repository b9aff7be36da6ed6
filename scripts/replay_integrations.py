#!/usr/bin/env python3
"""
Integration Replay Script

Re-runs the integration fan-out (attribution, ad-conversion, access) for sales
that are already settled, using the ledger snapshot of each sale. Use it after
a downstream outage; it never creates or changes sales.

The rebuilt context carries the frozen items and buyer name/email from the
ledger. Checkout-only fields (UTMs, device info, click ids, phone, address)
are not stored on the sale and are sent empty.

Usage:
    python replay_integrations.py --transaction-id pi_123 --transaction-id pi_456
    python replay_integrations.py --date-from 2026-01-01 --date-to 2026-01-02 --only attribution
    python replay_integrations.py --date-from 2026-01-01 --dry-run
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from domain.payment_event import CheckoutMetadata
from domain.sale import SaleRecord, SaleStatus
from domain.seller import Seller
from repositories.offer_repository import get_offer_by_id
from repositories.sale_repository import find_sale_by_transaction_id, list_sales
from repositories.seller_repository import get_seller_by_id
from services.currency_service import build_rate_provider
from services.fanout_service import DISPATCHER_NAMES, default_dispatchers, fan_out
from services.order_reconstruction_service import ReconstructedOrder
from services.webhook_dispatcher import DispatchContext, DispatchStatus, WebhookDispatcher


def parse_utc_date(value: str) -> datetime:
    """argparse type: ISO date or datetime; naive values are taken as UTC."""
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid date: {value!r} (expected ISO format, e.g. 2026-01-31)") from e
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def select_sales(
    transaction_ids: Sequence[str],
    date_from: Optional[datetime],
    date_to: Optional[datetime],
    limit: int,
) -> List[SaleRecord]:
    """
    Resolve the sales to replay.

    Explicit transaction ids win over a date range. Only succeeded sales are
    replayed; refunded ones are reported and skipped.
    """
    if transaction_ids:
        sales: List[SaleRecord] = []
        for transaction_id in transaction_ids:
            sale = find_sale_by_transaction_id(transaction_id)
            if sale is None:
                print(f"  ! No sale for transaction {transaction_id}")
                continue
            if sale.status != SaleStatus.SUCCEEDED:
                print(f"  ! Skipping {transaction_id}: status is {sale.status.value}")
                continue
            sales.append(sale)
        return sales

    return list_sales(
        status=SaleStatus.SUCCEEDED,
        created_from=date_from,
        created_to=date_to,
        limit=limit,
    )


def build_replay_context(sale: SaleRecord) -> Optional[DispatchContext]:
    """Rebuild a DispatchContext from a ledger row; None when the offer is gone."""
    offer = get_offer_by_id(sale.offer_id)
    if offer is None:
        return None

    seller = get_seller_by_id(sale.seller_id) or Seller.unknown(sale.seller_id)
    order = ReconstructedOrder(items=sale.items, quantity=sale.quantity, is_upsell=sale.is_upsell)
    metadata = CheckoutMetadata(
        offer_slug=offer.slug,
        quantity=sale.quantity,
        is_upsell=sale.is_upsell,
        customer_email=sale.customer_email,
        customer_name=sale.customer_name,
    )
    return DispatchContext(
        offer=offer,
        seller=seller,
        sale=sale,
        order=order,
        metadata=metadata,
        paid_at=sale.created_at,
    )


def replay_sale(
    sale: SaleRecord,
    dispatchers: Sequence[WebhookDispatcher],
    dry_run: bool = False,
) -> bool:
    """
    Replay fan-out for one sale.

    Returns:
        False if the context could not be rebuilt or any dispatcher failed
    """
    context = build_replay_context(sale)
    if context is None:
        print(f"  ✗ {sale.transaction_id}: offer {sale.offer_id} no longer exists")
        return False

    if dry_run:
        names = ", ".join(d.name for d in dispatchers)
        print(f"  - {sale.transaction_id}: would dispatch to {names}")
        return True

    outcomes = fan_out(context, dispatchers)
    summary = ", ".join(f"{o.dispatcher}={o.status.value}" for o in outcomes)
    failed = [o for o in outcomes if o.status in (DispatchStatus.FAILED, DispatchStatus.PARTIAL)]
    marker = "✗" if failed else "✓"
    print(f"  {marker} {sale.transaction_id}: {summary}")
    for outcome in failed:
        print(f"      {outcome.dispatcher}: {outcome.error}")
    return not failed


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="Replay integration webhooks for settled sales",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Replay specific transactions
  python replay_integrations.py --transaction-id pi_123 --transaction-id pi_456

  # Replay one day of sales, attribution only
  python replay_integrations.py --date-from 2026-01-01 --date-to 2026-01-02 --only attribution

  # Show what would be sent without sending
  python replay_integrations.py --date-from 2026-01-01 --dry-run
        """
    )

    parser.add_argument(
        "--transaction-id",
        "-t",
        action="append",
        default=[],
        dest="transaction_ids",
        help="Gateway transaction id to replay (repeatable)"
    )

    parser.add_argument(
        "--date-from",
        type=parse_utc_date,
        help="Replay sales created at or after this UTC date/time"
    )

    parser.add_argument(
        "--date-to",
        type=parse_utc_date,
        help="Replay sales created at or before this UTC date/time"
    )

    parser.add_argument(
        "--limit",
        type=int,
        default=1000,
        help="Maximum number of sales to replay from a date range (default: 1000)"
    )

    parser.add_argument(
        "--only",
        action="append",
        choices=list(DISPATCHER_NAMES),
        help="Restrict to one dispatcher (repeatable; default: all)"
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List what would be dispatched without sending anything"
    )

    args = parser.parse_args(argv)

    if not args.transaction_ids and args.date_from is None and args.date_to is None:
        parser.error("give at least one --transaction-id or a --date-from/--date-to range")
    if args.limit <= 0:
        parser.error("--limit must be positive")

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    try:
        print("Selecting sales to replay...")
        sales = select_sales(args.transaction_ids, args.date_from, args.date_to, args.limit)

        if not sales:
            print("No settled sales matched")
            return 0

        dispatchers = default_dispatchers(rate_provider=build_rate_provider(), only=args.only)
        print(f"Replaying {len(sales)} sale(s) to: {', '.join(d.name for d in dispatchers)}")
        print()

        failures = sum(1 for sale in sales if not replay_sale(sale, dispatchers, dry_run=args.dry_run))

        print()
        print("=" * 60)
        print("REPLAY SUMMARY")
        print("=" * 60)
        print(f"Sales processed: {len(sales)}")
        print(f"  Succeeded: {len(sales) - failures}")
        print(f"  Failed:    {failures}")
        print("=" * 60)

        return 1 if failures else 0

    except KeyboardInterrupt:
        print("\n\nReplay interrupted by user")
        return 130

    except Exception as e:
        print(f"\nERROR: {e}", file=sys.stderr)
        import traceback
        traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
