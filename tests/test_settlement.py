"""
Tests for `services/settlement_service.py`.

Covers:
- Item reconstruction, conservation and the 5% fee on new sales.
- Idempotency under sequential and concurrent duplicate deliveries.
- Refund transitions and their retry-safe failures.
- Fan-out runs once, after commit, and cannot undo the sale.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from typing import List

import pytest

from domain.payment_event import MalformedMetadataError
from domain.sale import InvalidSaleTransition, SaleStatus
from repositories.sale_repository import find_sale_by_transaction_id
from services import settlement_service
from services.settlement_service import (
    NonPositiveTotalError,
    OfferNotFoundError,
    SaleNotFoundError,
    SettlementOutcome,
    settle,
)
from services.webhook_dispatcher import DispatchContext
from factories import SELLER_ID, offer_row, refunded_event, seller_row, succeeded_event


class RecordingDispatch:
    def __init__(self) -> None:
        self.contexts: List[DispatchContext] = []
        self._lock = threading.Lock()

    def __call__(self, context: DispatchContext) -> None:
        with self._lock:
            self.contexts.append(context)


@pytest.fixture
def seeded_db(fake_db):
    fake_db.seed("sellers", seller_row())
    fake_db.seed(
        "offers",
        offer_row(),
        offer_row(
            offer_id="offer-x",
            slug="offer-x",
            main_product={"id": "main-x", "name": "Produto X", "price_in_cents": 1990},
            order_bumps=[{"id": "B1", "name": "Bump 1", "price_in_cents": 990}],
            upsell={"enabled": True, "name": "VIP", "price_in_cents": 4700},
        ),
    )
    return fake_db


@pytest.fixture
def dispatch() -> RecordingDispatch:
    return RecordingDispatch()


def test_settles_main_and_bump_with_five_percent_fee(seeded_db, dispatch) -> None:
    event = succeeded_event("pi_x_1", amount_in_cents=2980, offer_slug="offer-x", quantity=1, selected_order_bumps=("B1",))

    result = settle(event, dispatch=dispatch)

    assert result.outcome is SettlementOutcome.CREATED
    sale = result.sale
    assert [(item.name, item.price_in_cents, item.is_order_bump) for item in sale.items] == [
        ("Produto X", 1990, False),
        ("Bump 1", 990, True),
    ]
    assert sale.total_amount_in_cents == 2980
    assert sale.platform_fee_in_cents == 149
    assert sale.seller_amount_in_cents == 2831
    assert sale.status == SaleStatus.SUCCEEDED
    assert sale.seller_id == SELLER_ID

    stored = find_sale_by_transaction_id("pi_x_1")
    assert stored is not None
    assert stored.sale_id == sale.sale_id
    assert stored.items == sale.items
    assert stored.total_amount_in_cents == 2980


def test_duplicate_delivery_creates_one_sale(seeded_db, dispatch) -> None:
    event = succeeded_event("pi_dup", amount_in_cents=10000)

    first = settle(event, dispatch=dispatch)
    second = settle(event, dispatch=dispatch)

    assert first.outcome is SettlementOutcome.CREATED
    assert second.outcome is SettlementOutcome.DUPLICATE
    assert second.sale.sale_id == first.sale.sale_id
    assert len(seeded_db.rows("sales")) == 1
    assert len(dispatch.contexts) == 1


def test_concurrent_duplicate_deliveries_create_one_sale(seeded_db, dispatch) -> None:
    event = succeeded_event("pi_race", amount_in_cents=10000)
    start = threading.Barrier(8)

    def deliver():
        start.wait()
        return settle(event, dispatch=dispatch)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: deliver(), range(8)))

    outcomes = [result.outcome for result in results]
    assert outcomes.count(SettlementOutcome.CREATED) == 1
    assert outcomes.count(SettlementOutcome.DUPLICATE) == 7
    assert len(seeded_db.rows("sales")) == 1
    assert len(dispatch.contexts) == 1


def test_insert_race_loser_reports_duplicate(seeded_db, dispatch, monkeypatch) -> None:
    """A delivery that passes the lookup but loses the insert is a duplicate, not an error."""

    event = succeeded_event("pi_lost_race", amount_in_cents=10000)
    winner = settle(event, dispatch=dispatch)

    real_find = settlement_service.find_sale_by_transaction_id
    lookups = []

    def stale_first_lookup(transaction_id):
        lookups.append(transaction_id)
        if len(lookups) == 1:
            return None
        return real_find(transaction_id)

    monkeypatch.setattr(settlement_service, "find_sale_by_transaction_id", stale_first_lookup)

    loser = settle(event, dispatch=dispatch)

    assert loser.outcome is SettlementOutcome.DUPLICATE
    assert loser.sale.sale_id == winner.sale.sale_id
    assert seeded_db.inserts["sales"] == 1
    assert len(dispatch.contexts) == 1


def test_upsell_ignores_bumps_and_quantity(seeded_db, dispatch) -> None:
    event = succeeded_event(
        "pi_upsell",
        amount_in_cents=4700,
        offer_slug="offer-x",
        is_upsell=True,
        quantity=3,
        selected_order_bumps=("B1",),
    )

    sale = settle(event, dispatch=dispatch).sale

    assert [(item.name, item.price_in_cents, item.is_order_bump) for item in sale.items] == [("VIP", 4700, False)]
    assert sale.quantity == 1
    assert sale.is_upsell is True
    assert sale.total_amount_in_cents == 4700


def test_dangling_bump_settles_main_only(seeded_db, dispatch) -> None:
    event = succeeded_event("pi_dangling", amount_in_cents=11990, selected_order_bumps=("B-deleted",))

    result = settle(event, dispatch=dispatch)

    assert result.outcome is SettlementOutcome.CREATED
    assert [item.product_id for item in result.sale.items] == ["prod-main"]
    assert result.sale.total_amount_in_cents == 10000
    assert result.order.dangling_bump_ids == ("B-deleted",)


def test_stored_total_is_reconstructed_not_charged(seeded_db, dispatch) -> None:
    event = succeeded_event("pi_mismatch", amount_in_cents=9000)

    sale = settle(event, dispatch=dispatch).sale

    assert sale.total_amount_in_cents == 10000


def test_quantity_multiplies_main_product(seeded_db, dispatch) -> None:
    event = succeeded_event("pi_qty", amount_in_cents=32500, quantity=3, selected_order_bumps=("bump-ebook",))

    sale = settle(event, dispatch=dispatch).sale

    assert sale.quantity == 3
    assert sale.total_amount_in_cents == 10000 * 3 + 2500
    assert sale.platform_fee_in_cents == 1625


def test_custom_fee_rate_is_applied(seeded_db, dispatch) -> None:
    sale = settle(succeeded_event("pi_fee"), dispatch=dispatch, fee_rate=Decimal("0.10")).sale

    assert sale.platform_fee_in_cents == 1000


def test_offer_slug_lookup_is_normalized(seeded_db, dispatch) -> None:
    result = settle(succeeded_event("pi_slug", offer_slug="  Curso-Fotografia "), dispatch=dispatch)

    assert result.outcome is SettlementOutcome.CREATED


def test_unknown_offer_is_retry_safe(seeded_db, dispatch) -> None:
    with pytest.raises(OfferNotFoundError):
        settle(succeeded_event("pi_no_offer", offer_slug="does-not-exist"), dispatch=dispatch)

    assert seeded_db.rows("sales") == []
    assert dispatch.contexts == []


def test_missing_offer_slug_is_malformed(seeded_db, dispatch) -> None:
    with pytest.raises(MalformedMetadataError):
        settle(succeeded_event("pi_no_slug", offer_slug=None), dispatch=dispatch)


def test_non_positive_total_is_refused(fake_db, dispatch) -> None:
    fake_db.seed("sellers", seller_row())
    fake_db.seed("offers", offer_row(main_product={"id": "free", "name": "Grátis", "price_in_cents": 0}, order_bumps=[]))

    with pytest.raises(NonPositiveTotalError):
        settle(succeeded_event("pi_free", amount_in_cents=0), dispatch=dispatch)

    assert fake_db.rows("sales") == []


def test_customer_placeholders_when_metadata_lacks_buyer(seeded_db, dispatch) -> None:
    sale = settle(succeeded_event("pi_anon", customer_email=None, customer_name=None), dispatch=dispatch).sale

    assert sale.customer_email == settlement_service.UNIDENTIFIED_CUSTOMER_EMAIL
    assert sale.customer_name == settlement_service.UNIDENTIFIED_CUSTOMER_NAME


def test_dispatch_receives_committed_sale(seeded_db, dispatch) -> None:
    settle(succeeded_event("pi_ctx", selected_order_bumps=("bump-ebook",)), dispatch=dispatch)

    (context,) = dispatch.contexts
    assert context.sale.transaction_id == "pi_ctx"
    assert context.seller.email == "produtor@example.com"
    assert context.offer.slug == "curso-fotografia"
    assert len(context.order.items) == 2
    # committed before dispatch
    assert find_sale_by_transaction_id("pi_ctx") is not None


def test_missing_seller_dispatches_with_placeholder(fake_db, dispatch) -> None:
    fake_db.seed("offers", offer_row())

    settle(succeeded_event("pi_no_seller"), dispatch=dispatch)

    assert dispatch.contexts[0].seller.seller_id == SELLER_ID
    assert dispatch.contexts[0].seller.email == "unknown@email.com"


def test_dispatch_failure_does_not_affect_sale(seeded_db) -> None:
    def exploding_dispatch(context):
        raise RuntimeError("scheduler down")

    result = settle(succeeded_event("pi_boom"), dispatch=exploding_dispatch)

    assert result.outcome is SettlementOutcome.CREATED
    assert find_sale_by_transaction_id("pi_boom").status == SaleStatus.SUCCEEDED


# ----------------------------------------------------------------------------
# Refunds
# ----------------------------------------------------------------------------

def test_refund_moves_sale_to_refunded(seeded_db, dispatch) -> None:
    settle(succeeded_event("pi_refund"), dispatch=dispatch)

    result = settle(refunded_event("pi_refund"), dispatch=dispatch)

    assert result.outcome is SettlementOutcome.REFUNDED
    assert result.sale.status == SaleStatus.REFUNDED
    assert find_sale_by_transaction_id("pi_refund").status == SaleStatus.REFUNDED
    assert "updated_at_utc" in seeded_db.rows("sales")[0]
    # refunds never fan out
    assert len(dispatch.contexts) == 1


def test_repeated_refund_is_duplicate(seeded_db, dispatch) -> None:
    settle(succeeded_event("pi_refund_twice"), dispatch=dispatch)
    settle(refunded_event("pi_refund_twice"), dispatch=dispatch)

    result = settle(refunded_event("pi_refund_twice"), dispatch=dispatch)

    assert result.outcome is SettlementOutcome.DUPLICATE
    assert result.sale.status == SaleStatus.REFUNDED


def test_refund_for_unknown_sale_is_retry_safe(seeded_db) -> None:
    with pytest.raises(SaleNotFoundError):
        settle(refunded_event("pi_never_settled"))

    assert seeded_db.rows("sales") == []


def test_refund_of_pending_sale_is_rejected(fake_db) -> None:
    fake_db.seed(
        "sales",
        {
            "sale_id": "00000000-0000-0000-0000-0000000000b2",
            "payment_transaction_id": "pi_pending",
            "seller_id": SELLER_ID,
            "offer_id": "offer-7",
            "customer_name": "Maria Souza",
            "customer_email": "maria@example.com",
            "items": [{"name": "Curso", "price_in_cents": 10000, "is_order_bump": False}],
            "quantity": 1,
            "total_amount_in_cents": 10000,
            "platform_fee_in_cents": 500,
            "currency": "brl",
            "status": "pending",
            "is_upsell": False,
            "created_at_utc": "2026-03-14T15:09:26Z",
        },
    )

    with pytest.raises(InvalidSaleTransition):
        settle(refunded_event("pi_pending"))

    assert fake_db.rows("sales")[0]["status"] == "pending"
