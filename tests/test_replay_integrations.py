"""
Tests for `scripts/replay_integrations.py`.
"""

from __future__ import annotations

import pytest

from repositories.sale_repository import insert_sale, mark_sale_refunded
from scripts import replay_integrations
from services.fanout_service import ACCESS, ATTRIBUTION
from services.webhook_dispatcher import DispatchOutcome, DispatchStatus
from factories import OFFER_SLUG, make_sale, offer_row, seller_row


@pytest.fixture
def ledger(fake_db):
    fake_db.seed("sellers", seller_row())
    fake_db.seed("offers", offer_row())
    insert_sale(make_sale("pi_replay_1"))
    insert_sale(make_sale("pi_replay_2"))
    return fake_db


def test_context_is_rebuilt_from_ledger(ledger) -> None:
    sale = make_sale("pi_replay_1")

    context = replay_integrations.build_replay_context(sale)

    assert context.offer.slug == OFFER_SLUG
    assert context.seller.email == "produtor@example.com"
    assert context.order.items == sale.items
    assert context.metadata.customer_email == "maria@example.com"
    assert context.metadata.utm_source is None
    assert context.paid_at == sale.created_at


def test_select_by_transaction_skips_refunded_and_unknown(ledger) -> None:
    mark_sale_refunded("pi_replay_2")

    sales = replay_integrations.select_sales(["pi_replay_1", "pi_replay_2", "pi_missing"], None, None, 100)

    assert [s.transaction_id for s in sales] == ["pi_replay_1"]


def test_dry_run_sends_nothing(ledger, monkeypatch) -> None:
    sent = []
    monkeypatch.setattr(replay_integrations, "fan_out", lambda context, dispatchers: sent.append(context))

    exit_code = replay_integrations.main(["--transaction-id", "pi_replay_1", "--dry-run"])

    assert exit_code == 0
    assert sent == []


def test_replay_runs_selected_dispatchers(ledger, monkeypatch) -> None:
    seen = []

    def fake_fan_out(context, dispatchers):
        seen.append((context.sale.transaction_id, [d.name for d in dispatchers]))
        return [DispatchOutcome(d.name, DispatchStatus.DELIVERED, delivered=1) for d in dispatchers]

    monkeypatch.setattr(replay_integrations, "fan_out", fake_fan_out)

    exit_code = replay_integrations.main(["--date-from", "2026-01-01", "--only", ATTRIBUTION, "--only", ACCESS])

    assert exit_code == 0
    assert seen == [
        ("pi_replay_1", [ATTRIBUTION, ACCESS]),
        ("pi_replay_2", [ATTRIBUTION, ACCESS]),
    ]


def test_failed_dispatch_sets_exit_code(ledger, monkeypatch) -> None:
    monkeypatch.setattr(
        replay_integrations,
        "fan_out",
        lambda context, dispatchers: [DispatchOutcome(ATTRIBUTION, DispatchStatus.FAILED, failed=1, error="HTTP 500")],
    )

    assert replay_integrations.main(["-t", "pi_replay_1"]) == 1


def test_missing_offer_counts_as_failure(fake_db) -> None:
    insert_sale(make_sale("pi_orphan"))

    assert replay_integrations.main(["-t", "pi_orphan"]) == 1


def test_requires_a_selection() -> None:
    with pytest.raises(SystemExit):
        replay_integrations.main([])


def test_parse_utc_date_assumes_utc() -> None:
    parsed = replay_integrations.parse_utc_date("2026-01-31")

    assert parsed.isoformat() == "2026-01-31T00:00:00+00:00"
