"""
Tests for `services/currency_service.py`.

Covers:
- Rate normalization from exchangerate-api style payloads.
- TTL-bounded refresh with an injected clock.
- A failed refresh keeps serving the previous table.
- Unknown currencies fall back to a fixed rate instead of failing.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest
from prometheus_client import REGISTRY

from services.currency_service import (
    FALLBACK_RATE,
    CachedRateProvider,
    convert_cents,
    fetch_exchange_rates,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def json_transport(payload: dict, status_code: int = 200) -> httpx.MockTransport:
    return httpx.MockTransport(lambda request: httpx.Response(status_code, json=payload))


def test_fetch_normalizes_same_base_payload() -> None:
    transport = json_transport({"base": "BRL", "rates": {"BRL": 1, "USD": 0.2, "EUR": 0.16}})

    table = fetch_exchange_rates("https://rates.example.com/latest/BRL", transport=transport)

    assert table["BRL"] == Decimal("1")
    assert table["USD"] == Decimal("5")
    assert table["EUR"] == Decimal("6.25")


def test_fetch_rebases_foreign_base_payload() -> None:
    transport = json_transport({"base": "USD", "rates": {"BRL": 5.0, "EUR": 0.8, "USD": 1}})

    table = fetch_exchange_rates("https://rates.example.com/latest/USD", base="BRL", transport=transport)

    assert table["BRL"] == Decimal("1")
    assert table["USD"] == Decimal("5")
    assert table["EUR"] == Decimal("6.25")


def test_fetch_rejects_payload_without_rates() -> None:
    with pytest.raises(ValueError):
        fetch_exchange_rates("https://rates.example.com", transport=json_transport({"base": "BRL"}))


def test_fetch_raises_on_http_error() -> None:
    with pytest.raises(httpx.HTTPStatusError):
        fetch_exchange_rates("https://rates.example.com", transport=json_transport({}, status_code=503))


def test_provider_refreshes_at_most_once_per_ttl() -> None:
    clock = FakeClock()
    calls = []

    def fetch():
        calls.append(clock())
        return {"USD": Decimal("5.0")}

    provider = CachedRateProvider(fetch_rates=fetch, ttl=timedelta(hours=1), clock=clock)

    provider.rate("USD", "BRL")
    clock.advance(minutes=59)
    provider.rate("USD", "BRL")
    assert len(calls) == 1
    assert provider.last_refresh == datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    clock.advance(minutes=2)
    provider.rate("USD", "BRL")
    assert len(calls) == 2


def test_failed_refresh_keeps_previous_rates() -> None:
    clock = FakeClock()
    responses = [{"USD": Decimal("5.2")}]

    def fetch():
        if not responses:
            raise httpx.ConnectError("rates api down")
        return responses.pop()

    provider = CachedRateProvider(fetch_rates=fetch, ttl=timedelta(hours=1), clock=clock)
    assert provider.rate("USD", "BRL") == Decimal("5.2")

    clock.advance(hours=2)
    assert provider.rate("USD", "BRL") == Decimal("5.2")
    assert provider.last_refresh == clock()


def test_provider_without_fetcher_uses_defaults() -> None:
    provider = CachedRateProvider()

    assert provider.rate("usd", "brl") == Decimal("5.0")
    assert provider.rate("BRL", "BRL") == Decimal("1")


def fallback_count(currency: str) -> float:
    return REGISTRY.get_sample_value("exchange_rate_fallback_total", {"currency": currency}) or 0.0


def test_unknown_currency_uses_fallback_rate_and_warns(caplog) -> None:
    provider = CachedRateProvider()
    before = fallback_count("MXN")

    with caplog.at_level(logging.WARNING, logger="services.currency_service"):
        assert provider.rate("mxn", "BRL") == FALLBACK_RATE
        assert convert_cents(10000, "MXN", "BRL", provider) == 50000

    assert fallback_count("MXN") == before + 2
    assert "No exchange rate for MXN" in caplog.text


def test_convert_cents_rounds_half_up() -> None:
    provider = CachedRateProvider(defaults={"BRL": Decimal("1"), "USD": Decimal("5.05")})

    assert convert_cents(10000, "USD", "BRL", provider) == 50500
    assert convert_cents(1, "BRL", "USD", provider) == 0
    assert convert_cents(3, "BRL", "USD", provider) == 1
