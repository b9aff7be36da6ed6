"""
Exchange-rate lookup for outbound payloads.

Rates are held by an explicit provider object with a last-refresh timestamp
and a TTL, injected into whatever needs conversion. There is no module-level
rate cache.

Rate tables map a currency code to "units of the base currency per one unit of
that currency" (base BRL: {"USD": 5.0} means 1 USD = 5.0 BRL).
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from functools import partial
from typing import Callable, Dict, Mapping, Optional, Protocol

import httpx

from domain.time import utc_now
from services.config import get_settings
from services.metrics import exchange_rate_fallback_total

logger = logging.getLogger(__name__)

DEFAULT_RATES_TO_BRL: Dict[str, Decimal] = {
    "BRL": Decimal("1"),
    "USD": Decimal("5.0"),
    "EUR": Decimal("5.5"),
    "GBP": Decimal("6.5"),
}

# Units of the base currency assumed for a currency missing from the table
FALLBACK_RATE = Decimal("5.0")


class RateProvider(Protocol):
    def rate(self, source: str, target: str) -> Decimal:
        """Units of target per one unit of source."""
        ...


def fetch_exchange_rates(
    url: str,
    base: str = "BRL",
    timeout: float = 10.0,
    transport: Optional[httpx.BaseTransport] = None,
) -> Dict[str, Decimal]:
    """
    Fetch a rate table from an exchangerate-api style endpoint.

    Accepts payloads shaped like {"base": "USD", "rates": {"BRL": 5.1, ...}} and
    normalizes them to units of `base` per unit of each currency.

    Raises:
        httpx.HTTPError: On transport errors or non-2xx responses
        ValueError: If the payload carries no usable rates
    """

    with httpx.Client(timeout=timeout, transport=transport) as client:
        response = client.get(url)
        response.raise_for_status()
        data = response.json()

    rates = data.get("rates") or {}
    if not rates:
        raise ValueError("Exchange rate response has no 'rates'")

    payload_base = str(data.get("base") or base).upper()
    table: Dict[str, Decimal] = {base: Decimal("1")}

    if payload_base == base:
        for code, value in rates.items():
            value = Decimal(str(value))
            if value > 0:
                table[code.upper()] = Decimal("1") / value
    else:
        base_rate = Decimal(str(rates.get(base) or 0))
        if base_rate <= 0:
            raise ValueError(f"Exchange rate response has no rate for {base}")
        for code, value in rates.items():
            value = Decimal(str(value))
            if value > 0:
                table[code.upper()] = base_rate / value
        table[payload_base] = base_rate

    return table


class CachedRateProvider:
    """
    Rate provider that refreshes from `fetch_rates` at most once per TTL.

    A failed refresh keeps serving the previous table; staleness within the TTL
    (or after a failed refresh) is tolerated. A currency missing from the table
    is priced at `fallback_rate` with a warning instead of failing the caller.
    """

    def __init__(
        self,
        fetch_rates: Optional[Callable[[], Mapping[str, Decimal]]] = None,
        ttl: timedelta = timedelta(hours=1),
        defaults: Mapping[str, Decimal] = DEFAULT_RATES_TO_BRL,
        clock: Callable[[], datetime] = utc_now,
        fallback_rate: Decimal = FALLBACK_RATE,
    ) -> None:
        self._fetch_rates = fetch_rates
        self.fallback_rate = fallback_rate
        self.ttl = ttl
        self._clock = clock
        self._rates: Dict[str, Decimal] = dict(defaults)
        self._lock = threading.Lock()
        self.last_refresh: Optional[datetime] = None

    def _is_stale(self) -> bool:
        return self.last_refresh is None or self._clock() - self.last_refresh > self.ttl

    def refresh(self) -> None:
        if self._fetch_rates is None:
            return
        try:
            fresh = self._fetch_rates()
        except Exception as e:
            logger.error(f"Exchange rate refresh failed, using cached rates: {e}")
            # Wait a full TTL before hitting a failing endpoint again.
            self.last_refresh = self._clock()
            return
        self._rates.update({code.upper(): Decimal(value) for code, value in fresh.items()})
        self.last_refresh = self._clock()

    def rates(self) -> Dict[str, Decimal]:
        with self._lock:
            if self._is_stale():
                self.refresh()
            return dict(self._rates)

    def rate(self, source: str, target: str) -> Decimal:
        source, target = source.upper(), target.upper()
        if source == target:
            return Decimal("1")

        table = self.rates()
        return self._rate_of(source, table) / self._rate_of(target, table)

    def _rate_of(self, code: str, table: Mapping[str, Decimal]) -> Decimal:
        if code in table:
            return table[code]
        logger.warning(
            f"No exchange rate for {code}, using fallback rate {self.fallback_rate}",
            extra={"currency": code},
        )
        exchange_rate_fallback_total.labels(currency=code).inc()
        return self.fallback_rate


def build_rate_provider() -> CachedRateProvider:
    """Provider refreshing from the configured exchange-rate endpoint."""

    settings = get_settings()
    return CachedRateProvider(
        fetch_rates=partial(fetch_exchange_rates, settings.exchange_rate_api_url, settings.attribution_currency),
        ttl=timedelta(seconds=settings.exchange_rate_ttl_seconds),
    )


def convert_cents(amount_in_cents: int, source: str, target: str, provider: RateProvider) -> int:
    """Convert minor units between currencies, rounding half-up."""

    rate = provider.rate(source, target)
    return int((Decimal(amount_in_cents) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


__all__ = [
    "DEFAULT_RATES_TO_BRL",
    "FALLBACK_RATE",
    "CachedRateProvider",
    "RateProvider",
    "build_rate_provider",
    "convert_cents",
    "fetch_exchange_rates",
]
