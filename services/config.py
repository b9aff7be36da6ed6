"""
Runtime configuration.

Values come from the process environment, with a `.env` file in the project
root loaded first (same convention as the Supabase client). Settings are read
once and cached; tests call `get_settings.cache_clear()` after patching the
environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

env_path = Path(__file__).parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DEFAULT_AD_CONVERSION_API_URL = "https://graph.facebook.com/v19.0"
DEFAULT_EXCHANGE_RATE_API_URL = "https://api.exchangerate-api.com/v4/latest/BRL"


@dataclass(frozen=True, slots=True)
class Settings:
    stripe_webhook_secret: Optional[str]
    skip_webhook_validation: bool
    platform_fee_rate: Decimal
    dispatch_timeout_seconds: float
    ad_conversion_api_url: str
    attribution_currency: str
    exchange_rate_api_url: str
    exchange_rate_ttl_seconds: int
    checkout_base_url: str
    log_level: str


def _flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes"}


def _decimal(name: str, default: str) -> Decimal:
    raw = os.getenv(name, default)
    try:
        value = Decimal(raw)
    except InvalidOperation as e:
        raise RuntimeError(f"Invalid {name}: {raw!r} is not a decimal number") from e
    if not Decimal("0") <= value <= Decimal("1"):
        raise RuntimeError(f"Invalid {name}: must be a fraction between 0 and 1, got {raw}")
    return value


def _number(name: str, default: str, cast: type) -> float | int:
    raw = os.getenv(name, default)
    try:
        value = cast(raw)
    except ValueError as e:
        raise RuntimeError(f"Invalid {name}: {raw!r}") from e
    if value <= 0:
        raise RuntimeError(f"Invalid {name}: must be positive, got {raw}")
    return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Load settings from the environment.

    Raises:
        RuntimeError: If a numeric setting cannot be parsed
    """

    return Settings(
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET") or None,
        skip_webhook_validation=_flag("SKIP_WEBHOOK_VALIDATION"),
        platform_fee_rate=_decimal("PLATFORM_FEE_RATE", "0.05"),
        dispatch_timeout_seconds=float(_number("DISPATCH_TIMEOUT_SECONDS", "15", float)),
        ad_conversion_api_url=os.getenv("AD_CONVERSION_API_URL", DEFAULT_AD_CONVERSION_API_URL).rstrip("/"),
        attribution_currency=os.getenv("ATTRIBUTION_CURRENCY", "BRL").upper(),
        exchange_rate_api_url=os.getenv("EXCHANGE_RATE_API_URL", DEFAULT_EXCHANGE_RATE_API_URL),
        exchange_rate_ttl_seconds=int(_number("EXCHANGE_RATE_TTL_SECONDS", "3600", int)),
        checkout_base_url=os.getenv("CHECKOUT_BASE_URL", "https://pay.snappcheckout.com").rstrip("/"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


__all__ = ["Settings", "get_settings"]
