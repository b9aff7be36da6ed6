"""
Domain time utilities (pure).

Every persisted timestamp in the ledger is UTC. These helpers are the single
place that rule is checked, so error messages stay identical across entities.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone


def require_utc_timestamp(name: str, value: datetime) -> None:
    """
    Reject naive or non-UTC timestamps.

    Invariants:
    - Timestamps must be timezone-aware.
    - Timestamps must have UTC offset 0.
    """

    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError(f"{name} must be timezone-aware (UTC)")
    if value.utcoffset() != timedelta(0):
        raise ValueError(f"{name} must be a UTC timestamp (offset 0)")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def from_unix_seconds(value: int) -> datetime:
    """Convert a gateway epoch timestamp (seconds) to an aware UTC datetime."""

    return datetime.fromtimestamp(int(value), tz=timezone.utc)
