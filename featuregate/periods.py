"""Quota period arithmetic.

Period boundaries are derived from the clock on every call, never stored as
a "last reset" timestamp, so a counter key is the same for every request in
the same period regardless of which replica computes it.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from .constants import PER_DAY, PER_MONTH, PER_WEEK, TOTAL

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (SQLite returns these) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def period_start(limit_type: str, now: datetime) -> datetime:
    now = as_utc(now)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if limit_type == PER_DAY:
        return midnight
    if limit_type == PER_WEEK:
        # ISO weeks start on Monday.
        return midnight - timedelta(days=midnight.weekday())
    if limit_type == PER_MONTH:
        return midnight.replace(day=1)
    if limit_type == TOTAL:
        return EPOCH
    raise ValueError(f"Unknown quota period: {limit_type!r}")
