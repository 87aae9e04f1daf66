from __future__ import annotations

from datetime import datetime, timedelta, timezone, tzinfo
from functools import lru_cache
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    # Use UTC for consistent ledger and reset boundaries.
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; treat them as the UTC values we stored.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@lru_cache
def resolve_timezone(name: str) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def period_start(period: str, now: datetime) -> datetime:
    # Start of the reset window containing `now`; weeks start on Monday.
    current = ensure_utc(now)
    day_start = datetime(current.year, current.month, current.day, tzinfo=timezone.utc)
    if period == "daily":
        return day_start
    if period == "weekly":
        return day_start - timedelta(days=day_start.weekday())
    if period == "monthly":
        return datetime(current.year, current.month, 1, tzinfo=timezone.utc)
    raise ValueError(f"Unknown reset period: {period}")
