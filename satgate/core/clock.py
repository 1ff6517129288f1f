from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable


TimeProvider = Callable[[], datetime]


def utc_now() -> datetime:
    # Use UTC everywhere so expiry and quota windows agree across instances.
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # Some drivers return naive datetimes; treat them as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_day_start(now: datetime) -> datetime:
    # Normalize to the UTC day boundary for daily quotas.
    now = as_utc(now)
    return datetime(now.year, now.month, now.day, tzinfo=timezone.utc)


def utc_day_end(now: datetime) -> datetime:
    return utc_day_start(now) + timedelta(days=1)
