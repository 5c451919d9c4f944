from __future__ import annotations

import math
from datetime import datetime, timezone

SECONDS_PER_DAY = 24 * 60 * 60


def coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def days_until(renewal_date: datetime, now: datetime) -> int:
    """Whole days remaining until ``renewal_date``, rounding partial days up.

    A renewal 6.2 days away yields 7, so a subscription is never classified as
    renewed while part of its last day is still left.
    """
    remaining = (coerce_utc(renewal_date) - coerce_utc(now)).total_seconds()
    return math.ceil(remaining / SECONDS_PER_DAY)


def is_past(renewal_date: datetime, now: datetime) -> bool:
    return coerce_utc(renewal_date) < coerce_utc(now)
