from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from subscriptions_web.date_math import days_until, is_past

NOW = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)


@pytest.mark.parametrize("days", [0, 1, 2, 3, 6, 7, 8, 30])
def test_days_until_exact_day_offsets(days: int) -> None:
    renewal = NOW + timedelta(days=days)

    assert days_until(renewal, NOW) == days
    assert is_past(renewal, NOW) is False


def test_partial_days_round_up() -> None:
    assert days_until(NOW + timedelta(days=6.2), NOW) == 7
    assert days_until(NOW + timedelta(hours=1), NOW) == 1


def test_negative_durations_ceil_toward_zero() -> None:
    assert days_until(NOW - timedelta(hours=12), NOW) == 0
    assert days_until(NOW - timedelta(days=1), NOW) == -1
    assert is_past(NOW - timedelta(days=1), NOW) is True
    assert is_past(NOW - timedelta(seconds=1), NOW) is True


def test_naive_datetimes_are_treated_as_utc() -> None:
    naive_renewal = datetime(2026, 3, 4, 9, 30)

    assert days_until(naive_renewal, NOW) == 3
    assert is_past(naive_renewal, NOW) is False


def test_offset_aware_datetimes_are_normalized() -> None:
    plus_two = timezone(timedelta(hours=2))
    renewal = datetime(2026, 3, 8, 11, 30, tzinfo=plus_two)

    assert days_until(renewal, NOW) == 7
