from __future__ import annotations

import pytest

from subscriptions_web.schedule_policy import (
    REMINDER_OFFSETS,
    PendingCheckpoint,
    next_checkpoints,
    plan_reminders,
    validate_offsets,
)


def test_default_offsets() -> None:
    assert REMINDER_OFFSETS == (7, 3, 1)


def test_ten_days_out_sleeps_until_first_checkpoint() -> None:
    plan = plan_reminders(10)

    assert next_checkpoints(10) == (7, 3, 1)
    assert plan.due_now is None
    assert plan.pending == ()
    assert plan.sleep_days == 3
    assert plan.renewal_passed is False


def test_five_days_out_sends_three_and_keeps_one_pending() -> None:
    plan = plan_reminders(5)

    assert next_checkpoints(5) == (3, 1)
    assert plan.due_now == 3
    assert plan.pending == (PendingCheckpoint(offset=1, gap_days=2),)
    assert plan.checkpoints == (3, 1)
    assert plan.sleep_days == 0


def test_zero_days_counts_as_passed() -> None:
    plan = plan_reminders(0)

    assert next_checkpoints(0) == ()
    assert plan.renewal_passed is True
    assert plan.due_now is None
    assert plan_reminders(-4).renewal_passed is True


@pytest.mark.parametrize(
    ("days", "due", "pending"),
    [
        (7, 7, ((3, 4), (1, 2))),
        (3, 3, ((1, 2),)),
        (1, 1, ()),
        (2, 1, ()),
    ],
)
def test_boundary_offsets_are_due_now(days: int, due: int, pending: tuple[tuple[int, int], ...]) -> None:
    plan = plan_reminders(days)

    assert plan.due_now == due
    assert tuple((item.offset, item.gap_days) for item in plan.pending) == pending


def test_eight_days_out_waits_one_day() -> None:
    assert plan_reminders(8).sleep_days == 1


def test_custom_offsets() -> None:
    plan = plan_reminders(12, (14, 2))

    assert plan.due_now == 2
    assert plan.pending == ()


@pytest.mark.parametrize("offsets", [(), (3, 7), (7, 3, 3), (7, 0), (5, -1)])
def test_invalid_offsets_are_rejected(offsets: tuple[int, ...]) -> None:
    with pytest.raises(ValueError):
        validate_offsets(offsets)
