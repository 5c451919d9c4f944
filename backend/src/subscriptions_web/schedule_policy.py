from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

REMINDER_OFFSETS: tuple[int, ...] = (7, 3, 1)


@dataclass(frozen=True)
class PendingCheckpoint:
    offset: int
    gap_days: int


@dataclass(frozen=True)
class ReminderPlan:
    days_until_renewal: int
    due_now: int | None
    pending: tuple[PendingCheckpoint, ...]
    sleep_days: int
    renewal_passed: bool

    @property
    def checkpoints(self) -> tuple[int, ...]:
        if self.due_now is None:
            return ()
        return (self.due_now, *(item.offset for item in self.pending))


def validate_offsets(offsets: Sequence[int]) -> tuple[int, ...]:
    normalized = tuple(int(value) for value in offsets)
    if not normalized:
        raise ValueError("reminder offsets cannot be empty")
    if any(value <= 0 for value in normalized):
        raise ValueError("reminder offsets must be positive")
    if any(later >= earlier for earlier, later in zip(normalized, normalized[1:])):
        raise ValueError("reminder offsets must be strictly decreasing")
    return normalized


def next_checkpoints(days_until_renewal: int, offsets: Sequence[int] = REMINDER_OFFSETS) -> tuple[int, ...]:
    """Every offset less than or equal to ``days_until_renewal``, largest first.

    Empty once the renewal has passed (day-of-renewal counts as passed).
    Whether the first element is due now is decided by :func:`plan_reminders`.
    """
    normalized = validate_offsets(offsets)
    if days_until_renewal <= 0:
        return ()
    return tuple(value for value in normalized if value <= days_until_renewal)


def plan_reminders(days_until_renewal: int, offsets: Sequence[int] = REMINDER_OFFSETS) -> ReminderPlan:
    normalized = validate_offsets(offsets)
    if days_until_renewal <= 0:
        return ReminderPlan(
            days_until_renewal=days_until_renewal,
            due_now=None,
            pending=(),
            sleep_days=0,
            renewal_passed=True,
        )

    if days_until_renewal > normalized[0]:
        return ReminderPlan(
            days_until_renewal=days_until_renewal,
            due_now=None,
            pending=(),
            sleep_days=days_until_renewal - normalized[0],
            renewal_passed=False,
        )

    due = next_checkpoints(days_until_renewal, normalized)
    pending = tuple(
        PendingCheckpoint(offset=later, gap_days=earlier - later)
        for earlier, later in zip(due, due[1:])
    )
    return ReminderPlan(
        days_until_renewal=days_until_renewal,
        due_now=due[0],
        pending=pending,
        sleep_days=0,
        renewal_passed=False,
    )
