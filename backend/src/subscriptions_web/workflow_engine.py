from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, NoReturn, Sequence

from .date_math import coerce_utc, days_until
from .models import RunOutcomeResponse
from .notifier import DeliveryFailure, PermanentDeliveryFailure, ReminderNotifier, RenewalReminder
from .schedule_policy import REMINDER_OFFSETS, plan_reminders, validate_offsets
from .subscriptions import Subscription, SubscriptionRepository
from .wake_scheduler import WakeScheduleError, WakeScheduler
from .workflow_runs import LeaseLostError, WorkflowRun, WorkflowRunRepository

logger = logging.getLogger(__name__)

SEND_STEP_PREFIX = "send-reminder-"
WINDOW_SLEEP_NAME = "wait-until-reminder-window"

DEFAULT_RETRY_BASE_SECONDS = 60
DEFAULT_RETRY_MAX_SECONDS = 3600
DEFAULT_LEASE_SECONDS = 300


def reminder_step_name(offset: int) -> str:
    return f"{SEND_STEP_PREFIX}{offset}"


def reminder_sleep_name(offset: int) -> str:
    return f"wait-for-reminder-{offset}"


def compute_backoff(attempts: int, *, base_seconds: int, max_seconds: int) -> int:
    return min(base_seconds * (2 ** max(0, attempts - 1)), max_seconds)


class WorkflowSuspended(Exception):
    """Control signal raised by ``sleep``; ``run`` catches it and returns."""

    def __init__(self, run: WorkflowRun) -> None:
        super().__init__(f"workflow {run.run_id} suspended until {run.wake_at}")
        self.run = run


class ConcurrentResumeConflict(RuntimeError):
    """Raised when a wake-up cannot claim a run that another wake-up holds or that is not yet due."""

    def __init__(self, run: WorkflowRun) -> None:
        super().__init__(f"workflow {run.run_id} is not claimable (state={run.state})")
        self.run = run


@dataclass(frozen=True)
class RunOutcome:
    subscription_id: str
    run_id: str | None
    outcome: str
    state: str | None
    reminders_sent: tuple[int, ...] = ()
    wake_at: datetime | None = None

    def to_response(self) -> RunOutcomeResponse:
        return RunOutcomeResponse(
            subscription_id=self.subscription_id,
            run_id=self.run_id,
            outcome=self.outcome,  # type: ignore[arg-type]
            state=self.state,  # type: ignore[arg-type]
            reminders_sent=list(self.reminders_sent),
            wake_at=self.wake_at,
        )


class ReminderWorkflowEngine:
    """Drives one durable reminder workflow per subscription.

    Every invocation of :meth:`run` claims the subscription's active run,
    re-reads the subscription, and replays the program from the top: completed
    ``send-reminder-{offset}`` steps return their memoized results, the next due
    checkpoint is sent, and the run is suspended until the following
    checkpoint. Suspension persists ``sleeping`` with a ``wake_at`` and asks the
    wake scheduler to call back; no thread is held while a run sleeps.
    """

    def __init__(
        self,
        *,
        repository: WorkflowRunRepository,
        subscriptions: SubscriptionRepository,
        notifier: ReminderNotifier,
        wake_scheduler: WakeScheduler,
        offsets: Sequence[int] = REMINDER_OFFSETS,
        retry_base_seconds: int = DEFAULT_RETRY_BASE_SECONDS,
        retry_max_seconds: int = DEFAULT_RETRY_MAX_SECONDS,
        max_retries: int = 0,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._subscriptions = subscriptions
        self._notifier = notifier
        self._wake_scheduler = wake_scheduler
        self._offsets = validate_offsets(offsets)
        self._retry_base_seconds = max(1, retry_base_seconds)
        self._retry_max_seconds = max(self._retry_base_seconds, retry_max_seconds)
        self._max_retries = max(0, max_retries)
        self._lease_seconds = max(1, lease_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def offsets(self) -> tuple[int, ...]:
        return self._offsets

    @property
    def repository(self) -> WorkflowRunRepository:
        return self._repository

    def _now(self, now: datetime | None) -> datetime:
        return coerce_utc(now if now is not None else self._clock())

    def start(self, subscription_id: str, now: datetime | None = None) -> WorkflowRun:
        subscription = self._subscriptions.get_subscription(subscription_id)
        run = self._repository.create_run(
            subscription_id,
            now=self._now(now),
            renewal_date=subscription.renewal_date if subscription is not None else None,
        )
        logger.info("workflow %s started for subscription %s", run.run_id, subscription_id)
        return run

    def step(
        self,
        run: WorkflowRun,
        name: str,
        action: Callable[[], dict[str, Any]],
        now: datetime | None = None,
    ) -> dict[str, Any]:
        existing = run.get_step(name)
        if existing is not None and existing.completed:
            logger.debug("workflow %s step %s already completed; replaying result", run.run_id, name)
            return existing.result

        result = action()
        updated = self._repository.record_step(
            run.run_id,
            name,
            result,
            now=self._now(now),
            claimed_lease=run.lease_expires_at,
        )
        stored = updated.get_step(name)
        return stored.result if stored is not None else result

    def sleep(
        self,
        run: WorkflowRun,
        name: str,
        duration_seconds: float,
        now: datetime | None = None,
    ) -> NoReturn:
        current = self._now(now)
        wake_at = current + timedelta(seconds=max(0.0, duration_seconds))
        sleeping = self._repository.mark_sleeping(
            run.run_id,
            sleep_name=name,
            wake_at=wake_at,
            now=current,
            claimed_lease=run.lease_expires_at,
        )
        logger.info(
            "workflow %s sleeping (%s) until %s",
            run.run_id,
            name,
            wake_at.isoformat(),
        )
        self._schedule_wake(sleeping)
        raise WorkflowSuspended(sleeping)

    def run(self, subscription_id: str, now: datetime | None = None) -> RunOutcome:
        current = self._now(now)
        try:
            claimed = self._claim(subscription_id, current)
        except ConcurrentResumeConflict as exc:
            logger.warning(
                "discarding wake for subscription %s: run %s is %s",
                subscription_id,
                exc.run.run_id,
                exc.run.state,
            )
            return RunOutcome(
                subscription_id=subscription_id,
                run_id=exc.run.run_id,
                outcome="conflict",
                state=exc.run.state,
                wake_at=exc.run.wake_at,
            )
        if claimed is None:
            logger.info("discarding wake for subscription %s: no active workflow", subscription_id)
            return RunOutcome(subscription_id=subscription_id, run_id=None, outcome="no_active_run", state=None)

        sent: list[int] = []
        try:
            return self._drive(claimed, current, sent)
        except LeaseLostError:
            latest = self._repository.get_run(claimed.run_id) or claimed
            logger.warning(
                "workflow %s for subscription %s: lease taken over by a newer wake; dropping this invocation",
                claimed.run_id,
                subscription_id,
            )
            return RunOutcome(
                subscription_id=subscription_id,
                run_id=claimed.run_id,
                outcome="conflict",
                state=latest.state,
                reminders_sent=tuple(sent),
                wake_at=latest.wake_at,
            )

    def _drive(self, claimed: WorkflowRun, current: datetime, sent: list[int]) -> RunOutcome:
        subscription_id = claimed.subscription_id
        try:
            return self._execute(claimed, current, sent)
        except WorkflowSuspended as signal:
            return RunOutcome(
                subscription_id=subscription_id,
                run_id=signal.run.run_id,
                outcome="sleeping",
                state=signal.run.state,
                reminders_sent=tuple(sent),
                wake_at=signal.run.wake_at,
            )
        except PermanentDeliveryFailure as exc:
            failed = self._repository.finish_run(
                claimed.run_id,
                state="failed",
                outcome="delivery_failed",
                now=current,
                error_code=exc.error_code,
                error_message=exc.message,
                claimed_lease=claimed.lease_expires_at,
            )
            logger.error(
                "workflow %s for subscription %s failed permanently: %s (%s)",
                failed.run_id,
                subscription_id,
                exc.message,
                exc.error_code,
            )
            return self._terminal_outcome(failed, sent)
        except LeaseLostError:
            raise
        except Exception as exc:  # noqa: BLE001
            return self._schedule_retry(claimed, exc, current, sent)

    def _claim(self, subscription_id: str, now: datetime) -> WorkflowRun | None:
        active = self._repository.get_active_run(subscription_id)
        if active is None:
            return None
        claimed = self._repository.claim_run(active.run_id, now=now, lease_seconds=self._lease_seconds)
        if claimed is None:
            raise ConcurrentResumeConflict(self._repository.get_run(active.run_id) or active)
        return claimed

    def _execute(self, run: WorkflowRun, now: datetime, sent: list[int]) -> RunOutcome:
        subscription = self._subscriptions.get_subscription(run.subscription_id)
        if subscription is None:
            logger.info("workflow %s: subscription %s no longer exists", run.run_id, run.subscription_id)
            return self._complete(run, "skipped_not_found", now, sent)
        if not subscription.is_active:
            logger.info(
                "workflow %s: subscription %s is %s; stopping reminders",
                run.run_id,
                run.subscription_id,
                subscription.status,
            )
            return self._complete(run, "skipped_inactive", now, sent)

        plan = plan_reminders(days_until(subscription.renewal_date, now), self._offsets)
        if plan.renewal_passed:
            outcome = "reminders_completed" if self._has_sent_reminders(run) else "renewal_passed"
            return self._complete(run, outcome, now, sent)

        if plan.due_now is None:
            self._sleep_until(run, WINDOW_SLEEP_NAME, subscription, self._offsets[0], now)

        offset = plan.due_now
        step_name = reminder_step_name(offset)
        already_sent = run.get_step(step_name) is not None
        self.step(
            run,
            step_name,
            lambda: self._notifier.send_renewal_reminder(
                RenewalReminder.for_subscription(
                    subscription,
                    days_until_renewal=plan.days_until_renewal,
                    checkpoint=offset,
                )
            ),
            now=now,
        )
        if not already_sent:
            sent.append(offset)

        if not plan.pending:
            return self._complete(run, "reminders_completed", now, sent)

        next_offset = plan.pending[0].offset
        self._sleep_until(run, reminder_sleep_name(next_offset), subscription, next_offset, now)

    def _sleep_until(
        self,
        run: WorkflowRun,
        name: str,
        subscription: Subscription,
        offset: int,
        now: datetime,
    ) -> NoReturn:
        # wake at the checkpoint's calendar position so late wakes do not drift later checkpoints
        target = coerce_utc(subscription.renewal_date) - timedelta(days=offset)
        self.sleep(run, name, (target - now).total_seconds(), now=now)

    def _complete(self, run: WorkflowRun, outcome: str, now: datetime, sent: list[int]) -> RunOutcome:
        finished = self._repository.finish_run(
            run.run_id,
            state="completed",
            outcome=outcome,
            now=now,
            claimed_lease=run.lease_expires_at,
        )
        logger.info(
            "workflow %s for subscription %s completed: %s",
            finished.run_id,
            finished.subscription_id,
            outcome,
        )
        return self._terminal_outcome(finished, sent)

    def _schedule_retry(self, run: WorkflowRun, exc: Exception, now: datetime, sent: list[int]) -> RunOutcome:
        if isinstance(exc, DeliveryFailure):
            error_code, error_message = exc.error_code, exc.message
        else:
            error_code, error_message = "unexpected_error", f"{type(exc).__name__}: {exc}"

        attempts = self._current_attempts(run) + 1
        if self._max_retries and attempts > self._max_retries:
            failed = self._repository.finish_run(
                run.run_id,
                state="failed",
                outcome="retries_exhausted",
                now=now,
                error_code=error_code,
                error_message=error_message,
                claimed_lease=run.lease_expires_at,
            )
            logger.error(
                "workflow %s for subscription %s exhausted %s retries: %s (%s)",
                failed.run_id,
                failed.subscription_id,
                self._max_retries,
                error_message,
                error_code,
            )
            return self._terminal_outcome(failed, sent)

        delay = compute_backoff(attempts, base_seconds=self._retry_base_seconds, max_seconds=self._retry_max_seconds)
        retrying = self._repository.mark_retry(
            run.run_id,
            wake_at=now + timedelta(seconds=delay),
            error_code=error_code,
            error_message=error_message,
            now=now,
            claimed_lease=run.lease_expires_at,
        )
        if isinstance(exc, DeliveryFailure):
            logger.warning(
                "workflow %s attempt %s failed (%s); retrying in %ss",
                run.run_id,
                attempts,
                error_code,
                delay,
            )
        else:
            logger.exception("workflow %s attempt %s raised; retrying in %ss", run.run_id, attempts, delay)
        self._schedule_wake(retrying)
        return RunOutcome(
            subscription_id=retrying.subscription_id,
            run_id=retrying.run_id,
            outcome="retry_scheduled",
            state=retrying.state,
            reminders_sent=tuple(sent),
            wake_at=retrying.wake_at,
        )

    def _current_attempts(self, run: WorkflowRun) -> int:
        # a step recorded during this invocation resets the persisted counter
        latest = self._repository.get_run(run.run_id)
        return latest.attempts if latest is not None else run.attempts

    def _schedule_wake(self, run: WorkflowRun) -> None:
        if run.wake_at is None:
            return
        try:
            self._wake_scheduler.schedule_wake(run.subscription_id, run.wake_at)
        except WakeScheduleError as exc:
            # the persisted wake_at still lets the polling sweep resume the run
            logger.warning(
                "could not schedule wake for workflow %s (%s): %s",
                run.run_id,
                exc.error_code,
                exc.message,
            )

    @staticmethod
    def _has_sent_reminders(run: WorkflowRun) -> bool:
        return any(step.completed and step.name.startswith(SEND_STEP_PREFIX) for step in run.steps)

    @staticmethod
    def _terminal_outcome(run: WorkflowRun, sent: list[int]) -> RunOutcome:
        return RunOutcome(
            subscription_id=run.subscription_id,
            run_id=run.run_id,
            outcome=run.outcome or "reminders_completed",
            state=run.state,
            reminders_sent=tuple(sent),
        )
