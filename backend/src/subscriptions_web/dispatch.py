from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from .date_math import coerce_utc
from .models import ReconcileItem, ReconcileResponse, TriggerResponse
from .subscriptions import SubscriptionRepository
from .wake_scheduler import WakeScheduleError, WakeScheduler
from .workflow_engine import ReminderWorkflowEngine, RunOutcome
from .workflow_runs import AlreadyRunningError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TriggerResult:
    subscription_id: str
    started: bool
    run_id: str | None
    state: str | None

    def to_response(self) -> TriggerResponse:
        if self.started:
            message = "Reminder workflow started"
        else:
            message = "A reminder workflow is already active for this subscription"
        return TriggerResponse(
            subscription_id=self.subscription_id,
            status="started" if self.started else "already_running",
            run_id=self.run_id,
            state=self.state,  # type: ignore[arg-type]
            message=message,
        )


@dataclass(frozen=True)
class ReconcileResult:
    evaluated_count: int
    started_count: int
    items: tuple[ReconcileItem, ...]

    def to_response(self) -> ReconcileResponse:
        return ReconcileResponse(
            evaluated_count=self.evaluated_count,
            started_count=self.started_count,
            items=list(self.items),
        )


class ReminderDispatchService:
    def __init__(
        self,
        *,
        engine: ReminderWorkflowEngine,
        subscriptions: SubscriptionRepository,
        wake_scheduler: WakeScheduler,
        resume_batch_limit: int = 100,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._engine = engine
        self._subscriptions = subscriptions
        self._wake_scheduler = wake_scheduler
        self._resume_batch_limit = max(1, resume_batch_limit)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self, now: datetime | None) -> datetime:
        return coerce_utc(now if now is not None else self._clock())

    def trigger(self, subscription_id: str, now: datetime | None = None) -> TriggerResult:
        current = self._now(now)
        try:
            run = self._engine.start(subscription_id, now=current)
        except AlreadyRunningError as exc:
            logger.info("trigger for subscription %s ignored: workflow already active", subscription_id)
            return TriggerResult(
                subscription_id=subscription_id,
                started=False,
                run_id=exc.run.run_id if exc.run is not None else None,
                state=exc.run.state if exc.run is not None else None,
            )

        try:
            self._wake_scheduler.schedule_wake(subscription_id, current)
        except WakeScheduleError as exc:
            logger.warning(
                "immediate wake for subscription %s not scheduled (%s); left to the resume sweep",
                subscription_id,
                exc.error_code,
            )
        return TriggerResult(subscription_id=subscription_id, started=True, run_id=run.run_id, state=run.state)

    def reconcile(self, now: datetime | None = None) -> ReconcileResult:
        current = self._now(now)
        window_end = current + timedelta(days=self._engine.offsets[0])
        due = self._subscriptions.list_due_subscriptions(current, window_end)

        items: list[ReconcileItem] = []
        started_count = 0
        for subscription in due:
            latest = self._engine.repository.get_latest_run(subscription.subscription_id)
            # completed or failed runs for this renewal are final; only a manual trigger restarts them
            if latest is not None and (latest.is_active or latest.covers_renewal(subscription.renewal_date)):
                continue
            try:
                result = self.trigger(subscription.subscription_id, now=current)
            except Exception as exc:  # noqa: BLE001
                logger.error("reconcile could not trigger subscription %s: %s", subscription.subscription_id, exc)
                items.append(
                    ReconcileItem(
                        subscription_id=subscription.subscription_id,
                        status="failed",
                        error=str(exc),
                    )
                )
                continue
            if result.started:
                started_count += 1
            items.append(
                ReconcileItem(
                    subscription_id=subscription.subscription_id,
                    status="started" if result.started else "already_running",
                    run_id=result.run_id,
                )
            )

        logger.info(
            "reconcile evaluated %s subscriptions renewing before %s; started %s workflows",
            len(due),
            window_end.isoformat(),
            started_count,
        )
        return ReconcileResult(evaluated_count=len(due), started_count=started_count, items=tuple(items))

    def resume_due(self, now: datetime | None = None, limit: int | None = None) -> list[RunOutcome]:
        current = self._now(now)
        batch_limit = limit if limit is not None else self._resume_batch_limit
        due_runs = self._engine.repository.list_due_runs(current, limit=batch_limit)
        outcomes = [self._engine.run(run.subscription_id, now=current) for run in due_runs]
        if outcomes:
            logger.info("resume sweep processed %s due workflows", len(outcomes))
        return outcomes
