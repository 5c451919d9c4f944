from __future__ import annotations

import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Protocol

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    and_,
    create_engine,
    or_,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .date_math import coerce_utc
from .models import WorkflowRunItem, WorkflowStepItem

ACTIVE_STATES = ("pending", "sleeping", "running")
WAITING_STATES = ("pending", "sleeping")
TERMINAL_STATES = ("completed", "failed")


class AlreadyRunningError(RuntimeError):
    """Raised when a subscription already has a pending, sleeping or running workflow."""

    def __init__(self, subscription_id: str, run: WorkflowRun | None = None) -> None:
        super().__init__(f"workflow already active for subscription {subscription_id}")
        self.subscription_id = subscription_id
        self.run = run


class WorkflowRunNotFoundError(KeyError):
    """Raised when an operation references a workflow run id that does not exist."""


class LeaseLostError(RuntimeError):
    """Raised when a write comes from a worker whose claim on the run has been superseded."""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"lease on workflow {run_id} is no longer held")
        self.run_id = run_id


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _dump_result(result: dict[str, Any]) -> str:
    return json.dumps(result, sort_keys=True, separators=(",", ":"), default=str)


@dataclass(frozen=True)
class StepRecord:
    name: str
    completed: bool
    result: dict[str, Any]
    completed_at: datetime | None


@dataclass(frozen=True)
class WorkflowRun:
    run_id: str
    subscription_id: str
    renewal_date: datetime | None
    state: str
    steps: tuple[StepRecord, ...]
    wake_at: datetime | None
    sleep_name: str | None
    attempts: int
    last_error_code: str | None
    last_error_message: str | None
    lease_expires_at: datetime | None
    outcome: str | None
    created_at: datetime
    last_woken_at: datetime | None
    updated_at: datetime
    finished_at: datetime | None

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    def covers_renewal(self, renewal_date: datetime) -> bool:
        return self.renewal_date is not None and self.renewal_date == coerce_utc(renewal_date)

    def get_step(self, name: str) -> StepRecord | None:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def completed_steps(self) -> list[StepRecord]:
        return [step for step in self.steps if step.completed]

    def to_item(self) -> WorkflowRunItem:
        return WorkflowRunItem(
            run_id=self.run_id,
            subscription_id=self.subscription_id,
            renewal_date=self.renewal_date,
            state=self.state,  # type: ignore[arg-type]
            outcome=self.outcome,
            sleep_name=self.sleep_name,
            wake_at=self.wake_at,
            attempts=self.attempts,
            last_error_code=self.last_error_code,
            last_error_message=self.last_error_message,
            created_at=self.created_at,
            last_woken_at=self.last_woken_at,
            updated_at=self.updated_at,
            finished_at=self.finished_at,
            steps=[
                WorkflowStepItem(
                    name=step.name,
                    completed=step.completed,
                    result=step.result,
                    completed_at=step.completed_at,
                )
                for step in self.steps
            ],
        )


def _is_claimable(run: WorkflowRun, now: datetime) -> bool:
    if run.state in WAITING_STATES:
        return run.wake_at is None or run.wake_at <= now
    if run.state == "running":
        return run.lease_expires_at is not None and run.lease_expires_at <= now
    return False


def _check_lease(run_id: str, state: str, lease_expires_at: datetime | None, claimed_lease: datetime | None) -> None:
    # a claim is identified by the lease expiry it set; a newer claim replaces it
    if claimed_lease is None:
        return
    if state != "running" or lease_expires_at != coerce_utc(claimed_lease):
        raise LeaseLostError(run_id)


class WorkflowRunRepository(Protocol):
    def reset(self) -> None: ...

    def create_run(
        self,
        subscription_id: str,
        *,
        now: datetime,
        renewal_date: datetime | None = None,
    ) -> WorkflowRun: ...

    def get_run(self, run_id: str) -> WorkflowRun | None: ...

    def get_active_run(self, subscription_id: str) -> WorkflowRun | None: ...

    def get_latest_run(self, subscription_id: str) -> WorkflowRun | None: ...

    def list_runs(self, *, state: str | None = None, limit: int | None = None) -> list[WorkflowRun]: ...

    def list_due_runs(self, now: datetime, *, limit: int | None = None) -> list[WorkflowRun]: ...

    def claim_run(self, run_id: str, *, now: datetime, lease_seconds: int) -> WorkflowRun | None: ...

    def record_step(
        self,
        run_id: str,
        name: str,
        result: dict[str, Any],
        *,
        now: datetime,
        claimed_lease: datetime | None = None,
    ) -> WorkflowRun: ...

    def mark_sleeping(
        self,
        run_id: str,
        *,
        sleep_name: str,
        wake_at: datetime,
        now: datetime,
        claimed_lease: datetime | None = None,
    ) -> WorkflowRun: ...

    def mark_retry(
        self,
        run_id: str,
        *,
        wake_at: datetime,
        error_code: str | None,
        error_message: str | None,
        now: datetime,
        claimed_lease: datetime | None = None,
    ) -> WorkflowRun: ...

    def finish_run(
        self,
        run_id: str,
        *,
        state: str,
        outcome: str,
        now: datetime,
        error_code: str | None = None,
        error_message: str | None = None,
        claimed_lease: datetime | None = None,
    ) -> WorkflowRun: ...


class InMemoryWorkflowRunRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._run_counter = 1
        self._runs: dict[str, WorkflowRun] = {}
        self._run_ids_by_subscription: dict[str, list[str]] = {}

    def reset(self) -> None:
        with self._lock:
            self._run_counter = 1
            self._runs.clear()
            self._run_ids_by_subscription.clear()

    def create_run(
        self,
        subscription_id: str,
        *,
        now: datetime,
        renewal_date: datetime | None = None,
    ) -> WorkflowRun:
        normalized_now = coerce_utc(now)
        with self._lock:
            active = self._active_run_locked(subscription_id)
            if active is not None:
                raise AlreadyRunningError(subscription_id, active)
            run_id = f"wrun_{self._run_counter:06d}"
            self._run_counter += 1
            run = WorkflowRun(
                run_id=run_id,
                subscription_id=subscription_id,
                renewal_date=coerce_utc(renewal_date) if renewal_date is not None else None,
                state="pending",
                steps=(),
                wake_at=normalized_now,
                sleep_name=None,
                attempts=0,
                last_error_code=None,
                last_error_message=None,
                lease_expires_at=None,
                outcome=None,
                created_at=normalized_now,
                last_woken_at=None,
                updated_at=normalized_now,
                finished_at=None,
            )
            self._runs[run_id] = run
            self._run_ids_by_subscription.setdefault(subscription_id, []).append(run_id)
            return run

    def get_run(self, run_id: str) -> WorkflowRun | None:
        return self._runs.get(run_id)

    def get_active_run(self, subscription_id: str) -> WorkflowRun | None:
        with self._lock:
            return self._active_run_locked(subscription_id)

    def get_latest_run(self, subscription_id: str) -> WorkflowRun | None:
        ids = self._run_ids_by_subscription.get(subscription_id, [])
        if not ids:
            return None
        return self._runs[ids[-1]]

    def list_runs(self, *, state: str | None = None, limit: int | None = None) -> list[WorkflowRun]:
        rows = [run for run in self._runs.values() if state is None or run.state == state]
        rows.sort(key=lambda run: (run.updated_at, run.run_id), reverse=True)
        return rows[:limit] if limit is not None else rows

    def list_due_runs(self, now: datetime, *, limit: int | None = None) -> list[WorkflowRun]:
        normalized_now = coerce_utc(now)
        rows = [run for run in self._runs.values() if _is_claimable(run, normalized_now)]
        rows.sort(key=lambda run: (run.wake_at or run.lease_expires_at or run.created_at, run.run_id))
        return rows[:limit] if limit is not None else rows

    def claim_run(self, run_id: str, *, now: datetime, lease_seconds: int) -> WorkflowRun | None:
        normalized_now = coerce_utc(now)
        with self._lock:
            row = self._runs.get(run_id)
            if row is None or not _is_claimable(row, normalized_now):
                return None
            claimed = WorkflowRun(
                **{
                    **row.__dict__,
                    "state": "running",
                    "lease_expires_at": normalized_now + timedelta(seconds=lease_seconds),
                    "last_woken_at": normalized_now,
                    "updated_at": normalized_now,
                }
            )
            self._runs[run_id] = claimed
            return claimed

    def record_step(
        self,
        run_id: str,
        name: str,
        result: dict[str, Any],
        *,
        now: datetime,
        claimed_lease: datetime | None = None,
    ) -> WorkflowRun:
        normalized_now = coerce_utc(now)
        with self._lock:
            row = self._require_locked(run_id, claimed_lease)
            # round-trip through JSON so memoized results match what the SQL backend returns
            stored = StepRecord(
                name=name,
                completed=True,
                result=json.loads(_dump_result(result)),
                completed_at=normalized_now,
            )
            steps = [step for step in row.steps if step.name != name]
            steps.append(stored)
            updated = WorkflowRun(
                **{
                    **row.__dict__,
                    "steps": tuple(steps),
                    "attempts": 0,
                    "last_error_code": None,
                    "last_error_message": None,
                    "updated_at": normalized_now,
                }
            )
            self._runs[run_id] = updated
            return updated

    def mark_sleeping(
        self,
        run_id: str,
        *,
        sleep_name: str,
        wake_at: datetime,
        now: datetime,
        claimed_lease: datetime | None = None,
    ) -> WorkflowRun:
        with self._lock:
            row = self._require_locked(run_id, claimed_lease)
            updated = WorkflowRun(
                **{
                    **row.__dict__,
                    "state": "sleeping",
                    "sleep_name": sleep_name,
                    "wake_at": coerce_utc(wake_at),
                    "lease_expires_at": None,
                    "updated_at": coerce_utc(now),
                }
            )
            self._runs[run_id] = updated
            return updated

    def mark_retry(
        self,
        run_id: str,
        *,
        wake_at: datetime,
        error_code: str | None,
        error_message: str | None,
        now: datetime,
        claimed_lease: datetime | None = None,
    ) -> WorkflowRun:
        with self._lock:
            row = self._require_locked(run_id, claimed_lease)
            updated = WorkflowRun(
                **{
                    **row.__dict__,
                    "state": "pending",
                    "sleep_name": None,
                    "wake_at": coerce_utc(wake_at),
                    "attempts": row.attempts + 1,
                    "last_error_code": error_code,
                    "last_error_message": error_message,
                    "lease_expires_at": None,
                    "updated_at": coerce_utc(now),
                }
            )
            self._runs[run_id] = updated
            return updated

    def finish_run(
        self,
        run_id: str,
        *,
        state: str,
        outcome: str,
        now: datetime,
        error_code: str | None = None,
        error_message: str | None = None,
        claimed_lease: datetime | None = None,
    ) -> WorkflowRun:
        if state not in TERMINAL_STATES:
            raise ValueError(f"not a terminal workflow state: {state}")
        normalized_now = coerce_utc(now)
        with self._lock:
            row = self._require_locked(run_id, claimed_lease)
            updated = WorkflowRun(
                **{
                    **row.__dict__,
                    "state": state,
                    "outcome": outcome,
                    "sleep_name": None,
                    "wake_at": None,
                    "lease_expires_at": None,
                    "last_error_code": error_code if error_code is not None else row.last_error_code,
                    "last_error_message": error_message if error_message is not None else row.last_error_message,
                    "updated_at": normalized_now,
                    "finished_at": normalized_now,
                }
            )
            self._runs[run_id] = updated
            return updated

    def _active_run_locked(self, subscription_id: str) -> WorkflowRun | None:
        for run_id in reversed(self._run_ids_by_subscription.get(subscription_id, [])):
            run = self._runs[run_id]
            if run.is_active:
                return run
        return None

    def _require_locked(self, run_id: str, claimed_lease: datetime | None = None) -> WorkflowRun:
        row = self._runs.get(run_id)
        if row is None:
            raise WorkflowRunNotFoundError(run_id)
        _check_lease(run_id, row.state, row.lease_expires_at, claimed_lease)
        return row


class WorkflowRunsBase(DeclarativeBase):
    pass


class _WorkflowRunRow(WorkflowRunsBase):
    __tablename__ = "workflow_runs"
    __table_args__ = (Index("ix_workflow_runs_subscription_renewal", "subscription_id", "renewal_date"),)

    run_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    subscription_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    renewal_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # equals subscription_id while the run is active, NULL once terminal; unique
    # so two active runs for one subscription cannot be inserted concurrently
    active_key: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    state: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    wake_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    sleep_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error_code: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    outcome: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_woken_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class _WorkflowStepRow(WorkflowRunsBase):
    __tablename__ = "workflow_steps"
    __table_args__ = (UniqueConstraint("run_id", "name", name="uq_workflow_steps_run_name"),)

    step_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(64), ForeignKey("workflow_runs.run_id"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    result_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


def _optional_utc(value: datetime | None) -> datetime | None:
    return coerce_utc(value) if value is not None else None


class SqlAlchemyWorkflowRunRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for WORKFLOW_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            WorkflowRunsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_WorkflowStepRow).delete()
                session.query(_WorkflowRunRow).delete()

    def create_run(
        self,
        subscription_id: str,
        *,
        now: datetime,
        renewal_date: datetime | None = None,
    ) -> WorkflowRun:
        normalized_now = coerce_utc(now)
        run_id = f"wrun_{secrets.token_hex(8)}"
        try:
            with self._session() as session:
                with session.begin():
                    session.add(
                        _WorkflowRunRow(
                            run_id=run_id,
                            subscription_id=subscription_id,
                            renewal_date=coerce_utc(renewal_date) if renewal_date is not None else None,
                            active_key=subscription_id,
                            state="pending",
                            wake_at=normalized_now,
                            sleep_name=None,
                            attempts=0,
                            outcome=None,
                            created_at=normalized_now,
                            updated_at=normalized_now,
                        )
                    )
        except IntegrityError as exc:
            raise AlreadyRunningError(subscription_id, self.get_active_run(subscription_id)) from exc
        return self._require(run_id)

    def get_run(self, run_id: str) -> WorkflowRun | None:
        with self._session() as session:
            row = session.get(_WorkflowRunRow, run_id)
            if row is None:
                return None
            return self._to_run(session, row)

    def get_active_run(self, subscription_id: str) -> WorkflowRun | None:
        with self._session() as session:
            row = session.execute(
                select(_WorkflowRunRow).where(_WorkflowRunRow.active_key == subscription_id)
            ).scalar_one_or_none()
            if row is None:
                return None
            return self._to_run(session, row)

    def get_latest_run(self, subscription_id: str) -> WorkflowRun | None:
        with self._session() as session:
            row = session.execute(
                select(_WorkflowRunRow)
                .where(_WorkflowRunRow.subscription_id == subscription_id)
                .order_by(_WorkflowRunRow.created_at.desc(), _WorkflowRunRow.run_id.desc())
                .limit(1)
            ).scalar_one_or_none()
            if row is None:
                return None
            return self._to_run(session, row)

    def list_runs(self, *, state: str | None = None, limit: int | None = None) -> list[WorkflowRun]:
        with self._session() as session:
            query = select(_WorkflowRunRow).order_by(
                _WorkflowRunRow.updated_at.desc(), _WorkflowRunRow.run_id.desc()
            )
            if state is not None:
                query = query.where(_WorkflowRunRow.state == state)
            if limit is not None:
                query = query.limit(limit)
            rows = session.execute(query).scalars().all()
            return [self._to_run(session, row) for row in rows]

    def list_due_runs(self, now: datetime, *, limit: int | None = None) -> list[WorkflowRun]:
        normalized_now = coerce_utc(now)
        with self._session() as session:
            query = (
                select(_WorkflowRunRow)
                .where(self._claimable_clause(normalized_now))
                .order_by(_WorkflowRunRow.wake_at.asc(), _WorkflowRunRow.run_id.asc())
            )
            if limit is not None:
                query = query.limit(limit)
            rows = session.execute(query).scalars().all()
            return [self._to_run(session, row) for row in rows]

    def claim_run(self, run_id: str, *, now: datetime, lease_seconds: int) -> WorkflowRun | None:
        normalized_now = coerce_utc(now)
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_WorkflowRunRow)
                    .where(_WorkflowRunRow.run_id == run_id)
                    .where(self._claimable_clause(normalized_now))
                    .values(
                        state="running",
                        lease_expires_at=normalized_now + timedelta(seconds=lease_seconds),
                        last_woken_at=normalized_now,
                        updated_at=normalized_now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return None
        return self._require(run_id)

    def record_step(
        self,
        run_id: str,
        name: str,
        result: dict[str, Any],
        *,
        now: datetime,
        claimed_lease: datetime | None = None,
    ) -> WorkflowRun:
        normalized_now = coerce_utc(now)
        with self._session() as session:
            with session.begin():
                row = self._locked_row(session, run_id, claimed_lease)
                step = session.execute(
                    select(_WorkflowStepRow)
                    .where(_WorkflowStepRow.run_id == run_id)
                    .where(_WorkflowStepRow.name == name)
                ).scalar_one_or_none()
                if step is None:
                    position = len(
                        session.execute(select(_WorkflowStepRow.step_id).where(_WorkflowStepRow.run_id == run_id)).all()
                    )
                    step = _WorkflowStepRow(run_id=run_id, position=position, name=name)
                    session.add(step)
                step.completed = True
                step.result_json = _dump_result(result)
                step.completed_at = normalized_now
                row.attempts = 0
                row.last_error_code = None
                row.last_error_message = None
                row.updated_at = normalized_now
        return self._require(run_id)

    def mark_sleeping(
        self,
        run_id: str,
        *,
        sleep_name: str,
        wake_at: datetime,
        now: datetime,
        claimed_lease: datetime | None = None,
    ) -> WorkflowRun:
        with self._session() as session:
            with session.begin():
                row = self._locked_row(session, run_id, claimed_lease)
                row.state = "sleeping"
                row.sleep_name = sleep_name
                row.wake_at = coerce_utc(wake_at)
                row.lease_expires_at = None
                row.updated_at = coerce_utc(now)
        return self._require(run_id)

    def mark_retry(
        self,
        run_id: str,
        *,
        wake_at: datetime,
        error_code: str | None,
        error_message: str | None,
        now: datetime,
        claimed_lease: datetime | None = None,
    ) -> WorkflowRun:
        with self._session() as session:
            with session.begin():
                row = self._locked_row(session, run_id, claimed_lease)
                row.state = "pending"
                row.sleep_name = None
                row.wake_at = coerce_utc(wake_at)
                row.attempts = row.attempts + 1
                row.last_error_code = error_code
                row.last_error_message = error_message
                row.lease_expires_at = None
                row.updated_at = coerce_utc(now)
        return self._require(run_id)

    def finish_run(
        self,
        run_id: str,
        *,
        state: str,
        outcome: str,
        now: datetime,
        error_code: str | None = None,
        error_message: str | None = None,
        claimed_lease: datetime | None = None,
    ) -> WorkflowRun:
        if state not in TERMINAL_STATES:
            raise ValueError(f"not a terminal workflow state: {state}")
        normalized_now = coerce_utc(now)
        with self._session() as session:
            with session.begin():
                row = self._locked_row(session, run_id, claimed_lease)
                row.state = state
                row.outcome = outcome
                row.active_key = None
                row.sleep_name = None
                row.wake_at = None
                row.lease_expires_at = None
                if error_code is not None:
                    row.last_error_code = error_code
                if error_message is not None:
                    row.last_error_message = error_message
                row.updated_at = normalized_now
                row.finished_at = normalized_now
        return self._require(run_id)

    def _locked_row(self, session, run_id: str, claimed_lease: datetime | None) -> _WorkflowRunRow:
        row = session.get(_WorkflowRunRow, run_id, with_for_update=True)
        if row is None:
            raise WorkflowRunNotFoundError(run_id)
        _check_lease(run_id, row.state, _optional_utc(row.lease_expires_at), claimed_lease)
        return row

    def _claimable_clause(self, now: datetime):
        return or_(
            and_(
                _WorkflowRunRow.state.in_(WAITING_STATES),
                or_(_WorkflowRunRow.wake_at.is_(None), _WorkflowRunRow.wake_at <= now),
            ),
            and_(
                _WorkflowRunRow.state == "running",
                _WorkflowRunRow.lease_expires_at <= now,
            ),
        )

    def _require(self, run_id: str) -> WorkflowRun:
        run = self.get_run(run_id)
        if run is None:
            raise WorkflowRunNotFoundError(run_id)
        return run

    def _to_run(self, session, row: _WorkflowRunRow) -> WorkflowRun:
        steps = session.execute(
            select(_WorkflowStepRow)
            .where(_WorkflowStepRow.run_id == row.run_id)
            .order_by(_WorkflowStepRow.position.asc())
        ).scalars()
        return WorkflowRun(
            run_id=row.run_id,
            subscription_id=row.subscription_id,
            renewal_date=_optional_utc(row.renewal_date),
            state=row.state,
            steps=tuple(
                StepRecord(
                    name=step.name,
                    completed=step.completed,
                    result=json.loads(step.result_json or "{}"),
                    completed_at=_optional_utc(step.completed_at),
                )
                for step in steps
            ),
            wake_at=_optional_utc(row.wake_at),
            sleep_name=row.sleep_name,
            attempts=row.attempts,
            last_error_code=row.last_error_code,
            last_error_message=row.last_error_message,
            lease_expires_at=_optional_utc(row.lease_expires_at),
            outcome=row.outcome,
            created_at=coerce_utc(row.created_at),
            last_woken_at=_optional_utc(row.last_woken_at),
            updated_at=coerce_utc(row.updated_at),
            finished_at=_optional_utc(row.finished_at),
        )


def create_workflow_run_repository(*, backend: str, database_url: str) -> WorkflowRunRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyWorkflowRunRepository(database_url)
    if normalized == "inmemory":
        return InMemoryWorkflowRunRepository()
    raise RuntimeError(f"unsupported WORKFLOW_STORE_BACKEND: {backend}")
