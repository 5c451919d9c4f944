from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from subscriptions_web.mailer import StubEmailSender
from subscriptions_web.models import SubscriptionCreateRequest
from subscriptions_web.notifier import ReminderNotifier
from subscriptions_web.subscriptions import SqlAlchemySubscriptionRepository, create_subscription_repository
from subscriptions_web.wake_scheduler import PollingWakeScheduler
from subscriptions_web.workflow_engine import ReminderWorkflowEngine
from subscriptions_web.workflow_runs import (
    AlreadyRunningError,
    InMemoryWorkflowRunRepository,
    LeaseLostError,
    SqlAlchemyWorkflowRunRepository,
    create_workflow_run_repository,
)

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def _sqlite_url(tmp_path: Path, name: str = "reminders.db") -> str:
    return f"sqlite:///{tmp_path / name}"


def _payload(*, name: str = "Netflix", renews_in: timedelta = timedelta(days=7)) -> SubscriptionCreateRequest:
    return SubscriptionCreateRequest(
        name=name,
        price=15.99,
        currency="EUR",
        frequency="monthly",
        start_date=NOW - timedelta(days=30),
        renewal_date=NOW + renews_in,
    )


def test_factories_select_backends(tmp_path: Path) -> None:
    url = _sqlite_url(tmp_path)
    assert isinstance(create_workflow_run_repository(backend="postgres", database_url=url), SqlAlchemyWorkflowRunRepository)
    assert isinstance(create_workflow_run_repository(backend="inmemory", database_url=""), InMemoryWorkflowRunRepository)
    assert isinstance(create_subscription_repository(backend="postgres", database_url=url), SqlAlchemySubscriptionRepository)
    with pytest.raises(RuntimeError):
        create_workflow_run_repository(backend="redis", database_url=url)
    with pytest.raises(RuntimeError):
        SqlAlchemyWorkflowRunRepository("")


def test_subscription_repository_round_trip(tmp_path: Path) -> None:
    repository = SqlAlchemySubscriptionRepository(_sqlite_url(tmp_path))
    user = repository.create_user("ava", "Ava@Example.com")
    created = repository.create_subscription(user.user_id, _payload(), now=NOW)

    fetched = repository.get_subscription(created.subscription_id)

    assert fetched is not None
    assert fetched.owner_email == "ava@example.com"
    assert fetched.owner_username == "ava"
    assert fetched.currency == "EUR"
    assert fetched.renewal_date == NOW + timedelta(days=7)
    assert fetched.renewal_date.tzinfo is not None
    assert [item.subscription_id for item in repository.list_user_subscriptions(user.user_id)] == [
        created.subscription_id
    ]

    with pytest.raises(ValueError):
        repository.create_user("ava", "other@example.com")


def test_subscription_due_window_and_status(tmp_path: Path) -> None:
    repository = SqlAlchemySubscriptionRepository(_sqlite_url(tmp_path))
    user = repository.create_user("ava", "ava@example.com")
    inside = repository.create_subscription(user.user_id, _payload(name="Inside", renews_in=timedelta(days=3)), now=NOW)
    outside = repository.create_subscription(user.user_id, _payload(name="Outside", renews_in=timedelta(days=9)), now=NOW)
    canceled = repository.create_subscription(user.user_id, _payload(name="Canceled", renews_in=timedelta(days=2)), now=NOW)
    repository.update_status(canceled.subscription_id, "canceled")

    due = repository.list_due_subscriptions(NOW, NOW + timedelta(days=7))

    assert [item.subscription_id for item in due] == [inside.subscription_id]
    assert repository.delete_subscription(outside.subscription_id) is True
    assert repository.get_subscription(outside.subscription_id) is None
    assert repository.delete_subscription(outside.subscription_id) is False


def test_single_active_run_per_subscription(tmp_path: Path) -> None:
    repository = SqlAlchemyWorkflowRunRepository(_sqlite_url(tmp_path))
    run = repository.create_run("sub_001", now=NOW)

    with pytest.raises(AlreadyRunningError) as exc_info:
        repository.create_run("sub_001", now=NOW)
    assert exc_info.value.run is not None
    assert exc_info.value.run.run_id == run.run_id

    repository.finish_run(run.run_id, state="failed", outcome="delivery_failed", now=NOW)
    replacement = repository.create_run("sub_001", now=NOW + timedelta(minutes=1))

    assert replacement.run_id != run.run_id
    assert repository.get_active_run("sub_001") == replacement
    assert repository.get_latest_run("sub_001") == replacement


def test_claim_is_compare_and_swap_with_lease(tmp_path: Path) -> None:
    repository = SqlAlchemyWorkflowRunRepository(_sqlite_url(tmp_path))
    run = repository.create_run("sub_001", now=NOW)

    claimed = repository.claim_run(run.run_id, now=NOW, lease_seconds=300)
    assert claimed is not None
    assert claimed.state == "running"
    assert claimed.lease_expires_at == NOW + timedelta(seconds=300)

    assert repository.claim_run(run.run_id, now=NOW + timedelta(seconds=299), lease_seconds=300) is None
    reclaimed = repository.claim_run(run.run_id, now=NOW + timedelta(seconds=300), lease_seconds=300)
    assert reclaimed is not None
    assert reclaimed.last_woken_at == NOW + timedelta(seconds=300)


def test_sleeping_run_is_due_only_after_wake_at(tmp_path: Path) -> None:
    repository = SqlAlchemyWorkflowRunRepository(_sqlite_url(tmp_path))
    run = repository.create_run("sub_001", now=NOW)
    repository.claim_run(run.run_id, now=NOW, lease_seconds=300)
    repository.mark_sleeping(run.run_id, sleep_name="wait-for-reminder-3", wake_at=NOW + timedelta(days=4), now=NOW)

    assert repository.list_due_runs(NOW + timedelta(days=3)) == []
    assert repository.claim_run(run.run_id, now=NOW + timedelta(days=3), lease_seconds=300) is None
    due = repository.list_due_runs(NOW + timedelta(days=4))
    assert [item.run_id for item in due] == [run.run_id]
    assert due[0].sleep_name == "wait-for-reminder-3"


def test_step_log_is_ordered_and_resets_attempts(tmp_path: Path) -> None:
    repository = SqlAlchemyWorkflowRunRepository(_sqlite_url(tmp_path))
    run = repository.create_run("sub_001", now=NOW)
    repository.mark_retry(run.run_id, wake_at=NOW, error_code="timeout", error_message="slow relay", now=NOW)
    assert repository.get_run(run.run_id).attempts == 1  # type: ignore[union-attr]

    repository.record_step(run.run_id, "send-reminder-7", {"checkpoint": 7, "message_id": "m-1"}, now=NOW)
    updated = repository.record_step(run.run_id, "send-reminder-3", {"checkpoint": 3}, now=NOW + timedelta(days=4))

    assert [step.name for step in updated.steps] == ["send-reminder-7", "send-reminder-3"]
    assert updated.steps[0].result == {"checkpoint": 7, "message_id": "m-1"}
    assert updated.attempts == 0
    assert updated.last_error_code is None

    finished = repository.finish_run(run.run_id, state="completed", outcome="reminders_completed", now=NOW)
    assert finished.finished_at == NOW
    assert repository.list_runs(state="completed")[0].run_id == run.run_id
    with pytest.raises(ValueError):
        repository.finish_run(run.run_id, state="sleeping", outcome="sleeping", now=NOW)


def test_engine_on_sqlite_backends_is_idempotent(tmp_path: Path) -> None:
    url = _sqlite_url(tmp_path)
    subscriptions = SqlAlchemySubscriptionRepository(url)
    runs = SqlAlchemyWorkflowRunRepository(url)
    user = subscriptions.create_user("ava", "ava@example.com")
    subscription = subscriptions.create_subscription(user.user_id, _payload(renews_in=timedelta(days=7)), now=NOW)
    sender = StubEmailSender()
    engine = ReminderWorkflowEngine(
        repository=runs,
        subscriptions=subscriptions,
        notifier=ReminderNotifier(sender),
        wake_scheduler=PollingWakeScheduler(),
    )
    engine.start(subscription.subscription_id, now=NOW)

    first = engine.run(subscription.subscription_id, now=NOW)
    second = engine.run(subscription.subscription_id, now=NOW)

    assert first.outcome == "sleeping"
    assert second.outcome == "conflict"
    assert len(sender.sent) == 1

    # a fresh repository over the same database sees the persisted step log
    restarted = SqlAlchemyWorkflowRunRepository(url)
    active = restarted.get_active_run(subscription.subscription_id)
    assert active is not None
    assert active.state == "sleeping"
    assert active.wake_at == NOW + timedelta(days=4)
    assert active.get_step("send-reminder-7") is not None


@pytest.mark.parametrize("backend", ["inmemory", "sqlite"])
def test_superseded_lease_cannot_write(tmp_path: Path, backend: str) -> None:
    if backend == "sqlite":
        repository = SqlAlchemyWorkflowRunRepository(_sqlite_url(tmp_path))
    else:
        repository = InMemoryWorkflowRunRepository()
    run = repository.create_run("sub_001", now=NOW, renewal_date=NOW + timedelta(days=5))
    assert run.renewal_date == NOW + timedelta(days=5)
    first = repository.claim_run(run.run_id, now=NOW, lease_seconds=300)
    assert first is not None
    second = repository.claim_run(run.run_id, now=NOW + timedelta(seconds=301), lease_seconds=300)
    assert second is not None

    with pytest.raises(LeaseLostError):
        repository.record_step(
            run.run_id,
            "send-reminder-3",
            {"checkpoint": 3},
            now=NOW + timedelta(seconds=302),
            claimed_lease=first.lease_expires_at,
        )
    repository.record_step(
        run.run_id,
        "send-reminder-3",
        {"checkpoint": 3},
        now=NOW + timedelta(seconds=302),
        claimed_lease=second.lease_expires_at,
    )
    repository.mark_sleeping(
        run.run_id,
        sleep_name="wait-for-reminder-1",
        wake_at=NOW + timedelta(days=4),
        now=NOW + timedelta(seconds=303),
        claimed_lease=second.lease_expires_at,
    )

    with pytest.raises(LeaseLostError):
        repository.finish_run(
            run.run_id,
            state="completed",
            outcome="reminders_completed",
            now=NOW + timedelta(seconds=304),
            claimed_lease=first.lease_expires_at,
        )
    active = repository.get_active_run("sub_001")
    assert active is not None
    assert active.state == "sleeping"
    assert active.renewal_date == NOW + timedelta(days=5)
    assert [step.name for step in active.steps] == ["send-reminder-3"]
