from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from .callback_security import verify_workflow_callback_signature
from .config import Settings, get_settings
from .date_math import days_until
from .dispatch import ReminderDispatchService
from .mailer import EmailSender, SmtpEmailSender, StubEmailSender, mask_email
from .models import (
    AdminLoginRequest,
    AdminLoginResponse,
    DirectEmailRequest,
    ReconcileResponse,
    ReminderEmailResponse,
    ResumeDueResponse,
    RunOutcomeResponse,
    SubscriptionCreateRequest,
    SubscriptionCreateResponse,
    SubscriptionDeleteResponse,
    SubscriptionListResponse,
    SubscriptionRecord,
    TriggerResponse,
    UserCreateRequest,
    UserResponse,
    WorkflowCallbackRequest,
    WorkflowRunItem,
    WorkflowRunListResponse,
)
from .notifier import DeliveryFailure, ReminderNotifier, RenewalReminder
from .session_tokens import ADMIN_SUBJECT, SessionTokenError, decode_session_token, issue_session_token
from .subscriptions import (
    Subscription,
    SubscriptionNotFoundError,
    SubscriptionRepository,
    UserNotFoundError,
    create_subscription_repository,
)
from .wake_scheduler import WakeScheduler, create_wake_scheduler
from .workflow_engine import ReminderWorkflowEngine
from .workflow_runs import ACTIVE_STATES, TERMINAL_STATES, WorkflowRunRepository, create_workflow_run_repository

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=_settings.api_prefix, tags=["subscriptions"])


def _create_email_sender(settings: Settings) -> EmailSender:
    if settings.email_sender_type == "smtp":
        if not settings.email_enabled:
            # kill switch: deliveries fail as transient and are retried once re-enabled
            return StubEmailSender(enabled=False)
        return SmtpEmailSender(
            host=settings.email_host,
            port=settings.email_port,
            username=settings.email_user,
            password=settings.email_password,
            from_address=settings.email_from_address,
            timeout_seconds=settings.email_timeout_seconds,
        )
    return StubEmailSender(enabled=True)


def _create_wake_scheduler(settings: Settings) -> WakeScheduler:
    return create_wake_scheduler(
        scheduler_type=settings.wake_scheduler_type,
        qstash_url=settings.qstash_url,
        qstash_token=settings.qstash_token,
        callback_url=settings.workflow_callback_url,
        callback_secret=(
            settings.workflow_callback_secret if settings.workflow_callback_signature_mode != "off" else ""
        ),
    )


subscription_repo: SubscriptionRepository = create_subscription_repository(
    backend=_settings.subscription_store_backend,
    database_url=_settings.database_url,
)
workflow_repo: WorkflowRunRepository = create_workflow_run_repository(
    backend=_settings.workflow_store_backend,
    database_url=_settings.database_url,
)
email_sender: EmailSender = _create_email_sender(_settings)
reminder_notifier = ReminderNotifier(email_sender)
wake_scheduler: WakeScheduler = _create_wake_scheduler(_settings)
workflow_engine = ReminderWorkflowEngine(
    repository=workflow_repo,
    subscriptions=subscription_repo,
    notifier=reminder_notifier,
    wake_scheduler=wake_scheduler,
    offsets=_settings.reminder_offsets,
    retry_base_seconds=_settings.workflow_retry_base_seconds,
    retry_max_seconds=_settings.workflow_retry_max_seconds,
    max_retries=_settings.workflow_max_retries,
    lease_seconds=_settings.workflow_lease_seconds,
)
dispatch_service = ReminderDispatchService(
    engine=workflow_engine,
    subscriptions=subscription_repo,
    wake_scheduler=wake_scheduler,
    resume_batch_limit=_settings.workflow_resume_batch_limit,
)


def reset_runtime_state_for_tests() -> None:
    subscription_repo.reset()
    workflow_repo.reset()
    if isinstance(email_sender, StubEmailSender):
        email_sender.sent.clear()
    scheduled = getattr(wake_scheduler, "scheduled", None)
    if isinstance(scheduled, list):
        scheduled.clear()


def _bearer_token(request: Request) -> str:
    return request.headers.get("Authorization", "").removeprefix("Bearer ").strip()


def _require_admin(request: Request) -> None:
    token = _bearer_token(request)
    if not token:
        raise HTTPException(401, "admin session required")
    try:
        payload = decode_session_token(token, secret=_settings.admin_session_secret)
        if payload.user_id != ADMIN_SUBJECT:
            raise SessionTokenError("not an admin token")
    except SessionTokenError as exc:
        raise HTTPException(401, str(exc)) from exc


def _require_user_session(request: Request) -> str:
    token = _bearer_token(request)
    if not token:
        raise HTTPException(401, "session required")
    try:
        payload = decode_session_token(token, secret=_settings.user_session_secret)
    except SessionTokenError as exc:
        raise HTTPException(401, str(exc)) from exc
    if subscription_repo.get_user(payload.user_id) is None:
        raise HTTPException(401, "session user no longer exists")
    return payload.user_id


def _require_owned_subscription(subscription_id: str, user_id: str) -> Subscription:
    subscription = subscription_repo.get_subscription(subscription_id)
    if subscription is None:
        raise HTTPException(status_code=404, detail=f"subscription not found: {subscription_id}")
    if subscription.user_id != user_id:
        raise HTTPException(status_code=403, detail="you are not the owner of this subscription")
    return subscription


def _run_workflow(subscription_id: str) -> None:
    outcome = workflow_engine.run(subscription_id)
    logger.info("background workflow run for %s finished with %s", subscription_id, outcome.outcome)


def _enqueue_run(background_tasks: BackgroundTasks, subscription_id: str) -> None:
    # qstash delivers the immediate wake itself; polling deployments run it after the response
    if _settings.wake_scheduler_type == "polling":
        background_tasks.add_task(_run_workflow, subscription_id)


@router.get("/workflow")
def describe_workflow() -> dict[str, object]:
    return {
        "name": "renewal-reminders",
        "reminder_offsets": list(workflow_engine.offsets),
        "wake_scheduler": _settings.wake_scheduler_type,
        "callback_url": _settings.workflow_callback_url,
        "endpoints": [
            "POST /workflow/send-reminders",
            "GET /workflow/process-reminders",
            "POST /workflow/resume-due",
            "POST /workflow/trigger/{subscription_id}",
            "POST /workflow/test-email/{subscription_id}",
            "POST /workflow/send-direct-email",
            "GET /workflow/runs/{subscription_id}",
            "GET /workflow/runs",
        ],
    }


@router.post("/workflow/send-reminders", response_model=RunOutcomeResponse)
async def send_reminders(request: Request) -> RunOutcomeResponse:
    body = await request.body()
    verification = verify_workflow_callback_signature(
        settings=_settings,
        body=body,
        headers=request.headers,
    )
    if not verification.verified:
        if _settings.workflow_callback_signature_mode == "enforce":
            raise HTTPException(401, f"callback signature rejected: {verification.reason}")
        logger.warning("unverified workflow callback accepted (%s)", verification.reason)

    try:
        payload = WorkflowCallbackRequest.model_validate_json(body or b"{}")
    except ValidationError as exc:
        raise RequestValidationError(exc.errors()) from exc

    outcome = await run_in_threadpool(workflow_engine.run, payload.subscription_id)
    return outcome.to_response()


@router.get("/workflow/process-reminders", response_model=ReconcileResponse)
def process_reminders() -> ReconcileResponse:
    return dispatch_service.reconcile().to_response()


@router.post("/workflow/resume-due", response_model=ResumeDueResponse)
def resume_due_workflows(limit: int | None = None) -> ResumeDueResponse:
    if limit is not None and limit < 1:
        raise HTTPException(400, "limit must be positive")
    outcomes = dispatch_service.resume_due(limit=limit)
    return ResumeDueResponse(
        processed_count=len(outcomes),
        results=[outcome.to_response() for outcome in outcomes],
    )


@router.post("/workflow/trigger/{subscription_id}", response_model=TriggerResponse)
def trigger_workflow(subscription_id: str, request: Request, background_tasks: BackgroundTasks) -> TriggerResponse:
    user_id = _require_user_session(request)
    _require_owned_subscription(subscription_id, user_id)
    result = dispatch_service.trigger(subscription_id)
    if result.started:
        _enqueue_run(background_tasks, subscription_id)
    return result.to_response()


def _send_reminder_now(reminder: RenewalReminder) -> ReminderEmailResponse:
    try:
        result = reminder_notifier.send_renewal_reminder(reminder)
    except DeliveryFailure as exc:
        raise HTTPException(status_code=502, detail=f"email delivery failed: {exc.error_code}") from exc
    recipient = mask_email(reminder.email)
    return ReminderEmailResponse(
        sent=True,
        recipient=recipient,
        days_until_renewal=reminder.days_until_renewal,
        message_id=str(result["message_id"]) if result.get("message_id") else None,
        message=f"Test reminder email sent to {recipient}",
    )


@router.post("/workflow/test-email/{subscription_id}", response_model=ReminderEmailResponse)
def send_test_reminder(subscription_id: str, request: Request) -> ReminderEmailResponse:
    user_id = _require_user_session(request)
    subscription = _require_owned_subscription(subscription_id, user_id)
    # sent outside the workflow; the run's step log is untouched
    days = max(days_until(subscription.renewal_date, datetime.now(timezone.utc)), 1)
    reminder = RenewalReminder.for_subscription(subscription, days_until_renewal=days, checkpoint=days)
    return _send_reminder_now(reminder)


@router.post("/workflow/send-direct-email", response_model=ReminderEmailResponse)
def send_direct_email(payload: DirectEmailRequest, request: Request) -> ReminderEmailResponse:
    _require_admin(request)
    return _send_reminder_now(RenewalReminder.sample(payload.email, now=datetime.now(timezone.utc)))


@router.get("/workflow/runs/{subscription_id}", response_model=WorkflowRunItem)
def get_latest_run(subscription_id: str, request: Request) -> WorkflowRunItem:
    user_id = _require_user_session(request)
    _require_owned_subscription(subscription_id, user_id)
    run = workflow_repo.get_latest_run(subscription_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"no workflow run for subscription: {subscription_id}")
    return run.to_item()


@router.get("/workflow/runs", response_model=WorkflowRunListResponse)
def list_runs(request: Request, state: str | None = None, limit: int = 100) -> WorkflowRunListResponse:
    _require_admin(request)
    if state is not None and state not in ACTIVE_STATES + TERMINAL_STATES:
        raise HTTPException(400, f"unknown workflow state: {state}")
    runs = workflow_repo.list_runs(state=state, limit=max(1, min(limit, 500)))
    return WorkflowRunListResponse(items=[run.to_item() for run in runs])


@router.post("/admin/login", response_model=AdminLoginResponse)
def admin_login(payload: AdminLoginRequest) -> AdminLoginResponse:
    if not _settings.admin_password:
        raise HTTPException(503, "admin password not configured")
    if payload.password != _settings.admin_password:
        raise HTTPException(401, "invalid password")
    token, expires_at = issue_session_token(
        user_id=ADMIN_SUBJECT,
        secret=_settings.admin_session_secret,
        ttl_minutes=480,
    )
    return AdminLoginResponse(authenticated=True, session_token=token, expires_at=expires_at)


@router.post("/users", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
def create_user(payload: UserCreateRequest) -> UserResponse:
    try:
        user = subscription_repo.create_user(payload.username, payload.email)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    token, expires_at = issue_session_token(
        user_id=user.user_id,
        secret=_settings.user_session_secret,
        ttl_minutes=_settings.user_session_ttl_minutes,
    )
    return UserResponse(
        user_id=user.user_id,
        username=user.username,
        email=user.email,
        session_token=token,
        expires_at=expires_at,
    )


@router.post("/subscriptions", response_model=SubscriptionCreateResponse, status_code=status.HTTP_201_CREATED)
def create_subscription(
    payload: SubscriptionCreateRequest,
    request: Request,
    background_tasks: BackgroundTasks,
) -> SubscriptionCreateResponse:
    user_id = _require_user_session(request)
    try:
        subscription = subscription_repo.create_subscription(user_id, payload)
    except UserNotFoundError as exc:
        raise HTTPException(status_code=401, detail="session user no longer exists") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    result = dispatch_service.trigger(subscription.subscription_id)
    if result.started:
        _enqueue_run(background_tasks, subscription.subscription_id)
    return SubscriptionCreateResponse(subscription=subscription.to_record(), workflow=result.to_response())


@router.get("/subscriptions/user/{user_id}", response_model=SubscriptionListResponse)
def list_user_subscriptions(user_id: str, request: Request) -> SubscriptionListResponse:
    session_user_id = _require_user_session(request)
    if session_user_id != user_id:
        raise HTTPException(status_code=403, detail="you are not the owner of this account")
    items = subscription_repo.list_user_subscriptions(user_id)
    return SubscriptionListResponse(items=[item.to_record() for item in items])


@router.post("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionRecord)
def cancel_subscription(subscription_id: str, request: Request) -> SubscriptionRecord:
    user_id = _require_user_session(request)
    _require_owned_subscription(subscription_id, user_id)
    try:
        updated = subscription_repo.update_status(subscription_id, "canceled")
    except SubscriptionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"subscription not found: {subscription_id}") from exc
    return updated.to_record()


@router.delete("/subscriptions/{subscription_id}", response_model=SubscriptionDeleteResponse)
def delete_subscription(subscription_id: str, request: Request) -> SubscriptionDeleteResponse:
    user_id = _require_user_session(request)
    _require_owned_subscription(subscription_id, user_id)
    deleted = subscription_repo.delete_subscription(subscription_id)
    return SubscriptionDeleteResponse(subscription_id=subscription_id, deleted=deleted)
