from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

SubscriptionStatus = Literal["active", "inactive", "canceled"]
BillingFrequency = Literal["monthly", "yearly"]
Currency = Literal["USD", "EUR", "GBP", "INR", "JPY"]
SubscriptionCategory = Literal["entertainment", "productivity", "education", "health", "other"]
PaymentMethod = Literal["credit_card", "debit_card", "paypal", "bank_transfer", "other"]
RunState = Literal["pending", "sleeping", "running", "completed", "failed"]
RunOutcomeCode = Literal[
    "reminders_completed",
    "skipped_not_found",
    "skipped_inactive",
    "renewal_passed",
    "delivery_failed",
    "retries_exhausted",
    "sleeping",
    "retry_scheduled",
    "conflict",
    "no_active_run",
]
TriggerStatus = Literal["started", "already_running"]
ReconcileItemStatus = Literal["started", "already_running", "failed"]


def _normalize_email(value: str) -> str:
    normalized = value.strip().lower()
    local, _, domain = normalized.partition("@")
    if not local or "." not in domain:
        raise ValueError("email must be a valid address")
    return normalized


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UserCreateRequest(BaseModel):
    username: str = Field(min_length=1, max_length=64)
    email: str = Field(min_length=3, max_length=256)

    @field_validator("username")
    @classmethod
    def _normalize_username(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("username cannot be blank")
        return normalized

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return _normalize_email(value)


class UserResponse(BaseModel):
    user_id: str
    username: str
    email: str
    session_token: str
    expires_at: datetime


class SubscriptionCreateRequest(BaseModel):
    name: str = Field(min_length=3, max_length=50)
    price: float = Field(ge=0)
    currency: Currency = "USD"
    frequency: BillingFrequency
    category: SubscriptionCategory = "other"
    payment_method: PaymentMethod = "other"
    start_date: datetime
    renewal_date: datetime | None = None

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        normalized = value.strip()
        if len(normalized) < 3:
            raise ValueError("name must be at least 3 characters")
        return normalized

    @field_validator("start_date", "renewal_date")
    @classmethod
    def _normalize_dates(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return _as_utc(value)

    @model_validator(mode="after")
    def _validate_dates(self) -> SubscriptionCreateRequest:
        if self.start_date > datetime.now(timezone.utc):
            raise ValueError("start_date cannot be in the future")
        if self.renewal_date is not None and self.renewal_date <= self.start_date:
            raise ValueError("renewal_date must be after start_date")
        return self


class SubscriptionRecord(BaseModel):
    subscription_id: str
    user_id: str
    name: str
    price: float
    currency: Currency
    frequency: BillingFrequency
    category: SubscriptionCategory
    payment_method: PaymentMethod
    status: SubscriptionStatus
    start_date: datetime
    renewal_date: datetime
    created_at: datetime
    updated_at: datetime


class SubscriptionListResponse(BaseModel):
    items: list[SubscriptionRecord]


class TriggerResponse(BaseModel):
    subscription_id: str
    status: TriggerStatus
    run_id: str | None = None
    state: RunState | None = None
    message: str


class SubscriptionCreateResponse(BaseModel):
    subscription: SubscriptionRecord
    workflow: TriggerResponse | None = None


class SubscriptionDeleteResponse(BaseModel):
    subscription_id: str
    deleted: bool


class WorkflowCallbackRequest(BaseModel):
    subscription_id: str = Field(min_length=1, max_length=128)


class WorkflowStepItem(BaseModel):
    name: str
    completed: bool
    result: dict[str, Any] = Field(default_factory=dict)
    completed_at: datetime | None = None


class WorkflowRunItem(BaseModel):
    run_id: str
    subscription_id: str
    renewal_date: datetime | None = None
    state: RunState
    outcome: str | None = None
    sleep_name: str | None = None
    wake_at: datetime | None = None
    attempts: int
    last_error_code: str | None = None
    last_error_message: str | None = None
    created_at: datetime
    last_woken_at: datetime | None = None
    updated_at: datetime
    finished_at: datetime | None = None
    steps: list[WorkflowStepItem] = Field(default_factory=list)


class WorkflowRunListResponse(BaseModel):
    items: list[WorkflowRunItem]


class RunOutcomeResponse(BaseModel):
    subscription_id: str
    run_id: str | None = None
    outcome: RunOutcomeCode
    state: RunState | None = None
    reminders_sent: list[int] = Field(default_factory=list)
    wake_at: datetime | None = None


class ReconcileItem(BaseModel):
    subscription_id: str
    status: ReconcileItemStatus
    run_id: str | None = None
    error: str | None = None


class ReconcileResponse(BaseModel):
    evaluated_count: int
    started_count: int
    items: list[ReconcileItem]


class ResumeDueResponse(BaseModel):
    processed_count: int
    results: list[RunOutcomeResponse]


class AdminLoginRequest(BaseModel):
    password: str


class AdminLoginResponse(BaseModel):
    authenticated: bool
    session_token: str
    expires_at: datetime


class DirectEmailRequest(BaseModel):
    email: str = Field(min_length=3, max_length=256)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return _normalize_email(value)


class ReminderEmailResponse(BaseModel):
    sent: bool
    recipient: str
    days_until_renewal: int
    message_id: str | None = None
    message: str
