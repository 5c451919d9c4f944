from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_csv_tuple(value: str | None) -> tuple[str, ...]:
    if value is None:
        return ()
    items = [item.strip() for item in value.split(",")]
    return tuple(item for item in items if item)


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_offsets(value: str | None, default: tuple[int, ...]) -> tuple[int, ...]:
    items = _as_csv_tuple(value)
    if not items:
        return default
    try:
        return tuple(int(item) for item in items)
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Subscription Tracker API"
    api_prefix: str = "/api/v1"
    server_url: str = "http://localhost:5500"
    cors_origins: tuple[str, ...] = ("http://localhost:5173", "http://localhost:3000")
    database_url: str = ""
    subscription_store_backend: str = "inmemory"
    workflow_store_backend: str = "inmemory"
    # Reminder workflow tuning.
    reminder_offsets: tuple[int, ...] = (7, 3, 1)
    workflow_retry_base_seconds: int = 60
    workflow_retry_max_seconds: int = 3600
    workflow_max_retries: int = 0
    workflow_lease_seconds: int = 300
    workflow_resume_batch_limit: int = 100
    # Wake-up host.
    wake_scheduler_type: str = "polling"
    qstash_url: str = "https://qstash.upstash.io"
    qstash_token: str = ""
    workflow_callback_secret: str = "dev-workflow-callback-secret"
    workflow_callback_signature_mode: str = "log_only"
    workflow_callback_max_age_seconds: int = 300
    # Outbound email.
    email_sender_type: str = "stub"
    email_enabled: bool = False
    email_host: str = ""
    email_port: int = 587
    email_user: str = ""
    email_password: str = ""
    email_from: str = ""
    email_timeout_seconds: int = 30
    # Identity.
    user_session_secret: str = "dev-session-secret"
    user_session_ttl_minutes: int = 10080
    admin_password: str = ""
    admin_session_secret: str = "dev-admin-secret"
    runtime_secret_guard_mode: str = "warn"

    @property
    def workflow_callback_url(self) -> str:
        return f"{self.server_url.rstrip('/')}{self.api_prefix}/workflow/send-reminders"

    @property
    def email_from_address(self) -> str:
        if self.email_from.strip():
            return self.email_from.strip()
        if self.email_user.strip():
            return f'"SubDub" <{self.email_user.strip()}>'
        return "SubDub <no-reply@localhost>"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("SUBSCRIPTIONS_APP_NAME", "Subscription Tracker API"),
        api_prefix=os.getenv("API_PREFIX", "/api/v1"),
        server_url=os.getenv("SERVER_URL", "http://localhost:5500"),
        cors_origins=_as_csv_tuple(os.getenv("CORS_ORIGINS")) or ("http://localhost:5173", "http://localhost:3000"),
        database_url=os.getenv("DATABASE_URL", ""),
        subscription_store_backend=os.getenv("SUBSCRIPTION_STORE_BACKEND", "inmemory"),
        workflow_store_backend=os.getenv("WORKFLOW_STORE_BACKEND", "inmemory"),
        reminder_offsets=_as_offsets(os.getenv("WORKFLOW_REMINDER_OFFSETS"), (7, 3, 1)),
        workflow_retry_base_seconds=_as_int(os.getenv("WORKFLOW_RETRY_BASE_SECONDS"), 60),
        workflow_retry_max_seconds=_as_int(os.getenv("WORKFLOW_RETRY_MAX_SECONDS"), 3600),
        workflow_max_retries=_as_int(os.getenv("WORKFLOW_MAX_RETRIES"), 0),
        workflow_lease_seconds=_as_int(os.getenv("WORKFLOW_LEASE_SECONDS"), 300),
        workflow_resume_batch_limit=_as_int(os.getenv("WORKFLOW_RESUME_BATCH_LIMIT"), 100),
        wake_scheduler_type=_normalize_mode(
            os.getenv("WAKE_SCHEDULER_TYPE"),
            default="polling",
            allowed={"polling", "qstash"},
        ),
        qstash_url=os.getenv("QSTASH_URL", "https://qstash.upstash.io"),
        qstash_token=os.getenv("QSTASH_TOKEN", ""),
        workflow_callback_secret=os.getenv("WORKFLOW_CALLBACK_SECRET", "dev-workflow-callback-secret"),
        workflow_callback_signature_mode=_normalize_mode(
            os.getenv("WORKFLOW_CALLBACK_SIGNATURE_MODE"),
            default="log_only",
            allowed={"off", "log_only", "enforce"},
        ),
        workflow_callback_max_age_seconds=_as_int(os.getenv("WORKFLOW_CALLBACK_MAX_AGE_SECONDS"), 300),
        email_sender_type=_normalize_mode(
            os.getenv("EMAIL_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "smtp"},
        ),
        email_enabled=_as_bool(os.getenv("EMAIL_ENABLED"), False),
        email_host=os.getenv("EMAIL_HOST", ""),
        email_port=_as_int(os.getenv("EMAIL_PORT"), 587),
        email_user=os.getenv("EMAIL_USER", ""),
        email_password=os.getenv("EMAIL_PASSWORD", ""),
        email_from=os.getenv("EMAIL_FROM", ""),
        email_timeout_seconds=_as_int(os.getenv("EMAIL_TIMEOUT_SECONDS"), 30),
        user_session_secret=os.getenv("USER_SESSION_SECRET", "dev-session-secret"),
        user_session_ttl_minutes=_as_int(os.getenv("USER_SESSION_TTL_MINUTES"), 10080),
        admin_password=os.getenv("ADMIN_PASSWORD", ""),
        admin_session_secret=os.getenv("ADMIN_SESSION_SECRET", "dev-admin-secret"),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(
        settings.admin_password,
        defaults={"change-me-in-production", "admin", "password", "dev-admin-password"},
    ):
        issues.append("ADMIN_PASSWORD is empty or uses a placeholder value")
    if _is_placeholder(
        settings.admin_session_secret,
        defaults={"dev-admin-secret", "change-me-in-production"},
    ):
        issues.append("ADMIN_SESSION_SECRET is empty or uses a development placeholder")
    if _is_placeholder(
        settings.user_session_secret,
        defaults={"dev-session-secret", "change-me-in-production"},
    ):
        issues.append("USER_SESSION_SECRET is empty or uses a development placeholder")
    if settings.workflow_callback_signature_mode == "enforce" and _is_placeholder(
        settings.workflow_callback_secret,
        defaults={"dev-workflow-callback-secret", "change-me-in-production"},
    ):
        issues.append(
            "WORKFLOW_CALLBACK_SECRET is required when WORKFLOW_CALLBACK_SIGNATURE_MODE=enforce"
        )
    if settings.wake_scheduler_type == "qstash" and not settings.qstash_token.strip():
        issues.append("QSTASH_TOKEN is required when WAKE_SCHEDULER_TYPE=qstash")
    if settings.email_sender_type == "smtp" and not settings.email_host.strip():
        issues.append("EMAIL_HOST is required when EMAIL_SENDER_TYPE=smtp")
    return tuple(issues)
