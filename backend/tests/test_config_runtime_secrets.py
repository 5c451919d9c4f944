from __future__ import annotations

import os

from subscriptions_web.config import get_settings, runtime_secret_issues


def _set_env(name: str, value: str | None) -> str | None:
    previous = os.environ.get(name)
    if value is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = value
    return previous


def _restore_env(name: str, previous: str | None) -> None:
    if previous is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = previous


def test_get_settings_defaults() -> None:
    names = ("WORKFLOW_REMINDER_OFFSETS", "WAKE_SCHEDULER_TYPE", "WORKFLOW_MAX_RETRIES", "EMAIL_SENDER_TYPE")
    previous = {name: _set_env(name, None) for name in names}
    try:
        settings = get_settings()
        assert settings.reminder_offsets == (7, 3, 1)
        assert settings.wake_scheduler_type == "polling"
        assert settings.workflow_max_retries == 0
        assert settings.workflow_retry_base_seconds == 60
        assert settings.workflow_retry_max_seconds == 3600
        assert settings.email_sender_type == "stub"
        assert settings.workflow_callback_url == "http://localhost:5500/api/v1/workflow/send-reminders"
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_get_settings_parses_overrides_and_ignores_bad_values() -> None:
    previous = {
        "WORKFLOW_REMINDER_OFFSETS": _set_env("WORKFLOW_REMINDER_OFFSETS", "14, 7,1"),
        "WAKE_SCHEDULER_TYPE": _set_env("WAKE_SCHEDULER_TYPE", "QStash"),
        "WORKFLOW_LEASE_SECONDS": _set_env("WORKFLOW_LEASE_SECONDS", "not-a-number"),
        "EMAIL_ENABLED": _set_env("EMAIL_ENABLED", "yes"),
        "SERVER_URL": _set_env("SERVER_URL", "https://subs.example.com/"),
    }
    try:
        settings = get_settings()
        assert settings.reminder_offsets == (14, 7, 1)
        assert settings.wake_scheduler_type == "qstash"
        assert settings.workflow_lease_seconds == 300
        assert settings.email_enabled is True
        assert settings.workflow_callback_url == "https://subs.example.com/api/v1/workflow/send-reminders"
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_placeholder_secrets_are_reported() -> None:
    previous = {
        "ADMIN_PASSWORD": _set_env("ADMIN_PASSWORD", None),
        "ADMIN_SESSION_SECRET": _set_env("ADMIN_SESSION_SECRET", None),
        "USER_SESSION_SECRET": _set_env("USER_SESSION_SECRET", "change-me"),
    }
    try:
        issues = runtime_secret_issues(get_settings())
        assert any("ADMIN_PASSWORD" in issue for issue in issues)
        assert any("ADMIN_SESSION_SECRET" in issue for issue in issues)
        assert any("USER_SESSION_SECRET" in issue for issue in issues)
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_provider_specific_secrets_only_required_when_selected() -> None:
    previous = {
        "WAKE_SCHEDULER_TYPE": _set_env("WAKE_SCHEDULER_TYPE", "polling"),
        "QSTASH_TOKEN": _set_env("QSTASH_TOKEN", None),
        "EMAIL_SENDER_TYPE": _set_env("EMAIL_SENDER_TYPE", "stub"),
        "EMAIL_HOST": _set_env("EMAIL_HOST", None),
        "WORKFLOW_CALLBACK_SIGNATURE_MODE": _set_env("WORKFLOW_CALLBACK_SIGNATURE_MODE", "log_only"),
    }
    try:
        issues = runtime_secret_issues(get_settings())
        assert not any("QSTASH_TOKEN" in issue for issue in issues)
        assert not any("EMAIL_HOST" in issue for issue in issues)
        assert not any("WORKFLOW_CALLBACK_SECRET" in issue for issue in issues)

        os.environ["WAKE_SCHEDULER_TYPE"] = "qstash"
        os.environ["EMAIL_SENDER_TYPE"] = "smtp"
        os.environ["WORKFLOW_CALLBACK_SIGNATURE_MODE"] = "enforce"
        issues = runtime_secret_issues(get_settings())
        assert any("QSTASH_TOKEN" in issue for issue in issues)
        assert any("EMAIL_HOST" in issue for issue in issues)
        assert any("WORKFLOW_CALLBACK_SECRET" in issue for issue in issues)
    finally:
        for name, value in previous.items():
            _restore_env(name, value)
