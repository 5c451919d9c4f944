from __future__ import annotations

import os

import pytest

from subscriptions_web.main import create_app


def _set_env(overrides: dict[str, str | None]) -> dict[str, str | None]:
    previous: dict[str, str | None] = {}
    for key, value in overrides.items():
        previous[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return previous


def _restore_env(previous: dict[str, str | None]) -> None:
    for key, value in previous.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def _base_runtime_secret_env() -> dict[str, str | None]:
    return {
        "ADMIN_PASSWORD": "prod-admin-password-001",
        "ADMIN_SESSION_SECRET": "prod-admin-secret-001",
        "USER_SESSION_SECRET": "prod-session-secret-001",
        "WORKFLOW_CALLBACK_SECRET": "prod-callback-secret-001",
        "WORKFLOW_CALLBACK_SIGNATURE_MODE": "enforce",
        "RUNTIME_SECRET_GUARD_MODE": "enforce",
        "WAKE_SCHEDULER_TYPE": None,
        "EMAIL_SENDER_TYPE": None,
    }


def test_create_app_starts_with_production_secrets() -> None:
    previous = _set_env(_base_runtime_secret_env())
    try:
        app = create_app()
        assert app.title == "Subscription Tracker API"
    finally:
        _restore_env(previous)


def test_create_app_blocks_when_qstash_selected_without_token() -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "WAKE_SCHEDULER_TYPE": "qstash",
            "QSTASH_TOKEN": None,
        }
    )
    try:
        with pytest.raises(RuntimeError) as exc_info:
            create_app()
        message = str(exc_info.value)
        assert "QSTASH_TOKEN is required" in message
        assert "WAKE_SCHEDULER_TYPE" in message
    finally:
        _restore_env(previous)


def test_create_app_warns_instead_of_blocking_in_warn_mode(caplog: pytest.LogCaptureFixture) -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "ADMIN_PASSWORD": None,
            "RUNTIME_SECRET_GUARD_MODE": "warn",
        }
    )
    try:
        with caplog.at_level("WARNING", logger="subscriptions_web.main"):
            create_app()
        assert any("ADMIN_PASSWORD" in record.getMessage() for record in caplog.records)
    finally:
        _restore_env(previous)
