from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone

from subscriptions_web.callback_security import sign_callback_body, verify_workflow_callback_signature
from subscriptions_web.config import Settings

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
BODY = b'{"subscription_id":"sub_000001"}'


def _settings(mode: str = "enforce") -> Settings:
    return replace(
        Settings(),
        workflow_callback_secret="callback-secret",
        workflow_callback_signature_mode=mode,
        workflow_callback_max_age_seconds=300,
    )


def _headers(*, timestamp: int, secret: str = "callback-secret", body: bytes = BODY) -> dict[str, str]:
    return {
        "X-Workflow-Timestamp": str(timestamp),
        "X-Workflow-Signature": sign_callback_body(body, timestamp=timestamp, secret=secret),
    }


def test_valid_signature_is_verified() -> None:
    timestamp = int(NOW.timestamp())

    result = verify_workflow_callback_signature(
        settings=_settings(), body=BODY, headers=_headers(timestamp=timestamp), now=NOW
    )

    assert result.verified is True


def test_signature_mode_off_skips_checks() -> None:
    result = verify_workflow_callback_signature(settings=_settings("off"), body=BODY, headers={}, now=NOW)

    assert result.verified is True


def test_missing_headers() -> None:
    result = verify_workflow_callback_signature(settings=_settings(), body=BODY, headers={}, now=NOW)

    assert (result.verified, result.reason) == (False, "timestamp_missing")


def test_stale_timestamp_is_rejected() -> None:
    timestamp = int(NOW.timestamp()) - 301

    result = verify_workflow_callback_signature(
        settings=_settings(), body=BODY, headers=_headers(timestamp=timestamp), now=NOW
    )

    assert result.reason == "timestamp_out_of_window"


def test_tampered_body_is_rejected() -> None:
    timestamp = int(NOW.timestamp())

    result = verify_workflow_callback_signature(
        settings=_settings(),
        body=b'{"subscription_id":"sub_999999"}',
        headers=_headers(timestamp=timestamp),
        now=NOW,
    )

    assert result.reason == "signature_mismatch"


def test_wrong_secret_is_rejected() -> None:
    timestamp = int(NOW.timestamp())

    result = verify_workflow_callback_signature(
        settings=_settings(), body=BODY, headers=_headers(timestamp=timestamp, secret="nope"), now=NOW
    )

    assert result.verified is False
