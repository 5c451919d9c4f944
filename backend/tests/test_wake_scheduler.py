from __future__ import annotations

import json
import socket
import urllib.error
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from subscriptions_web.callback_security import sign_callback_body
from subscriptions_web.wake_scheduler import (
    PollingWakeScheduler,
    QStashWakeScheduler,
    WakeScheduleError,
    create_wake_scheduler,
)

WAKE_AT = datetime(2026, 3, 5, 9, 0, tzinfo=timezone.utc)
CALLBACK_URL = "https://api.example.com/api/v1/workflow/send-reminders"


def _mock_response(body: dict[str, str]) -> MagicMock:
    response = MagicMock()
    response.read.return_value = json.dumps(body).encode("utf-8")
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


def _scheduler(callback_secret: str = "") -> QStashWakeScheduler:
    return QStashWakeScheduler(
        base_url="https://qstash.example.com/",
        token="qstash-token-123",
        callback_url=CALLBACK_URL,
        callback_secret=callback_secret,
    )


def test_factory() -> None:
    assert isinstance(create_wake_scheduler(scheduler_type="polling"), PollingWakeScheduler)
    assert isinstance(
        create_wake_scheduler(scheduler_type="qstash", qstash_url="https://q", qstash_token="t", callback_url=CALLBACK_URL),
        QStashWakeScheduler,
    )
    with pytest.raises(RuntimeError):
        create_wake_scheduler(scheduler_type="cron")
    with pytest.raises(ValueError):
        create_wake_scheduler(scheduler_type="qstash", qstash_url="https://q", qstash_token="", callback_url=CALLBACK_URL)


def test_polling_scheduler_records_requests() -> None:
    scheduler = PollingWakeScheduler()

    scheduler.schedule_wake("sub_000001", WAKE_AT)

    assert scheduler.scheduled[0].subscription_id == "sub_000001"
    assert scheduler.scheduled[0].wake_at == WAKE_AT


@patch("subscriptions_web.wake_scheduler.urllib.request.urlopen")
def test_qstash_publishes_delayed_callback(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"messageId": "msg_123"})

    _scheduler().schedule_wake("sub_000001", WAKE_AT)

    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == f"https://qstash.example.com/v2/publish/{CALLBACK_URL}"
    assert request_arg.get_method() == "POST"
    assert request_arg.get_header("Authorization") == "Bearer qstash-token-123"
    assert request_arg.get_header("Upstash-not-before") == str(int(WAKE_AT.timestamp()))
    assert request_arg.get_header("Upstash-forward-x-workflow-signature") is None
    assert json.loads(request_arg.data.decode("utf-8")) == {"subscription_id": "sub_000001"}


@patch("subscriptions_web.wake_scheduler.urllib.request.urlopen")
def test_qstash_forwards_callback_signature(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"messageId": "msg_123"})

    _scheduler(callback_secret="callback-secret").schedule_wake("sub_000001", WAKE_AT)

    request_arg = mock_urlopen.call_args[0][0]
    timestamp = int(WAKE_AT.timestamp())
    assert request_arg.get_header("Upstash-forward-x-workflow-timestamp") == str(timestamp)
    assert request_arg.get_header("Upstash-forward-x-workflow-signature") == sign_callback_body(
        request_arg.data,
        timestamp=timestamp,
        secret="callback-secret",
    )


@pytest.mark.parametrize(
    ("error", "error_code"),
    [
        (urllib.error.HTTPError(CALLBACK_URL, 401, "Unauthorized", {}, None), "http_401"),  # type: ignore[arg-type]
        (urllib.error.URLError("Name or service not known"), "connection_error"),
        (socket.timeout("timed out"), "timeout"),
    ],
)
@patch("subscriptions_web.wake_scheduler.urllib.request.urlopen")
def test_qstash_errors_are_wrapped(mock_urlopen: MagicMock, error: Exception, error_code: str) -> None:
    mock_urlopen.side_effect = error

    with pytest.raises(WakeScheduleError) as exc_info:
        _scheduler().schedule_wake("sub_000001", WAKE_AT)

    assert exc_info.value.error_code == error_code
