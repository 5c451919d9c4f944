from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from .callback_security import sign_callback_body
from .date_math import coerce_utc

logger = logging.getLogger(__name__)


class WakeScheduleError(Exception):
    """Raised when the wake-up host refuses or cannot be reached."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class WakeScheduler(Protocol):
    def schedule_wake(self, subscription_id: str, wake_at: datetime) -> None: ...


@dataclass(frozen=True)
class ScheduledWake:
    subscription_id: str
    wake_at: datetime


class PollingWakeScheduler:
    """Relies on the persisted ``wake_at`` and the ``resume-due`` sweep.

    Requests are remembered so tests and the worker can inspect them; nothing
    is sent anywhere.
    """

    def __init__(self) -> None:
        self.scheduled: list[ScheduledWake] = []

    def schedule_wake(self, subscription_id: str, wake_at: datetime) -> None:
        self.scheduled.append(ScheduledWake(subscription_id=subscription_id, wake_at=coerce_utc(wake_at)))
        logger.debug("wake for subscription %s left to the polling sweep at %s", subscription_id, wake_at.isoformat())


class QStashWakeScheduler:
    """Publishes delayed HTTP callbacks through Upstash QStash."""

    def __init__(
        self,
        *,
        base_url: str,
        token: str,
        callback_url: str,
        callback_secret: str = "",
        timeout_seconds: int = 30,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_token = token.strip()
        stripped_callback = callback_url.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_token:
            raise ValueError("token must not be empty")
        if not stripped_callback:
            raise ValueError("callback_url must not be empty")
        self._base_url = stripped_url
        self._token = stripped_token
        self._callback_url = stripped_callback
        self._callback_secret = callback_secret
        self._timeout_seconds = timeout_seconds

    def schedule_wake(self, subscription_id: str, wake_at: datetime) -> None:
        not_before = int(coerce_utc(wake_at).timestamp())
        body = json.dumps({"subscription_id": subscription_id}, separators=(",", ":")).encode("utf-8")
        headers = {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
            "Upstash-Not-Before": str(not_before),
        }
        if self._callback_secret:
            # QStash strips the prefix and forwards these to the callback
            headers["Upstash-Forward-X-Workflow-Timestamp"] = str(not_before)
            headers["Upstash-Forward-X-Workflow-Signature"] = sign_callback_body(
                body,
                timestamp=not_before,
                secret=self._callback_secret,
            )

        response = self._post(body, headers)
        logger.info(
            "scheduled wake for subscription %s at %s (message %s)",
            subscription_id,
            wake_at.isoformat(),
            response.get("messageId"),
        )

    def _post(self, body: bytes, headers: dict[str, str]) -> dict[str, str]:
        url = f"{self._base_url}/v2/publish/{self._callback_url}"
        request = urllib.request.Request(url, data=body, headers=headers, method="POST")
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise WakeScheduleError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise WakeScheduleError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise WakeScheduleError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        except json.JSONDecodeError as exc:
            raise WakeScheduleError(
                error_code="invalid_response",
                message=f"Invalid JSON response: {exc}",
            ) from exc


def create_wake_scheduler(
    *,
    scheduler_type: str,
    qstash_url: str = "",
    qstash_token: str = "",
    callback_url: str = "",
    callback_secret: str = "",
) -> WakeScheduler:
    normalized = scheduler_type.strip().lower()
    if normalized == "qstash":
        return QStashWakeScheduler(
            base_url=qstash_url,
            token=qstash_token,
            callback_url=callback_url,
            callback_secret=callback_secret,
        )
    if normalized == "polling":
        return PollingWakeScheduler()
    raise RuntimeError(f"unsupported WAKE_SCHEDULER_TYPE: {scheduler_type}")
