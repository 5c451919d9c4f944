from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping

from .config import Settings

TIMESTAMP_HEADER = "X-Workflow-Timestamp"
SIGNATURE_HEADER = "X-Workflow-Signature"


@dataclass(frozen=True)
class CallbackSignatureVerification:
    verified: bool
    reason: str | None = None


def _normalize_signature(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    if not normalized:
        return None
    if normalized.startswith("sha256="):
        return normalized.removeprefix("sha256=").strip().lower()
    return normalized.lower()


def sign_callback_body(body: bytes, *, timestamp: int, secret: str) -> str:
    signing_payload = f"{timestamp}.".encode("utf-8") + body
    digest = hmac.new(secret.encode("utf-8"), signing_payload, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_workflow_callback_signature(
    *,
    settings: Settings,
    body: bytes,
    headers: Mapping[str, str],
    now: datetime | None = None,
) -> CallbackSignatureVerification:
    """Check the HMAC on a ``send-reminders`` callback.

    The timestamp is the wake time the callback was scheduled for, so the
    freshness window is measured from the intended delivery, not from when
    the wake was published.
    """
    mode = settings.workflow_callback_signature_mode
    if mode == "off":
        return CallbackSignatureVerification(verified=True)

    secret = settings.workflow_callback_secret
    if not secret:
        return CallbackSignatureVerification(verified=False, reason="callback_secret_missing")

    timestamp_text = headers.get(TIMESTAMP_HEADER)
    signature_text = headers.get(SIGNATURE_HEADER)
    if not timestamp_text:
        return CallbackSignatureVerification(verified=False, reason="timestamp_missing")
    if not signature_text:
        return CallbackSignatureVerification(verified=False, reason="signature_missing")

    try:
        timestamp = int(timestamp_text)
    except ValueError:
        return CallbackSignatureVerification(verified=False, reason="timestamp_invalid")

    current_time = now or datetime.now(timezone.utc)
    current_epoch = int(current_time.timestamp())
    max_age = max(0, settings.workflow_callback_max_age_seconds)
    if abs(current_epoch - timestamp) > max_age:
        return CallbackSignatureVerification(verified=False, reason="timestamp_out_of_window")

    normalized_signature = _normalize_signature(signature_text)
    if normalized_signature is None:
        return CallbackSignatureVerification(verified=False, reason="signature_invalid")

    expected_signature = _normalize_signature(sign_callback_body(body, timestamp=timestamp, secret=secret))
    if not hmac.compare_digest(normalized_signature, expected_signature or ""):
        return CallbackSignatureVerification(verified=False, reason="signature_mismatch")

    return CallbackSignatureVerification(verified=True)
