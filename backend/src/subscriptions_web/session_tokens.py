from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

ADMIN_SUBJECT = "__admin__"


class SessionTokenError(ValueError):
    """Raised when session tokens are invalid or expired."""


@dataclass(frozen=True)
class SessionTokenPayload:
    user_id: str
    expires_at: datetime


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(f"{data}{padding}".encode("ascii"))


def create_session_token(
    *,
    user_id: str,
    ttl_minutes: int,
    now: datetime | None = None,
) -> SessionTokenPayload:
    if not user_id.strip():
        raise SessionTokenError("token user_id missing")
    issued_at = now or datetime.now(timezone.utc)
    return SessionTokenPayload(user_id=user_id, expires_at=issued_at + timedelta(minutes=ttl_minutes))


def encode_session_token(payload: SessionTokenPayload, *, secret: str) -> str:
    if not secret:
        raise SessionTokenError("session token secret is empty")

    payload_json = json.dumps(
        {"sub": payload.user_id, "exp": int(payload.expires_at.timestamp())},
        separators=(",", ":"),
        sort_keys=True,
    ).encode("utf-8")
    payload_b64 = _b64url_encode(payload_json)
    signature = hmac.new(secret.encode("utf-8"), payload_b64.encode("ascii"), hashlib.sha256).hexdigest()
    return f"{payload_b64}.{signature}"


def decode_session_token(token: str, *, secret: str, now: datetime | None = None) -> SessionTokenPayload:
    if not token or "." not in token:
        raise SessionTokenError("invalid token format")
    if not secret:
        raise SessionTokenError("session token secret is empty")

    payload_b64, signature = token.rsplit(".", 1)
    expected = hmac.new(secret.encode("utf-8"), payload_b64.encode("ascii"), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(signature, expected):
        raise SessionTokenError("token signature mismatch")

    try:
        payload_obj = json.loads(_b64url_decode(payload_b64).decode("utf-8"))
    except Exception as exc:  # noqa: BLE001
        raise SessionTokenError("token payload decoding failed") from exc

    user_id = str(payload_obj.get("sub", "")).strip()
    if not user_id:
        raise SessionTokenError("token user_id missing")

    try:
        exp = int(payload_obj["exp"])
    except Exception as exc:  # noqa: BLE001
        raise SessionTokenError("token expiration missing") from exc

    expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
    reference_now = now or datetime.now(timezone.utc)
    if expires_at <= reference_now:
        raise SessionTokenError("token expired")

    return SessionTokenPayload(user_id=user_id, expires_at=expires_at)


def issue_session_token(*, user_id: str, secret: str, ttl_minutes: int, now: datetime | None = None) -> tuple[str, datetime]:
    payload = create_session_token(user_id=user_id, ttl_minutes=ttl_minutes, now=now)
    return encode_session_token(payload, secret=secret), payload.expires_at
