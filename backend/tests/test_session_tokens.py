from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from subscriptions_web.session_tokens import (
    SessionTokenError,
    create_session_token,
    decode_session_token,
    encode_session_token,
    issue_session_token,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_session_token_round_trip() -> None:
    payload = create_session_token(user_id="usr_000001", ttl_minutes=60, now=NOW)
    token = encode_session_token(payload, secret="secret-123")

    decoded = decode_session_token(token, secret="secret-123", now=NOW + timedelta(minutes=30))

    assert decoded.user_id == "usr_000001"
    assert decoded.expires_at == NOW + timedelta(minutes=60)


def test_issue_session_token_returns_expiry() -> None:
    token, expires_at = issue_session_token(user_id="usr_000001", secret="secret-123", ttl_minutes=5, now=NOW)

    assert expires_at == NOW + timedelta(minutes=5)
    assert decode_session_token(token, secret="secret-123", now=NOW).user_id == "usr_000001"


def test_session_token_rejects_wrong_secret() -> None:
    token, _ = issue_session_token(user_id="usr_000001", secret="secret-123", ttl_minutes=60, now=NOW)

    with pytest.raises(SessionTokenError, match="signature mismatch"):
        decode_session_token(token, secret="other-secret", now=NOW)


def test_session_token_rejects_expired() -> None:
    token, _ = issue_session_token(user_id="usr_000001", secret="secret-123", ttl_minutes=1, now=NOW)

    with pytest.raises(SessionTokenError, match="expired"):
        decode_session_token(token, secret="secret-123", now=NOW + timedelta(minutes=2))


@pytest.mark.parametrize("token", ["", "no-dot", "abc.def"])
def test_session_token_rejects_malformed(token: str) -> None:
    with pytest.raises(SessionTokenError):
        decode_session_token(token, secret="secret-123", now=NOW)


def test_session_token_requires_user_id() -> None:
    with pytest.raises(SessionTokenError):
        create_session_token(user_id=" ", ttl_minutes=5, now=NOW)
