from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from relay_web.session_tokens import SessionTokenError, create_session_token, decode_session_token

SECRET = "session-secret-for-tests"


def test_session_token_round_trip_carries_user_and_role() -> None:
    token = create_session_token(user_id="staff-1", role="team_member", secret=SECRET)
    payload = decode_session_token(token, secret=SECRET)

    assert payload.user_id == "staff-1"
    assert payload.role == "team_member"
    assert payload.is_staff is True
    assert payload.is_admin is False


def test_session_token_rejects_tampering_and_wrong_secret() -> None:
    token = create_session_token(user_id="client-1", role="client", secret=SECRET)
    payload_b64, signature = token.rsplit(".", 1)
    forged = create_session_token(user_id="client-1", role="admin", secret=SECRET).rsplit(".", 1)[0]

    with pytest.raises(SessionTokenError):
        decode_session_token(f"{forged}.{signature}", secret=SECRET)
    with pytest.raises(SessionTokenError):
        decode_session_token(token, secret="another-secret")
    with pytest.raises(SessionTokenError):
        decode_session_token(payload_b64, secret=SECRET)


def test_session_token_expires() -> None:
    issued = datetime(2026, 1, 1, tzinfo=timezone.utc)
    token = create_session_token(user_id="admin-1", role="admin", secret=SECRET, ttl_minutes=5, now=issued)

    assert decode_session_token(token, secret=SECRET, now=issued + timedelta(minutes=4)).is_admin
    with pytest.raises(SessionTokenError):
        decode_session_token(token, secret=SECRET, now=issued + timedelta(minutes=5))


def test_session_token_rejects_unknown_roles() -> None:
    with pytest.raises(SessionTokenError):
        create_session_token(user_id="x", role="owner", secret=SECRET)  # type: ignore[arg-type]
