"""Bearer session tokens issued by the hosted auth system.

Format: ``<base64url json payload>.<hex hmac-sha256>`` with payload keys
``user_id``, ``role`` and ``exp`` (unix seconds).
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from .models import Role

_ROLES: frozenset[str] = frozenset({"admin", "team_member", "client"})


class SessionTokenError(ValueError):
    """Raised when a session token is malformed, forged or expired."""


@dataclass(frozen=True)
class SessionTokenPayload:
    user_id: str
    role: Role
    expires_at: datetime

    @property
    def is_staff(self) -> bool:
        return self.role in {"admin", "team_member"}

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(f"{data}{padding}".encode("ascii"))


def _sign(payload_b64: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload_b64.encode("ascii"), hashlib.sha256).hexdigest()


def create_session_token(
    *,
    user_id: str,
    role: Role,
    secret: str,
    ttl_minutes: int = 60,
    now: datetime | None = None,
) -> str:
    if not secret:
        raise SessionTokenError("session token secret is empty")
    if role not in _ROLES:
        raise SessionTokenError(f"unknown role: {role}")
    issued_at = now or datetime.now(timezone.utc)
    payload_json = json.dumps(
        {
            "user_id": user_id,
            "role": role,
            "exp": int((issued_at + timedelta(minutes=ttl_minutes)).timestamp()),
        },
        separators=(",", ":"),
        sort_keys=True,
    ).encode("utf-8")
    payload_b64 = _b64url_encode(payload_json)
    return f"{payload_b64}.{_sign(payload_b64, secret)}"


def decode_session_token(token: str, *, secret: str, now: datetime | None = None) -> SessionTokenPayload:
    if not token or "." not in token:
        raise SessionTokenError("invalid token format")
    if not secret:
        raise SessionTokenError("session token secret is empty")

    payload_b64, signature = token.rsplit(".", 1)
    if not hmac.compare_digest(signature, _sign(payload_b64, secret)):
        raise SessionTokenError("token signature mismatch")

    try:
        payload_obj = json.loads(_b64url_decode(payload_b64).decode("utf-8"))
    except ValueError as exc:
        raise SessionTokenError("token payload decoding failed") from exc
    if not isinstance(payload_obj, dict):
        raise SessionTokenError("token payload decoding failed")

    user_id = str(payload_obj.get("user_id", "")).strip()
    if not user_id:
        raise SessionTokenError("token user_id missing")

    role = str(payload_obj.get("role", "")).strip()
    if role not in _ROLES:
        raise SessionTokenError("token role invalid")

    try:
        exp = int(payload_obj["exp"])
    except (KeyError, TypeError, ValueError) as exc:
        raise SessionTokenError("token expiration missing") from exc

    expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
    if expires_at <= (now or datetime.now(timezone.utc)):
        raise SessionTokenError("token expired")

    return SessionTokenPayload(user_id=user_id, role=role, expires_at=expires_at)  # type: ignore[arg-type]
