from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Protocol

from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client

from .settings_store import SmsProviderConfig

logger = logging.getLogger(__name__)

SendStatus = Literal["sent", "failed"]
ContactKind = Literal["email", "sms"]


@dataclass(frozen=True)
class SmsSendResult:
    status: SendStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class CredentialCheckResult:
    ok: bool
    error_message: str | None = None


class SmsSender(Protocol):
    def send(self, *, to: str, from_: str, body: str) -> SmsSendResult: ...


class StubSmsSender:
    """Deterministic sender for tests and local dev; records every body it is given."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    def send(self, *, to: str, from_: str, body: str) -> SmsSendResult:
        attempted_at = datetime.now(timezone.utc)
        if "fail" in to.lower():
            return SmsSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub sender forced failure for contact target",
            )
        self.sent.append((to, from_, body))
        return SmsSendResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=f"SMstub{len(self.sent):06d}",
        )


class TwilioSmsSender:
    def __init__(self, *, account_sid: str, auth_token: str, client: Client | None = None) -> None:
        if not account_sid.strip():
            raise ValueError("account_sid must not be empty")
        if not auth_token.strip():
            raise ValueError("auth_token must not be empty")
        self._account_sid = account_sid.strip()
        self._client = client or Client(self._account_sid, auth_token.strip())

    def send(self, *, to: str, from_: str, body: str) -> SmsSendResult:
        attempted_at = datetime.now(timezone.utc)
        try:
            message = self._client.messages.create(to=to, from_=from_, body=body)
        except TwilioRestException as exc:
            logger.warning(
                "twilio send failed to=%s status=%s code=%s",
                mask_contact_target(to, "sms"),
                exc.status,
                exc.code,
            )
            return SmsSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=f"twilio_{exc.code or exc.status}",
                error_message=exc.msg or str(exc),
            )
        except TwilioException as exc:
            return SmsSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="twilio_error",
                error_message=str(exc),
            )
        return SmsSendResult(status="sent", attempted_at=attempted_at, provider_message_id=message.sid)

    def verify_credentials(self) -> CredentialCheckResult:
        try:
            self._client.api.accounts(self._account_sid).fetch()
        except TwilioException as exc:
            message = getattr(exc, "msg", None) or str(exc) or "Failed to connect to Twilio"
            return CredentialCheckResult(ok=False, error_message=message)
        return CredentialCheckResult(ok=True)


def create_sms_sender(sender_type: str, config: SmsProviderConfig) -> SmsSender:
    normalized = sender_type.strip().lower()
    if normalized == "twilio":
        return TwilioSmsSender(account_sid=config.account_sid, auth_token=config.auth_token)
    if normalized == "stub":
        return StubSmsSender()
    raise RuntimeError(f"unsupported SMS_SENDER_TYPE: {sender_type}")


def mask_contact_target(contact_target: str, kind: ContactKind) -> str:
    normalized = contact_target.strip()
    if not normalized:
        return "***"

    if kind == "email" and "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"

    if kind == "sms":
        digits = "".join(ch for ch in normalized if ch.isdigit())
        if len(digits) >= 4:
            return f"***{digits[-4:]}"

    if len(normalized) <= 4:
        return "*" * len(normalized)

    return f"{normalized[:2]}***{normalized[-2:]}"
