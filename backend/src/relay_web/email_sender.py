from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from .config import Settings
from .errors import NotConfiguredError
from .sms_sender import SendStatus, mask_contact_target


@dataclass(frozen=True)
class EmailSendRequest:
    to: str
    subject: str
    html: str
    text: str


@dataclass(frozen=True)
class EmailSendResult:
    status: SendStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


EMAIL_NOT_CONFIGURED = "Email provider not configured"


class EmailSender(Protocol):
    def send(self, payload: EmailSendRequest) -> EmailSendResult: ...


class StubEmailSender:
    def __init__(self) -> None:
        self.sent: list[EmailSendRequest] = []

    def send(self, payload: EmailSendRequest) -> EmailSendResult:
        attempted_at = datetime.now(timezone.utc)
        if "fail" in payload.to.lower():
            return EmailSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub sender forced failure for contact target",
            )
        self.sent.append(payload)
        return EmailSendResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=f"stub-email-{len(self.sent):06d}",
        )


class _ResendSendError(Exception):
    """Internal error raised when a Resend HTTP request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class ResendEmailSender:
    """Sends transactional email through the Resend HTTP API."""

    def __init__(
        self,
        *,
        api_key: str,
        from_email: str,
        base_url: str = "https://api.resend.com",
        timeout_seconds: int = 10,
    ) -> None:
        stripped_key = api_key.strip()
        stripped_from = from_email.strip()
        stripped_url = base_url.strip().rstrip("/")
        if not stripped_from:
            raise ValueError("from_email must not be empty")
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        self._api_key = stripped_key
        self._from_email = stripped_from
        self._base_url = stripped_url
        self._timeout_seconds = timeout_seconds

    def send(self, payload: EmailSendRequest) -> EmailSendResult:
        if not self._api_key:
            raise NotConfiguredError(EMAIL_NOT_CONFIGURED)
        attempted_at = datetime.now(timezone.utc)
        request_payload: dict[str, Any] = {
            "from": self._from_email,
            "to": [payload.to],
            "subject": payload.subject,
            "html": payload.html,
        }
        if payload.text:
            request_payload["text"] = payload.text

        try:
            response_data = self._post(request_payload)
        except _ResendSendError as exc:
            return EmailSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {mask_contact_target(payload.to, 'email')})",
            )
        return EmailSendResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=response_data.get("id"),
        )

    def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._base_url}/emails"
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise _ResendSendError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {_error_detail(exc)}",
            ) from exc
        except urllib.error.URLError as exc:
            raise _ResendSendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _ResendSendError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc


def _error_detail(exc: urllib.error.HTTPError) -> str:
    # Resend returns {"name": ..., "message": ...} on errors.
    try:
        payload = json.loads(exc.read().decode("utf-8"))
    except (ValueError, OSError, AttributeError):
        return str(exc.reason)
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return str(exc.reason)


def create_email_sender(settings: Settings) -> EmailSender:
    if settings.email_sender_type == "resend":
        return ResendEmailSender(
            api_key=settings.resend_api_key,
            from_email=settings.resend_from_email,
            base_url=settings.resend_api_base_url,
            timeout_seconds=settings.email_timeout_seconds,
        )
    return StubEmailSender()
