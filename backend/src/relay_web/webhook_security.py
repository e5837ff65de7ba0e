from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from twilio.request_validator import RequestValidator

from .settings_store import SmsProviderConfig

SIGNATURE_HEADER = "X-Twilio-Signature"


@dataclass(frozen=True)
class InboundSignatureCheck:
    accepted: bool
    reason: str | None = None


def _signature_from(headers: Mapping[str, str]) -> str | None:
    for name, value in headers.items():
        if name.lower() == SIGNATURE_HEADER.lower():
            return value.strip() or None
    return None


def check_inbound_signature(
    config: SmsProviderConfig | None,
    *,
    url: str,
    form: Mapping[str, str],
    headers: Mapping[str, str],
) -> InboundSignatureCheck:
    """Validate a Twilio callback against the admin's stored SMS credentials.

    A callback that names a different ``AccountSid`` than the stored one is
    rejected before the signature is computed.
    """
    if config is None or not config.auth_token.strip():
        return InboundSignatureCheck(accepted=False, reason="sms_not_configured")

    account_sid = (form.get("AccountSid") or "").strip()
    if account_sid and account_sid != config.account_sid:
        return InboundSignatureCheck(accepted=False, reason="account_mismatch")

    signature = _signature_from(headers)
    if signature is None:
        return InboundSignatureCheck(accepted=False, reason="signature_missing")

    if not RequestValidator(config.auth_token).validate(url, dict(form), signature):
        return InboundSignatureCheck(accepted=False, reason="signature_mismatch")
    return InboundSignatureCheck(accepted=True)
