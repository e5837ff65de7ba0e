from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from .config import Settings
from .conversations import ConversationService
from .directory import DirectoryRepository
from .errors import NotConfiguredError
from .phone import find_client_by_phone
from .settings_store import SmsProviderConfig, SmsSettingsService
from .sms_sender import mask_contact_target
from .webhook_security import check_inbound_signature

logger = logging.getLogger(__name__)

TWIML_EMPTY = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


@dataclass(frozen=True)
class InboundOutcome:
    stored: bool
    reason: str
    conversation_id: str | None = None
    message_id: str | None = None


class InboundSmsAdapter:
    """Turns provider-pushed SMS into conversation messages.

    ``handle`` never raises: the provider retries on anything but a 2xx, which
    would duplicate messages, so every failure is logged and acknowledged.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        directory: DirectoryRepository,
        conversations: ConversationService,
        sms_settings: SmsSettingsService,
    ) -> None:
        self._settings = settings
        self._directory = directory
        self._conversations = conversations
        self._sms_settings = sms_settings

    def handle(self, *, form: Mapping[str, str], url: str, headers: Mapping[str, str]) -> InboundOutcome:
        try:
            return self._handle(form=form, url=url, headers=headers)
        except Exception:
            logger.exception("inbound sms processing failed")
            return InboundOutcome(stored=False, reason="internal_error")

    def _handle(self, *, form: Mapping[str, str], url: str, headers: Mapping[str, str]) -> InboundOutcome:
        if not self._signature_accepted(form=form, url=url, headers=headers):
            return InboundOutcome(stored=False, reason="signature_rejected")

        from_number = (form.get("From") or "").strip()
        to_number = (form.get("To") or "").strip()
        body = form.get("Body") or ""
        if not from_number or not body:
            logger.warning("inbound sms dropped: missing From or Body")
            return InboundOutcome(stored=False, reason="missing_fields")

        client = find_client_by_phone(from_number, self._directory.list_client_contacts_with_phone())
        if client is None:
            logger.warning("inbound sms dropped: no client matches from=%s", mask_contact_target(from_number, "sms"))
            return InboundOutcome(stored=False, reason="unmatched")

        conversation = self._conversations.get_or_create(client.client_id, caller_id=None, service_access=True)
        metadata: dict[str, Any] = {"from": from_number, "to": to_number, "provider": "twilio"}
        message_sid = (form.get("MessageSid") or "").strip()
        if message_sid:
            metadata["message_sid"] = message_sid
        message = self._conversations.append_message(
            conversation.conversation_id,
            sender_id=client.client_id,
            type="user",
            content=body,
            source_type="sms",
            source_metadata=metadata,
        )
        logger.info(
            "inbound sms stored conversation_id=%s message_id=%s from=%s",
            conversation.conversation_id,
            message.message_id,
            mask_contact_target(from_number, "sms"),
        )
        return InboundOutcome(
            stored=True,
            reason="stored",
            conversation_id=conversation.conversation_id,
            message_id=message.message_id,
        )

    def _signature_accepted(self, *, form: Mapping[str, str], url: str, headers: Mapping[str, str]) -> bool:
        mode = self._settings.twilio_webhook_signature_mode
        if mode == "off":
            return True
        try:
            config: SmsProviderConfig | None = self._sms_settings.load_provider_config()
        except NotConfiguredError:
            config = None
        check = check_inbound_signature(config, url=url, form=form, headers=headers)
        if check.accepted:
            return True
        logger.warning("inbound sms signature check failed reason=%s mode=%s", check.reason, mode)
        return mode != "enforce"
