from __future__ import annotations

import logging
from typing import Callable

from .config import Settings
from .conversations import ConversationService
from .errors import ProviderError
from .magic_links import MagicLinkService
from .models import SmsSendResponse
from .settings_store import SmsProviderConfig, SmsSettingsService
from .sms_sender import SmsSender, mask_contact_target

logger = logging.getLogger(__name__)

TRUNCATION_SEPARATOR = "... See full message: "


def truncate_sms_body(content: str, link: str, *, threshold: int = 140, length: int = 120) -> str:
    """Bodies up to ``threshold`` characters go out verbatim; longer ones are cut and point at ``link``."""
    if len(content) <= threshold:
        return content
    return f"{content[:length]}{TRUNCATION_SEPARATOR}{link}"


class SmsDispatcher:
    def __init__(
        self,
        *,
        settings: Settings,
        conversations: ConversationService,
        sms_settings: SmsSettingsService,
        magic_links: MagicLinkService,
        sender_factory: Callable[[SmsProviderConfig], SmsSender],
    ) -> None:
        self._settings = settings
        self._conversations = conversations
        self._sms_settings = sms_settings
        self._magic_links = magic_links
        self._sender_factory = sender_factory

    def send(
        self,
        conversation_id: str,
        *,
        caller_id: str,
        content: str,
        recipient_phone: str,
    ) -> SmsSendResponse:
        self._conversations.get(conversation_id)
        config = self._sms_settings.load_provider_config()

        body = content
        magic_link: str | None = None
        token: str | None = None
        if len(content) > self._settings.sms_truncate_threshold:
            link_record = self._magic_links.issue(
                conversation_id=conversation_id,
                message_content=content,
                created_by=caller_id,
            )
            token = link_record.token
            magic_link = self._settings.magic_link_url(token)
            body = truncate_sms_body(
                content,
                magic_link,
                threshold=self._settings.sms_truncate_threshold,
                length=self._settings.sms_truncate_length,
            )

        sender = self._sender_factory(config)
        result = sender.send(to=recipient_phone, from_=config.phone_number, body=body)
        if result.status != "sent":
            if token is not None:
                self._magic_links.discard(token)
            logger.warning(
                "sms send failed conversation_id=%s to=%s error_code=%s",
                conversation_id,
                mask_contact_target(recipient_phone, "sms"),
                result.error_code,
            )
            raise ProviderError(result.error_message or "Failed to send SMS", error_code=result.error_code)

        # The provider has accepted the message; an append failure past this point is not rolled back.
        try:
            message = self._conversations.append_message(
                conversation_id,
                sender_id=caller_id,
                type="user",
                content=content,
                source_type="sms",
                source_metadata={
                    "to": recipient_phone,
                    "from": config.phone_number,
                    "provider": self._settings.sms_sender_type,
                    "provider_message_id": result.provider_message_id,
                    "truncated": magic_link is not None,
                    "magic_link": magic_link,
                },
            )
        except Exception:
            logger.exception(
                "sms sent but chat copy was not stored conversation_id=%s provider_message_id=%s",
                conversation_id,
                result.provider_message_id,
            )
            raise

        logger.info(
            "sms sent conversation_id=%s to=%s truncated=%s",
            conversation_id,
            mask_contact_target(recipient_phone, "sms"),
            magic_link is not None,
        )
        return SmsSendResponse(
            success=True,
            message_sid=result.provider_message_id,
            truncated=magic_link is not None,
            magic_link=magic_link,
            message_id=message.message_id,
        )
