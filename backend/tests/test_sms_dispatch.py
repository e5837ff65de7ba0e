from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from relay_web.cipher import SettingsCipher
from relay_web.config import Settings
from relay_web.conversations import ConversationService, InMemoryConversationRepository
from relay_web.directory import InMemoryDirectoryRepository
from relay_web.errors import MagicLinkExpiredError, NotConfiguredError, NotFoundError, ProviderError
from relay_web.magic_links import InMemoryMagicLinkRepository, MagicLinkService, SqlAlchemyMagicLinkRepository
from relay_web.realtime import InMemoryRealtimeNotifier
from relay_web.settings_store import (
    SMS_AUTH_TOKEN_KEY,
    InMemorySettingsRepository,
    SmsSettingsService,
    SqlAlchemySettingsRepository,
)
from relay_web.sms import TRUNCATION_SEPARATOR, SmsDispatcher, truncate_sms_body
from relay_web.sms_sender import StubSmsSender

ENCRYPTION_KEY = "sms-settings-test-key-0123456789abcdef"


def _settings() -> Settings:
    return Settings(settings_encryption_key=ENCRYPTION_KEY, app_base_url="https://portal.agency.test")


class _Harness:
    def __init__(self, *, configure: bool = True) -> None:
        self.settings = _settings()
        self.directory = InMemoryDirectoryRepository()
        self.directory.upsert_profile(user_id="admin-1", email="admin@agency.test", role="admin")
        self.directory.upsert_profile(user_id="client-1", email="casey@client.test", role="client", first_name="Casey")
        self.directory.upsert_client_profile(client_id="client-1", phone="+14155550100")
        self.settings_repo = InMemorySettingsRepository()
        self.sms_settings = SmsSettingsService(
            self.settings_repo,
            self.directory,
            SettingsCipher.from_settings(self.settings),
        )
        self.conversations = ConversationService(
            repository=InMemoryConversationRepository(),
            directory=self.directory,
            notifier=InMemoryRealtimeNotifier(),
        )
        self.magic_link_repo = InMemoryMagicLinkRepository()
        self.magic_links = MagicLinkService(self.magic_link_repo)
        self.sender = StubSmsSender()
        self.dispatcher = SmsDispatcher(
            settings=self.settings,
            conversations=self.conversations,
            sms_settings=self.sms_settings,
            magic_links=self.magic_links,
            sender_factory=lambda config: self.sender,
        )
        self.conversation = self.conversations.get_or_create("client-1", caller_id="admin-1")
        if configure:
            self.sms_settings.save(
                user_id="admin-1",
                phone_number="+15005550006",
                account_sid="AC-test-sid",
                auth_token="twilio-token-value",
            )


def test_truncate_sms_body_boundaries() -> None:
    assert truncate_sms_body("a" * 140, "https://x.test/m/t") == "a" * 140
    truncated = truncate_sms_body("b" * 141, "https://x.test/m/t")
    assert truncated == "b" * 120 + TRUNCATION_SEPARATOR + "https://x.test/m/t"


def test_short_sms_is_sent_verbatim_without_magic_link() -> None:
    harness = _Harness()

    response = harness.dispatcher.send(
        harness.conversation.conversation_id,
        caller_id="admin-1",
        content="Your mockups are ready for review.",
        recipient_phone="+14155550100",
    )

    assert response.success is True
    assert response.truncated is False
    assert response.magic_link is None
    assert harness.sender.sent == [("+14155550100", "+15005550006", "Your mockups are ready for review.")]

    messages = harness.conversations.list_messages(harness.conversation.conversation_id).items
    assert len(messages) == 1
    assert messages[0].source_type == "sms"
    assert messages[0].message_id == response.message_id
    assert messages[0].source_metadata["provider_message_id"] == response.message_sid
    assert messages[0].source_metadata["truncated"] is False


def test_long_sms_is_truncated_and_link_resolves_to_full_body() -> None:
    harness = _Harness()
    content = "Project update: " + "details " * 30

    response = harness.dispatcher.send(
        harness.conversation.conversation_id,
        caller_id="admin-1",
        content=content.strip(),
        recipient_phone="+14155550100",
    )

    assert response.truncated is True
    assert response.magic_link is not None
    assert response.magic_link.startswith("https://portal.agency.test/m/")
    sent_body = harness.sender.sent[0][2]
    assert sent_body == content.strip()[:120] + TRUNCATION_SEPARATOR + response.magic_link

    token = response.magic_link.rsplit("/", 1)[1]
    assert harness.magic_links.peek(token) is not None
    record = harness.magic_links.resolve(token)
    assert record.message_content == content.strip()
    assert record.conversation_id == harness.conversation.conversation_id

    stored = harness.conversations.list_messages(harness.conversation.conversation_id).items
    assert stored[0].content == content.strip()
    assert stored[0].source_metadata["magic_link"] == response.magic_link


def test_sms_without_settings_is_not_configured() -> None:
    harness = _Harness(configure=False)

    with pytest.raises(NotConfiguredError) as exc_info:
        harness.dispatcher.send(
            harness.conversation.conversation_id,
            caller_id="admin-1",
            content="hello",
            recipient_phone="+14155550100",
        )

    assert exc_info.value.status_code == 503
    assert "SMS not configured" in exc_info.value.message
    assert harness.sender.sent == []


def test_sms_with_blank_token_is_incomplete() -> None:
    harness = _Harness(configure=False)
    harness.sms_settings.save(user_id="admin-1", phone_number="+15005550006", account_sid="AC-test", auth_token="")

    with pytest.raises(NotConfiguredError) as exc_info:
        harness.sms_settings.load_provider_config()

    assert exc_info.value.message == "SMS configuration incomplete"


def test_sms_to_unknown_conversation_is_not_found() -> None:
    harness = _Harness()

    with pytest.raises(NotFoundError):
        harness.dispatcher.send("conv_missing", caller_id="admin-1", content="hi", recipient_phone="+14155550100")


def test_provider_failure_raises_and_discards_magic_link() -> None:
    harness = _Harness()

    with pytest.raises(ProviderError) as exc_info:
        harness.dispatcher.send(
            harness.conversation.conversation_id,
            caller_id="admin-1",
            content="z" * 200,
            recipient_phone="+1555fail0000",
        )

    assert exc_info.value.status_code == 502
    assert exc_info.value.error_code == "stub_delivery_failed"
    assert harness.conversations.list_messages(harness.conversation.conversation_id).items == []
    assert harness.magic_link_repo._links == {}


def test_settings_service_reads_back_decrypted_token() -> None:
    harness = _Harness()

    stored = harness.settings_repo.get_values("admin-1", [SMS_AUTH_TOKEN_KEY])[SMS_AUTH_TOKEN_KEY]
    assert stored != "twilio-token-value"
    assert stored.startswith("1$")
    assert harness.sms_settings.read(user_id="admin-1") == {
        "phone_number": "+15005550006",
        "account_sid": "AC-test-sid",
        "auth_token": "twilio-token-value",
    }
    config = harness.sms_settings.load_provider_config()
    assert config.owner_id == "admin-1"
    assert config.auth_token == "twilio-token-value"


def test_magic_link_expiry_and_single_use() -> None:
    service = MagicLinkService(InMemoryMagicLinkRepository(), ttl_hours=24)
    expired = service.issue(conversation_id="conv_1", message_content="old", created_by="admin-1")
    fresh = service.issue(conversation_id="conv_1", message_content="new", created_by="admin-1")

    with pytest.raises(MagicLinkExpiredError):
        service.resolve(expired.token, now=expired.expires_at + timedelta(seconds=1))
    with pytest.raises(NotFoundError):
        service.resolve(expired.token)

    assert service.resolve(fresh.token).message_content == "new"
    with pytest.raises(NotFoundError):
        service.resolve(fresh.token)
    with pytest.raises(NotFoundError):
        service.resolve("unknown-token")


def test_sqlite_settings_and_magic_links(tmp_path: Path) -> None:
    database_url = f"sqlite:///{tmp_path / 'relay.db'}"
    settings_repo = SqlAlchemySettingsRepository(database_url)
    settings_repo.upsert_values("admin-1", {"sms_phone_number": "+15005550006", "sms_account_sid": "AC1"})
    settings_repo.upsert_values("admin-1", {"sms_account_sid": "AC2"})
    assert settings_repo.get_values("admin-1", ["sms_phone_number", "sms_account_sid", "sms_auth_token"]) == {
        "sms_phone_number": "+15005550006",
        "sms_account_sid": "AC2",
    }
    assert [value.user_id for value in settings_repo.list_by_key("sms_account_sid")] == ["admin-1"]

    links = MagicLinkService(SqlAlchemyMagicLinkRepository(database_url), ttl_hours=1)
    record = links.issue(conversation_id="conv_1", message_content="full body", created_by=None)
    resolved = links.resolve(record.token)
    assert resolved.message_content == "full body"
    assert resolved.expires_at.tzinfo is not None
    assert links.peek(record.token) is None
