from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

from fastapi.testclient import TestClient
from twilio.base.exceptions import TwilioRestException

from relay_web import api as api_module
from relay_web.config import get_settings
from relay_web.magic_links import MagicLinkRecord
from relay_web.main import create_app
from relay_web.session_tokens import create_session_token

PREFIX = "/api/v1/relay"
SESSION_SECRET = "api-test-session-secret"


def _client() -> TestClient:
    os.environ["RUNTIME_SECRET_GUARD_MODE"] = "off"
    os.environ["RELAY_STORE_BACKEND"] = "inmemory"
    os.environ["SESSION_TOKEN_SECRET"] = SESSION_SECRET
    os.environ["SETTINGS_ENCRYPTION_KEY"] = "api-test-encryption-key-0123456789ab"
    os.environ["SMS_SENDER_TYPE"] = "stub"
    os.environ["EMAIL_SENDER_TYPE"] = "stub"
    os.environ["APP_BASE_URL"] = "https://portal.agency.test"
    os.environ["TWILIO_WEBHOOK_SIGNATURE_MODE"] = "off"
    api_module.configure_runtime(get_settings())
    api_module.reset_runtime_state_for_tests()
    _seed_directory()
    return TestClient(create_app())


def _seed_directory() -> None:
    directory = api_module.directory_repo
    directory.upsert_profile(user_id="admin-1", email="admin@agency.test", role="admin", first_name="Ada")
    directory.upsert_profile(user_id="staff-1", email="sam@agency.test", role="team_member", first_name="Sam")
    directory.upsert_profile(
        user_id="client-1",
        email="casey@client.test",
        role="client",
        first_name="Casey",
        last_name="Jones",
    )
    directory.upsert_client_profile(client_id="client-1", phone="+1 (415) 555-0100", company_name="Jones Bakery")
    directory.upsert_profile(user_id="client-2", email="drew@client.test", role="client", first_name="Drew")
    directory.upsert_service(service_id="svc-1", client_id="client-1", name="Website Redesign", assigned_to="staff-1")


def _headers(user_id: str, role: str) -> dict[str, str]:
    token = create_session_token(user_id=user_id, role=role, secret=SESSION_SECRET)  # type: ignore[arg-type]
    return {"Authorization": f"Bearer {token}"}


ADMIN = ("admin-1", "admin")
STAFF = ("staff-1", "team_member")
CLIENT = ("client-1", "client")
OTHER_CLIENT = ("client-2", "client")


def _create_conversation(client: TestClient) -> str:
    response = client.post(f"{PREFIX}/conversations", json={"client_id": "client-1"}, headers=_headers(*ADMIN))
    assert response.status_code == 200
    return response.json()["conversation_id"]


def _configure_sms(client: TestClient) -> None:
    response = client.post(
        f"{PREFIX}/admin/sms-settings",
        json={"phone_number": "+15005550006", "account_sid": "AC-test-sid", "auth_token": "twilio-secret"},
        headers=_headers(*ADMIN),
    )
    assert response.status_code == 200
    assert response.json()["success"] is True


def test_requests_without_valid_session_are_rejected() -> None:
    client = _client()

    missing = client.get(f"{PREFIX}/conversations")
    assert missing.status_code == 401
    assert missing.json() == {"error": "Not authenticated", "code": "not_authenticated"}

    forged = client.get(f"{PREFIX}/conversations", headers={"Authorization": "Bearer forged.token"})
    assert forged.status_code == 401

    as_client = client.post(f"{PREFIX}/conversations", json={"client_id": "client-1"}, headers=_headers(*CLIENT))
    assert as_client.status_code == 403
    assert as_client.json()["error"] == "Unauthorized"

    as_staff = client.get(f"{PREFIX}/admin/sms-settings", headers=_headers(*STAFF))
    assert as_staff.status_code == 403


def test_conversation_flow_for_staff_and_client() -> None:
    client = _client()
    conversation_id = _create_conversation(client)
    again = client.post(f"{PREFIX}/conversations", json={"client_id": "client-1"}, headers=_headers(*STAFF))
    assert again.json()["conversation_id"] == conversation_id

    sent = client.post(
        f"{PREFIX}/conversations/{conversation_id}/messages",
        json={
            "content": "Here is our logo",
            "attachments": [{"name": "logo.png", "url": "https://files.test/logo.png", "size": 1024, "type": "image/png"}],
        },
        headers=_headers(*CLIENT),
    )
    assert sent.status_code == 201
    assert sent.json()["source_type"] == "chat"
    assert sent.json()["sender_id"] == "client-1"

    listed = client.get(f"{PREFIX}/conversations/{conversation_id}/messages", headers=_headers(*STAFF))
    assert listed.status_code == 200
    assert [item["content"] for item in listed.json()["items"]] == ["Here is our logo"]

    inbox = client.get(f"{PREFIX}/conversations", headers=_headers(*STAFF)).json()["items"]
    assert inbox[0]["client_name"] == "Casey Jones"
    assert inbox[0]["unread_count"] == 1
    assert inbox[0]["attachment_count"] == 1

    read = client.post(f"{PREFIX}/conversations/{conversation_id}/read", headers=_headers(*STAFF))
    assert read.status_code == 200
    assert client.get(f"{PREFIX}/conversations", headers=_headers(*STAFF)).json()["items"][0]["unread_count"] == 0

    attachments = client.get(f"{PREFIX}/clients/client-1/attachments", headers=_headers(*STAFF))
    assert [item["name"] for item in attachments.json()["items"]] == ["logo.png"]

    events = api_module.realtime_notifier.published(f"conversation:{conversation_id}")
    assert [event.event_type for event in events] == ["message.created"]


def test_conversation_access_rules() -> None:
    client = _client()
    conversation_id = _create_conversation(client)

    outsider = client.get(f"{PREFIX}/conversations/{conversation_id}/messages", headers=_headers(*OTHER_CLIENT))
    assert outsider.status_code == 403
    outsider_post = client.post(
        f"{PREFIX}/conversations/{conversation_id}/messages",
        json={"content": "let me in"},
        headers=_headers(*OTHER_CLIENT),
    )
    assert outsider_post.status_code == 403

    missing = client.get(f"{PREFIX}/conversations/conv_missing/messages", headers=_headers(*ADMIN))
    assert missing.status_code == 404
    assert missing.json() == {"error": "Conversation not found", "code": "not_found"}

    assert client.get(
        f"{PREFIX}/conversations/{conversation_id}/messages?limit=0", headers=_headers(*ADMIN)
    ).status_code == 422
    assert client.get(
        f"{PREFIX}/conversations/{conversation_id}/messages?limit=501", headers=_headers(*ADMIN)
    ).status_code == 422

    empty = client.post(
        f"{PREFIX}/conversations/{conversation_id}/messages",
        json={"content": "   "},
        headers=_headers(*CLIENT),
    )
    assert empty.status_code == 422


def test_sms_settings_are_stored_encrypted_and_read_back() -> None:
    client = _client()
    _configure_sms(client)

    stored = api_module.settings_repo.get_values("admin-1", ["sms_auth_token"])["sms_auth_token"]
    assert stored != "twilio-secret"

    response = client.get(f"{PREFIX}/admin/sms-settings", headers=_headers(*ADMIN))
    assert response.status_code == 200
    assert response.json()["settings"] == {
        "phone_number": "+15005550006",
        "account_sid": "AC-test-sid",
        "auth_token": "twilio-secret",
    }


def test_sms_send_requires_configuration() -> None:
    client = _client()
    conversation_id = _create_conversation(client)

    response = client.post(
        f"{PREFIX}/conversations/{conversation_id}/sms",
        json={"content": "hello", "recipient_phone": "+14155550100"},
        headers=_headers(*STAFF),
    )

    assert response.status_code == 503
    assert response.json() == {
        "error": "SMS not configured. Please configure SMS settings first.",
        "code": "not_configured",
    }


def test_long_sms_sends_magic_link_that_resolves_once() -> None:
    client = _client()
    conversation_id = _create_conversation(client)
    _configure_sms(client)
    content = "Weekly report: " + "all milestones are on track and the launch is scheduled. " * 4

    response = client.post(
        f"{PREFIX}/conversations/{conversation_id}/sms",
        json={"content": content, "recipient_phone": "+14155550100"},
        headers=_headers(*STAFF),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["truncated"] is True
    to, from_, sent_body = api_module.stub_sms_sender.sent[0]
    assert (to, from_) == ("+14155550100", "+15005550006")
    assert sent_body.endswith(body["magic_link"])
    assert len(sent_body.split("... See full message: ")[0]) == 120

    token = body["magic_link"].rsplit("/", 1)[1]
    resolved = client.get(f"{PREFIX}/magic-links/{token}")
    assert resolved.status_code == 200
    assert resolved.json()["message_content"] == content.strip()
    assert resolved.json()["conversation_id"] == conversation_id
    assert client.get(f"{PREFIX}/magic-links/{token}").status_code == 404


def test_short_sms_and_provider_failure() -> None:
    client = _client()
    conversation_id = _create_conversation(client)
    _configure_sms(client)

    ok = client.post(
        f"{PREFIX}/conversations/{conversation_id}/sms",
        json={"content": "See you at 3pm", "recipient_phone": "+14155550100"},
        headers=_headers(*ADMIN),
    )
    assert ok.status_code == 200
    assert ok.json()["magic_link"] is None
    assert api_module.stub_sms_sender.sent[0][2] == "See you at 3pm"

    failed = client.post(
        f"{PREFIX}/conversations/{conversation_id}/sms",
        json={"content": "will not arrive", "recipient_phone": "+1555fail0000"},
        headers=_headers(*ADMIN),
    )
    assert failed.status_code == 502
    assert failed.json()["code"] == "provider_error"

    messages = client.get(f"{PREFIX}/conversations/{conversation_id}/messages", headers=_headers(*ADMIN)).json()
    assert [item["content"] for item in messages["items"]] == ["See you at 3pm"]
    assert messages["items"][0]["source_type"] == "sms"


def test_sms_and_chat_content_is_kept_verbatim() -> None:
    client = _client()
    conversation_id = _create_conversation(client)
    _configure_sms(client)

    body = "  hello there  "
    sent = client.post(
        f"{PREFIX}/conversations/{conversation_id}/sms",
        json={"content": body, "recipient_phone": "+14155550100"},
        headers=_headers(*ADMIN),
    )
    assert sent.status_code == 200
    assert api_module.stub_sms_sender.sent[0][2] == body

    padded = "x" * 140 + " "
    truncated = client.post(
        f"{PREFIX}/conversations/{conversation_id}/sms",
        json={"content": padded, "recipient_phone": "+14155550100"},
        headers=_headers(*ADMIN),
    )
    assert truncated.json()["truncated"] is True

    blank = client.post(
        f"{PREFIX}/conversations/{conversation_id}/sms",
        json={"content": "   ", "recipient_phone": "+14155550100"},
        headers=_headers(*ADMIN),
    )
    assert blank.status_code == 422

    chat = client.post(
        f"{PREFIX}/conversations/{conversation_id}/messages",
        json={"content": "  see attached \n"},
        headers=_headers(*CLIENT),
    )
    assert chat.status_code == 201
    assert chat.json()["content"] == "  see attached \n"

    empty_chat = client.post(
        f"{PREFIX}/conversations/{conversation_id}/messages",
        json={"content": " \n "},
        headers=_headers(*CLIENT),
    )
    assert empty_chat.status_code == 422


def test_expired_magic_link_is_gone() -> None:
    client = _client()
    now = datetime.now(timezone.utc)
    api_module.magic_link_repo.create(
        MagicLinkRecord(
            token="expired-token",
            conversation_id="conv_1",
            message_content="old body",
            created_by="admin-1",
            expires_at=now - timedelta(minutes=1),
            created_at=now - timedelta(hours=25),
        )
    )

    expired = client.get(f"{PREFIX}/magic-links/expired-token")
    assert expired.status_code == 410
    assert expired.json()["code"] == "link_expired"
    assert client.get(f"{PREFIX}/magic-links/expired-token").status_code == 404
    assert client.get(f"{PREFIX}/magic-links/never-issued").status_code == 404


def test_sms_settings_credential_check() -> None:
    client = _client()

    with patch("relay_web.sms_sender.Client") as client_cls:
        client_cls.return_value = MagicMock()
        ok = client.post(
            f"{PREFIX}/admin/sms-settings/test",
            json={"account_sid": "AC-good", "auth_token": "token"},
            headers=_headers(*ADMIN),
        )
        assert ok.status_code == 200
        assert ok.json() == {"success": True, "error": None}

        client_cls.return_value.api.accounts.return_value.fetch.side_effect = TwilioRestException(
            401, "https://api.twilio.test", msg="Authenticate"
        )
        bad = client.post(
            f"{PREFIX}/admin/sms-settings/test",
            json={"account_sid": "AC-bad", "auth_token": "token"},
            headers=_headers(*ADMIN),
        )
        assert bad.status_code == 400
        assert bad.json() == {"success": False, "error": "Authenticate"}


def test_email_endpoints_log_every_attempt() -> None:
    client = _client()
    conversation_id = _create_conversation(client)

    welcome = client.post(f"{PREFIX}/emails/welcome", json={"client_id": "client-1"}, headers=_headers(*STAFF))
    assert welcome.status_code == 200
    assert welcome.json()["subject"] == "Welcome to AgencyOS, Casey!"

    missing = client.post(f"{PREFIX}/emails/welcome", json={"client_id": "client-404"}, headers=_headers(*STAFF))
    assert missing.status_code == 404
    assert missing.json()["error"] == "Client not found"

    test_send = client.post(
        f"{PREFIX}/admin/emails/test",
        json={"template": "task", "recipient_email": "qa@agency.test"},
        headers=_headers(*ADMIN),
    )
    assert test_send.status_code == 200
    assert test_send.json()["subject"] == "[TEST] task email template"

    assert client.post(
        f"{PREFIX}/admin/emails/test",
        json={"template": "task", "recipient_email": "qa@agency.test"},
        headers=_headers(*STAFF),
    ).status_code == 403

    logs = client.get(f"{PREFIX}/admin/emails/logs", headers=_headers(*ADMIN)).json()["items"]
    assert [item["type"] for item in logs] == ["test_task", "welcome"]
    assert all(item["status"] == "sent" for item in logs)

    messages = client.get(f"{PREFIX}/conversations/{conversation_id}/messages", headers=_headers(*ADMIN)).json()
    assert [item["content"] for item in messages["items"]] == ["Email sent: Welcome to AgencyOS, Casey!"]
    assert messages["items"][0]["type"] == "system"
