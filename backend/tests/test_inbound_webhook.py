from __future__ import annotations

import os
from unittest.mock import patch

from fastapi.testclient import TestClient
from twilio.request_validator import RequestValidator

from relay_web import api as api_module
from relay_web.config import get_settings
from relay_web.main import create_app

PREFIX = "/api/v1/relay"
WEBHOOK_URL = f"http://testserver{PREFIX}/webhooks/twilio/sms"
TWILIO_TOKEN = "twilio-webhook-token"


def _client(*, signature_mode: str = "off") -> TestClient:
    os.environ["RUNTIME_SECRET_GUARD_MODE"] = "off"
    os.environ["RELAY_STORE_BACKEND"] = "inmemory"
    os.environ["SETTINGS_ENCRYPTION_KEY"] = "inbound-test-encryption-key-0123456789"
    os.environ["SMS_SENDER_TYPE"] = "stub"
    os.environ["TWILIO_WEBHOOK_SIGNATURE_MODE"] = signature_mode
    api_module.configure_runtime(get_settings())
    api_module.reset_runtime_state_for_tests()

    directory = api_module.directory_repo
    directory.upsert_profile(user_id="admin-1", email="admin@agency.test", role="admin")
    directory.upsert_profile(user_id="staff-1", email="sam@agency.test", role="team_member")
    directory.upsert_profile(user_id="client-1", email="casey@client.test", role="client", first_name="Casey")
    directory.upsert_client_profile(client_id="client-1", phone="+1 (415) 555-0100")
    directory.upsert_service(service_id="svc-1", client_id="client-1", name="Website Redesign", assigned_to="staff-1")
    api_module.sms_settings_service.save(
        user_id="admin-1",
        phone_number="+15005550006",
        account_sid="AC-test-sid",
        auth_token=TWILIO_TOKEN,
    )
    return TestClient(create_app())


def _all_messages() -> list:
    conversation = api_module.conversation_service.find_by_client("client-1")
    if conversation is None:
        return []
    return api_module.conversation_service.list_messages(conversation.conversation_id).items


def test_inbound_sms_from_known_client_is_stored_once() -> None:
    client = _client()

    response = client.post(
        f"{PREFIX}/webhooks/twilio/sms",
        data={"From": "14155550100", "To": "+15005550006", "Body": "Can we move the call?", "MessageSid": "SM-in-1"},
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/xml")
    assert "<Response></Response>" in response.text

    messages = _all_messages()
    assert len(messages) == 1
    assert messages[0].content == "Can we move the call?"
    assert messages[0].sender_id == "client-1"
    assert messages[0].type == "user"
    assert messages[0].source_type == "sms"
    assert messages[0].source_metadata == {
        "from": "14155550100",
        "to": "+15005550006",
        "provider": "twilio",
        "message_sid": "SM-in-1",
    }

    conversation = api_module.conversation_service.find_by_client("client-1")
    assert api_module.conversation_service.is_participant(conversation.conversation_id, "staff-1")


def test_inbound_sms_from_unknown_number_is_acknowledged_and_dropped() -> None:
    client = _client()

    response = client.post(
        f"{PREFIX}/webhooks/twilio/sms",
        data={"From": "+13105559999", "To": "+15005550006", "Body": "wrong number?"},
    )

    assert response.status_code == 200
    assert api_module.conversation_service.find_by_client("client-1") is None
    assert api_module.realtime_notifier.published() == []


def test_inbound_sms_missing_fields_is_acknowledged() -> None:
    client = _client()

    response = client.post(f"{PREFIX}/webhooks/twilio/sms", data={"From": "14155550100"})

    assert response.status_code == 200
    assert _all_messages() == []


def test_enforced_signature_rejects_unsigned_and_accepts_signed_requests() -> None:
    client = _client(signature_mode="enforce")
    form = {"From": "+14155550100", "To": "+15005550006", "Body": "signed hello", "MessageSid": "SM-in-2"}

    unsigned = client.post(f"{PREFIX}/webhooks/twilio/sms", data=form)
    assert unsigned.status_code == 200
    assert _all_messages() == []

    forged = client.post(f"{PREFIX}/webhooks/twilio/sms", data=form, headers={"X-Twilio-Signature": "bogus"})
    assert forged.status_code == 200
    assert _all_messages() == []

    signature = RequestValidator(TWILIO_TOKEN).compute_signature(WEBHOOK_URL, form)
    signed = client.post(f"{PREFIX}/webhooks/twilio/sms", data=form, headers={"X-Twilio-Signature": signature})
    assert signed.status_code == 200
    assert [message.content for message in _all_messages()] == ["signed hello"]

    foreign = {**form, "Body": "wrong account", "AccountSid": "AC-other"}
    foreign_signature = RequestValidator(TWILIO_TOKEN).compute_signature(WEBHOOK_URL, foreign)
    ignored = client.post(
        f"{PREFIX}/webhooks/twilio/sms", data=foreign, headers={"X-Twilio-Signature": foreign_signature}
    )
    assert ignored.status_code == 200
    assert [message.content for message in _all_messages()] == ["signed hello"]


def test_log_only_signature_mode_still_stores() -> None:
    client = _client(signature_mode="log_only")

    response = client.post(
        f"{PREFIX}/webhooks/twilio/sms",
        data={"From": "+14155550100", "To": "+15005550006", "Body": "unsigned but accepted"},
    )

    assert response.status_code == 200
    assert [message.content for message in _all_messages()] == ["unsigned but accepted"]


def test_internal_errors_never_reach_the_provider() -> None:
    client = _client()

    with patch.object(api_module.conversation_service, "append_message", side_effect=RuntimeError("db down")):
        response = client.post(
            f"{PREFIX}/webhooks/twilio/sms",
            data={"From": "+14155550100", "To": "+15005550006", "Body": "lost"},
        )

    assert response.status_code == 200
    assert _all_messages() == []
