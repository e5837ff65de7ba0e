from __future__ import annotations

import logging

from fastapi import APIRouter, Query, Request, Response, status
from fastapi.responses import JSONResponse

from .cipher import SettingsCipher
from .config import Settings, get_settings
from .conversations import ConversationService, create_conversation_repository
from .directory import create_directory_repository
from .email_dispatch import EmailDispatcher
from .email_logs import create_email_log_repository
from .email_sender import create_email_sender
from .errors import NotAuthenticatedError, NotAuthorizedError
from .inbound import TWIML_EMPTY, InboundSmsAdapter
from .magic_links import MagicLinkService, create_magic_link_repository
from .models import (
    ChatMessageRequest,
    ClientAttachmentListResponse,
    ConversationCreateRequest,
    ConversationItem,
    ConversationListResponse,
    EmailLogItem,
    EmailLogListResponse,
    EmailSendResponse,
    EmailTestRequest,
    MagicLinkResponse,
    MarkReadResponse,
    MessageItem,
    MessageListResponse,
    MilestoneCompleteEmailRequest,
    SmsSendRequest,
    SmsSendResponse,
    SmsSettingsPayload,
    SmsSettingsResponse,
    SmsSettingsTestRequest,
    SuccessResponse,
    TaskAssignedEmailRequest,
    WelcomeEmailRequest,
)
from .realtime import InMemoryRealtimeNotifier
from .session_tokens import SessionTokenError, SessionTokenPayload, decode_session_token
from .settings_store import SmsProviderConfig, SmsSettingsService, create_settings_repository
from .sms import SmsDispatcher
from .sms_sender import SmsSender, StubSmsSender, TwilioSmsSender, create_sms_sender

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/relay", tags=["relay"])

directory_repo = create_directory_repository(
    backend=_settings.store_backend,
    database_url=_settings.database_url,
)
conversation_repo = create_conversation_repository(
    backend=_settings.store_backend,
    database_url=_settings.database_url,
)
settings_repo = create_settings_repository(
    backend=_settings.store_backend,
    database_url=_settings.database_url,
)
magic_link_repo = create_magic_link_repository(
    backend=_settings.store_backend,
    database_url=_settings.database_url,
)
email_log_repo = create_email_log_repository(
    backend=_settings.store_backend,
    database_url=_settings.database_url,
)
realtime_notifier = InMemoryRealtimeNotifier()
stub_sms_sender = StubSmsSender()
email_sender = create_email_sender(_settings)

conversation_service = ConversationService(
    repository=conversation_repo,
    directory=directory_repo,
    notifier=realtime_notifier,
)
sms_settings_service = SmsSettingsService(settings_repo, directory_repo, SettingsCipher.from_settings(_settings))
magic_link_service = MagicLinkService(magic_link_repo, ttl_hours=_settings.magic_link_ttl_hours)


def _sms_sender_for(config: SmsProviderConfig) -> SmsSender:
    if _settings.sms_sender_type == "stub":
        return stub_sms_sender
    return create_sms_sender(_settings.sms_sender_type, config)


sms_dispatcher = SmsDispatcher(
    settings=_settings,
    conversations=conversation_service,
    sms_settings=sms_settings_service,
    magic_links=magic_link_service,
    sender_factory=_sms_sender_for,
)
email_dispatcher = EmailDispatcher(
    settings=_settings,
    directory=directory_repo,
    conversations=conversation_service,
    email_logs=email_log_repo,
    sender=email_sender,
)
inbound_adapter = InboundSmsAdapter(
    settings=_settings,
    directory=directory_repo,
    conversations=conversation_service,
    sms_settings=sms_settings_service,
)


def configure_runtime(settings: Settings) -> None:
    """Rebuild every module-level store and service from ``settings``."""
    global _settings, directory_repo, conversation_repo, settings_repo, magic_link_repo, email_log_repo
    global realtime_notifier, stub_sms_sender, email_sender
    global conversation_service, sms_settings_service, magic_link_service
    global sms_dispatcher, email_dispatcher, inbound_adapter

    _settings = settings
    directory_repo = create_directory_repository(backend=settings.store_backend, database_url=settings.database_url)
    conversation_repo = create_conversation_repository(
        backend=settings.store_backend,
        database_url=settings.database_url,
    )
    settings_repo = create_settings_repository(backend=settings.store_backend, database_url=settings.database_url)
    magic_link_repo = create_magic_link_repository(
        backend=settings.store_backend,
        database_url=settings.database_url,
    )
    email_log_repo = create_email_log_repository(backend=settings.store_backend, database_url=settings.database_url)
    realtime_notifier = InMemoryRealtimeNotifier()
    stub_sms_sender = StubSmsSender()
    email_sender = create_email_sender(settings)

    conversation_service = ConversationService(
        repository=conversation_repo,
        directory=directory_repo,
        notifier=realtime_notifier,
    )
    sms_settings_service = SmsSettingsService(settings_repo, directory_repo, SettingsCipher.from_settings(settings))
    magic_link_service = MagicLinkService(magic_link_repo, ttl_hours=settings.magic_link_ttl_hours)
    sms_dispatcher = SmsDispatcher(
        settings=settings,
        conversations=conversation_service,
        sms_settings=sms_settings_service,
        magic_links=magic_link_service,
        sender_factory=_sms_sender_for,
    )
    email_dispatcher = EmailDispatcher(
        settings=settings,
        directory=directory_repo,
        conversations=conversation_service,
        email_logs=email_log_repo,
        sender=email_sender,
    )
    inbound_adapter = InboundSmsAdapter(
        settings=settings,
        directory=directory_repo,
        conversations=conversation_service,
        sms_settings=sms_settings_service,
    )


def reset_runtime_state_for_tests() -> None:
    directory_repo.reset()
    conversation_service.reset()
    settings_repo.reset()
    magic_link_repo.reset()
    email_log_repo.reset()
    realtime_notifier.reset()
    stub_sms_sender.sent.clear()


def _require_user(request: Request) -> SessionTokenPayload:
    auth_header = request.headers.get("Authorization", "")
    token = auth_header.removeprefix("Bearer ").strip()
    if not token:
        raise NotAuthenticatedError()
    try:
        return decode_session_token(token, secret=_settings.session_token_secret)
    except SessionTokenError as exc:
        raise NotAuthenticatedError() from exc


def _require_staff(request: Request) -> SessionTokenPayload:
    session = _require_user(request)
    if not session.is_staff:
        raise NotAuthorizedError()
    return session


def _require_admin(request: Request) -> SessionTokenPayload:
    session = _require_user(request)
    if not session.is_admin:
        raise NotAuthorizedError()
    return session


def _require_conversation_access(session: SessionTokenPayload, conversation_id: str) -> None:
    conversation_service.get(conversation_id)
    if session.is_staff:
        return
    if not conversation_service.is_participant(conversation_id, session.user_id):
        raise NotAuthorizedError()


@router.post("/conversations", response_model=ConversationItem)
def get_or_create_conversation(payload: ConversationCreateRequest, request: Request) -> ConversationItem:
    session = _require_staff(request)
    record = conversation_service.get_or_create(payload.client_id, caller_id=session.user_id)
    return conversation_service.to_conversation_item(record)


@router.get("/conversations", response_model=ConversationListResponse)
def list_conversations(request: Request) -> ConversationListResponse:
    session = _require_user(request)
    return conversation_service.list_conversations(session.user_id)


@router.get("/conversations/{conversation_id}/messages", response_model=MessageListResponse)
def list_messages(
    conversation_id: str,
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
) -> MessageListResponse:
    session = _require_user(request)
    _require_conversation_access(session, conversation_id)
    return conversation_service.list_messages(conversation_id, limit=limit)


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=MessageItem,
    status_code=status.HTTP_201_CREATED,
)
def send_chat_message(conversation_id: str, payload: ChatMessageRequest, request: Request) -> MessageItem:
    session = _require_user(request)
    _require_conversation_access(session, conversation_id)
    return conversation_service.send_chat_message(
        conversation_id,
        sender_id=session.user_id,
        content=payload.content,
        attachments=payload.attachments,
    )


@router.post("/conversations/{conversation_id}/read", response_model=MarkReadResponse)
def mark_conversation_read(conversation_id: str, request: Request) -> MarkReadResponse:
    session = _require_user(request)
    return conversation_service.mark_read(conversation_id, session.user_id)


@router.post("/conversations/{conversation_id}/sms", response_model=SmsSendResponse)
def send_sms(conversation_id: str, payload: SmsSendRequest, request: Request) -> SmsSendResponse:
    session = _require_staff(request)
    return sms_dispatcher.send(
        conversation_id,
        caller_id=session.user_id,
        content=payload.content,
        recipient_phone=payload.recipient_phone,
    )


@router.get("/clients/{client_id}/attachments", response_model=ClientAttachmentListResponse)
def list_client_attachments(client_id: str, request: Request) -> ClientAttachmentListResponse:
    _require_staff(request)
    return conversation_service.client_attachments(client_id)


@router.post("/emails/welcome", response_model=EmailSendResponse)
def send_welcome_email(payload: WelcomeEmailRequest, request: Request) -> EmailSendResponse:
    _require_staff(request)
    return email_dispatcher.send_welcome(payload.client_id)


@router.post("/emails/milestone-complete", response_model=EmailSendResponse)
def send_milestone_complete_email(payload: MilestoneCompleteEmailRequest, request: Request) -> EmailSendResponse:
    _require_staff(request)
    return email_dispatcher.send_milestone_complete(payload)


@router.post("/emails/task-assigned", response_model=EmailSendResponse)
def send_task_assigned_email(payload: TaskAssignedEmailRequest, request: Request) -> EmailSendResponse:
    _require_staff(request)
    return email_dispatcher.send_task_assigned(payload)


@router.post("/admin/emails/test", response_model=EmailSendResponse)
def send_test_email(payload: EmailTestRequest, request: Request) -> EmailSendResponse:
    session = _require_admin(request)
    return email_dispatcher.send_test(
        payload.template,
        recipient_email=payload.recipient_email,
        caller_id=session.user_id,
    )


@router.get("/admin/emails/logs", response_model=EmailLogListResponse)
def list_email_logs(request: Request, limit: int = Query(default=100, ge=1, le=500)) -> EmailLogListResponse:
    _require_admin(request)
    items = [
        EmailLogItem(
            log_id=record.log_id,
            recipient_id=record.recipient_id,
            recipient_email=record.recipient_email,
            type=record.type,
            subject=record.subject,
            status=record.status,
            error=record.error,
            metadata=record.metadata,
            created_at=record.created_at,
        )
        for record in email_log_repo.list_recent(limit=limit)
    ]
    return EmailLogListResponse(items=items)


@router.get("/admin/sms-settings", response_model=SmsSettingsResponse)
def read_sms_settings(request: Request) -> SmsSettingsResponse:
    session = _require_admin(request)
    return SmsSettingsResponse(settings=SmsSettingsPayload(**sms_settings_service.read(user_id=session.user_id)))


@router.post("/admin/sms-settings", response_model=SuccessResponse)
def save_sms_settings(payload: SmsSettingsPayload, request: Request) -> SuccessResponse:
    session = _require_admin(request)
    sms_settings_service.save(
        user_id=session.user_id,
        phone_number=payload.phone_number,
        account_sid=payload.account_sid,
        auth_token=payload.auth_token,
    )
    return SuccessResponse(success=True)


@router.post("/admin/sms-settings/test", response_model=SuccessResponse)
def test_sms_settings(payload: SmsSettingsTestRequest, request: Request):
    _require_admin(request)
    check = TwilioSmsSender(account_sid=payload.account_sid, auth_token=payload.auth_token).verify_credentials()
    if not check.ok:
        logger.warning("sms credential check failed account_sid=%s", payload.account_sid[:6])
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=SuccessResponse(success=False, error=check.error_message).model_dump(),
        )
    return SuccessResponse(success=True)


@router.get("/magic-links/{token}", response_model=MagicLinkResponse)
def resolve_magic_link(token: str) -> MagicLinkResponse:
    record = magic_link_service.resolve(token)
    return MagicLinkResponse(
        conversation_id=record.conversation_id,
        message_content=record.message_content,
        expires_at=record.expires_at,
    )


@router.post("/webhooks/twilio/sms")
async def receive_twilio_sms(request: Request) -> Response:
    form = await request.form()
    fields = {key: str(value) for key, value in form.items()}
    outcome = inbound_adapter.handle(form=fields, url=str(request.url), headers=dict(request.headers))
    logger.debug("twilio inbound sms handled reason=%s", outcome.reason)
    return Response(content=TWIML_EMPTY, media_type="text/xml")
