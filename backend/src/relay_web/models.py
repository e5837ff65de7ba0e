from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

Role = Literal["admin", "team_member", "client"]
MessageType = Literal["user", "system"]
SourceType = Literal["chat", "sms", "email"]
EmailType = Literal["welcome", "milestone_complete", "task_assigned"]
EmailStatus = Literal["sent", "failed"]
EmailTestTemplate = Literal["welcome", "milestone", "task"]
TaskPriority = Literal["low", "medium", "high", "urgent"]

STAFF_ROLES: frozenset[str] = frozenset({"admin", "team_member"})


def _strip_required(value: str, *, field_name: str) -> str:
    normalized = str(value).strip()
    if not normalized:
        raise ValueError(f"{field_name} cannot be blank")
    return normalized


def _require_text(value: str, *, field_name: str) -> str:
    # Message bodies are delivered byte for byte, so only reject blanks.
    if not value.strip():
        raise ValueError(f"{field_name} cannot be blank")
    return value


def _strip_optional(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


class Attachment(BaseModel):
    name: str = Field(min_length=1, max_length=512)
    url: str = Field(min_length=1, max_length=2048)
    size: int = Field(default=0, ge=0)
    type: str = Field(default="application/octet-stream", max_length=256)


class ConversationCreateRequest(BaseModel):
    client_id: str = Field(min_length=1, max_length=64)

    @field_validator("client_id")
    @classmethod
    def _normalize_client_id(cls, value: str) -> str:
        return _strip_required(value, field_name="client_id")


class ConversationItem(BaseModel):
    conversation_id: str
    client_id: str
    last_message_at: datetime | None = None
    last_message_preview: str | None = None
    created_at: datetime


class ConversationInboxItem(ConversationItem):
    client_name: str | None = None
    client_email: str | None = None
    company_name: str | None = None
    unread_count: int = 0
    attachment_count: int = 0


class ConversationListResponse(BaseModel):
    items: list[ConversationInboxItem]


class MessageItem(BaseModel):
    message_id: str
    conversation_id: str
    sender_id: str | None = None
    type: MessageType
    content: str
    attachments: list[Attachment] = Field(default_factory=list)
    source_type: SourceType
    source_metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class MessageListResponse(BaseModel):
    conversation_id: str
    items: list[MessageItem]


class ChatMessageRequest(BaseModel):
    content: str = Field(default="", max_length=10000)
    attachments: list[Attachment] = Field(default_factory=list, max_length=20)

    @field_validator("content")
    @classmethod
    def _normalize_content(cls, value: str) -> str:
        return value if value.strip() else ""

    @model_validator(mode="after")
    def _require_content_or_attachment(self) -> ChatMessageRequest:
        if not self.content and not self.attachments:
            raise ValueError("content or attachments are required")
        return self


class MarkReadResponse(BaseModel):
    conversation_id: str
    user_id: str
    last_read_at: datetime


class SmsSendRequest(BaseModel):
    content: str = Field(min_length=1, max_length=10000)
    recipient_phone: str = Field(min_length=1, max_length=64)

    @field_validator("content")
    @classmethod
    def _normalize_content(cls, value: str) -> str:
        return _require_text(value, field_name="content")

    @field_validator("recipient_phone")
    @classmethod
    def _normalize_phone_input(cls, value: str) -> str:
        normalized = _strip_required(value, field_name="recipient_phone")
        if not any(ch.isdigit() for ch in normalized):
            raise ValueError("recipient_phone must contain digits")
        return normalized


class SmsSendResponse(BaseModel):
    success: bool
    message_sid: str | None = None
    truncated: bool
    magic_link: str | None = None
    message_id: str


class ClientAttachmentItem(Attachment):
    message_id: str
    conversation_id: str
    uploaded_at: datetime
    uploaded_by: str | None = None


class ClientAttachmentListResponse(BaseModel):
    client_id: str
    items: list[ClientAttachmentItem]


class WelcomeEmailRequest(BaseModel):
    client_id: str = Field(min_length=1, max_length=64)


class MilestoneCompleteEmailRequest(BaseModel):
    client_id: str = Field(min_length=1, max_length=64)
    milestone_id: str = Field(min_length=1, max_length=64)
    milestone_title: str = Field(min_length=1, max_length=256)
    service_id: str = Field(min_length=1, max_length=64)
    next_steps: str | None = Field(default=None, max_length=4000)

    @field_validator("milestone_title")
    @classmethod
    def _normalize_title(cls, value: str) -> str:
        return _strip_required(value, field_name="milestone_title")

    @field_validator("next_steps")
    @classmethod
    def _normalize_next_steps(cls, value: str | None) -> str | None:
        return _strip_optional(value)


class TaskAssignedEmailRequest(BaseModel):
    assignee_id: str = Field(min_length=1, max_length=64)
    task_id: str = Field(min_length=1, max_length=64)
    task_title: str = Field(min_length=1, max_length=256)
    task_description: str | None = Field(default=None, max_length=4000)
    due_date: str | None = Field(default=None, max_length=64)
    priority: TaskPriority = "medium"
    service_id: str | None = Field(default=None, max_length=64)
    milestone_id: str | None = Field(default=None, max_length=64)

    @field_validator("task_title")
    @classmethod
    def _normalize_title(cls, value: str) -> str:
        return _strip_required(value, field_name="task_title")

    @field_validator("task_description", "due_date")
    @classmethod
    def _normalize_optional_text(cls, value: str | None) -> str | None:
        return _strip_optional(value)


class EmailTestRequest(BaseModel):
    template: EmailTestTemplate
    recipient_email: str = Field(min_length=3, max_length=320)

    @field_validator("recipient_email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        normalized = _strip_required(value, field_name="recipient_email")
        if "@" not in normalized:
            raise ValueError("recipient_email must be an email address")
        return normalized


class EmailSendResponse(BaseModel):
    success: bool
    status: EmailStatus
    log_id: str
    subject: str
    provider_message_id: str | None = None
    error: str | None = None


class EmailLogItem(BaseModel):
    log_id: str
    recipient_id: str
    recipient_email: str
    type: str
    subject: str
    status: EmailStatus
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class EmailLogListResponse(BaseModel):
    items: list[EmailLogItem]


class SmsSettingsPayload(BaseModel):
    phone_number: str = Field(default="", max_length=64)
    account_sid: str = Field(default="", max_length=128)
    auth_token: str = Field(default="", max_length=256)

    @field_validator("phone_number", "account_sid", "auth_token")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class SmsSettingsResponse(BaseModel):
    settings: SmsSettingsPayload


class SmsSettingsTestRequest(BaseModel):
    account_sid: str = Field(min_length=1, max_length=128)
    auth_token: str = Field(min_length=1, max_length=256)


class SuccessResponse(BaseModel):
    success: bool
    error: str | None = None


class MagicLinkResponse(BaseModel):
    conversation_id: str
    message_content: str
    expires_at: datetime
