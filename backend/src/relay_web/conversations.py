from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Any, Iterable, Protocol
from uuid import uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    and_,
    case,
    create_engine,
    delete,
    func,
    or_,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .directory import DirectoryRepository
from .errors import NotAuthenticatedError, NotFoundError
from .models import (
    Attachment,
    ClientAttachmentItem,
    ClientAttachmentListResponse,
    ConversationInboxItem,
    ConversationItem,
    ConversationListResponse,
    MarkReadResponse,
    MessageItem,
    MessageListResponse,
    MessageType,
    SourceType,
)
from .realtime import RealtimeEvent, RealtimeNotifier, conversation_channel

logger = logging.getLogger(__name__)

PREVIEW_LIMIT = 100
SYSTEM_PREVIEW_LIMIT = 80
DEFAULT_MESSAGE_LIMIT = 50


@dataclass(frozen=True)
class ConversationRecord:
    conversation_id: str
    client_id: str
    last_message_at: datetime | None
    last_message_preview: str | None
    created_at: datetime


@dataclass(frozen=True)
class ParticipantRecord:
    conversation_id: str
    user_id: str
    last_read_at: datetime | None
    joined_at: datetime


@dataclass(frozen=True)
class MessageRecord:
    message_id: str
    conversation_id: str
    sender_id: str | None
    type: MessageType
    content: str
    attachments: tuple[dict[str, Any], ...]
    source_type: SourceType
    source_metadata: dict[str, Any]
    created_at: datetime


@dataclass(frozen=True)
class InboxEntry:
    conversation: ConversationRecord
    unread_count: int
    attachment_count: int


class ConversationRepository(Protocol):
    def reset(self) -> None: ...

    def create_or_get_conversation(self, client_id: str) -> tuple[ConversationRecord, bool]: ...

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None: ...

    def get_conversation_by_client(self, client_id: str) -> ConversationRecord | None: ...

    def add_participants(self, conversation_id: str, user_ids: list[str]) -> None: ...

    def list_participants(self, conversation_id: str) -> list[ParticipantRecord]: ...

    def append_message(
        self,
        *,
        conversation_id: str,
        sender_id: str | None,
        type: MessageType,
        content: str,
        attachments: list[dict[str, Any]],
        source_type: SourceType,
        source_metadata: dict[str, Any],
        preview: str,
    ) -> MessageRecord: ...

    def mark_read(self, conversation_id: str, user_id: str, *, at: datetime) -> ParticipantRecord | None: ...

    def list_messages(self, conversation_id: str, *, limit: int | None) -> list[MessageRecord]: ...

    def list_inbox(self, user_id: str) -> list[InboxEntry]: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on round trip.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _preview(content: str, message_type: MessageType) -> str:
    if message_type == "system":
        return f"System: {content[:SYSTEM_PREVIEW_LIMIT]}"
    return content[:PREVIEW_LIMIT]


def _dedupe(user_ids: Iterable[str | None]) -> list[str]:
    return list(dict.fromkeys(user_id for user_id in user_ids if user_id))


def _is_unread(message: MessageRecord, user_id: str, last_read_at: datetime | None) -> bool:
    return message.sender_id != user_id and (last_read_at is None or message.created_at > last_read_at)


def _inbox_sort_key(record: ConversationRecord) -> tuple[bool, datetime]:
    # Conversations without messages sink to the bottom.
    return (record.last_message_at is not None, record.last_message_at or record.created_at)


class InMemoryConversationRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._conversation_counter = count(1)
        self._message_counter = count(1)
        self._conversations: dict[str, ConversationRecord] = {}
        self._conversation_by_client: dict[str, str] = {}
        self._participants: dict[tuple[str, str], ParticipantRecord] = {}
        self._messages: dict[str, list[MessageRecord]] = {}

    def reset(self) -> None:
        with self._lock:
            self._conversation_counter = count(1)
            self._message_counter = count(1)
            self._conversations.clear()
            self._conversation_by_client.clear()
            self._participants.clear()
            self._messages.clear()

    def create_or_get_conversation(self, client_id: str) -> tuple[ConversationRecord, bool]:
        with self._lock:
            existing_id = self._conversation_by_client.get(client_id)
            if existing_id is not None:
                return self._conversations[existing_id], False
            conversation = ConversationRecord(
                conversation_id=f"conv_{next(self._conversation_counter):06d}",
                client_id=client_id,
                last_message_at=None,
                last_message_preview=None,
                created_at=_now_utc(),
            )
            self._conversations[conversation.conversation_id] = conversation
            self._conversation_by_client[client_id] = conversation.conversation_id
            self._messages[conversation.conversation_id] = []
            return conversation, True

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        with self._lock:
            return self._conversations.get(conversation_id)

    def get_conversation_by_client(self, client_id: str) -> ConversationRecord | None:
        with self._lock:
            conversation_id = self._conversation_by_client.get(client_id)
            return self._conversations.get(conversation_id) if conversation_id else None

    def add_participants(self, conversation_id: str, user_ids: list[str]) -> None:
        now = _now_utc()
        with self._lock:
            if conversation_id not in self._conversations:
                raise NotFoundError("Conversation not found")
            for user_id in user_ids:
                self._participants.setdefault(
                    (conversation_id, user_id),
                    ParticipantRecord(conversation_id=conversation_id, user_id=user_id, last_read_at=None, joined_at=now),
                )

    def list_participants(self, conversation_id: str) -> list[ParticipantRecord]:
        with self._lock:
            return [value for (cid, _), value in self._participants.items() if cid == conversation_id]

    def append_message(
        self,
        *,
        conversation_id: str,
        sender_id: str | None,
        type: MessageType,
        content: str,
        attachments: list[dict[str, Any]],
        source_type: SourceType,
        source_metadata: dict[str, Any],
        preview: str,
    ) -> MessageRecord:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                raise NotFoundError("Conversation not found")
            message = MessageRecord(
                message_id=f"msg_{next(self._message_counter):06d}",
                conversation_id=conversation_id,
                sender_id=sender_id,
                type=type,
                content=content,
                attachments=tuple(dict(item) for item in attachments),
                source_type=source_type,
                source_metadata=dict(source_metadata),
                created_at=_now_utc(),
            )
            self._messages[conversation_id].append(message)
            self._conversations[conversation_id] = replace(
                conversation,
                last_message_at=message.created_at,
                last_message_preview=preview,
            )
            if sender_id is not None:
                participant = self._participants.get((conversation_id, sender_id))
                if participant is not None:
                    self._participants[(conversation_id, sender_id)] = replace(
                        participant, last_read_at=message.created_at
                    )
            return message

    def mark_read(self, conversation_id: str, user_id: str, *, at: datetime) -> ParticipantRecord | None:
        with self._lock:
            participant = self._participants.get((conversation_id, user_id))
            if participant is None:
                return None
            updated = replace(participant, last_read_at=at)
            self._participants[(conversation_id, user_id)] = updated
            return updated

    def list_messages(self, conversation_id: str, *, limit: int | None) -> list[MessageRecord]:
        with self._lock:
            messages = list(self._messages.get(conversation_id, []))
        if limit is None:
            return messages
        return messages[-limit:] if limit > 0 else []

    def list_inbox(self, user_id: str) -> list[InboxEntry]:
        entries: list[InboxEntry] = []
        with self._lock:
            for (conversation_id, participant_id), participant in self._participants.items():
                if participant_id != user_id or conversation_id not in self._conversations:
                    continue
                messages = self._messages.get(conversation_id, [])
                entries.append(
                    InboxEntry(
                        conversation=self._conversations[conversation_id],
                        unread_count=sum(
                            1 for message in messages if _is_unread(message, user_id, participant.last_read_at)
                        ),
                        attachment_count=sum(len(message.attachments) for message in messages),
                    )
                )
        return sorted(entries, key=lambda entry: _inbox_sort_key(entry.conversation), reverse=True)


class ConversationsBase(DeclarativeBase):
    pass


class _ConversationRow(ConversationsBase):
    __tablename__ = "conversations"

    conversation_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    # One conversation per client; a conflicting insert means it already exists.
    client_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    last_message_preview: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ParticipantRow(ConversationsBase):
    __tablename__ = "conversation_participants"
    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_conversation_participants_conversation_user"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("conversations.conversation_id"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    last_read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _MessageRow(ConversationsBase):
    __tablename__ = "messages"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    conversation_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("conversations.conversation_id"), nullable=False, index=True
    )
    sender_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    attachments: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    source_type: Mapped[str] = mapped_column(String(16), nullable=False, default="chat")
    source_metadata: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class SqlAlchemyConversationRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for RELAY_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        # SQLite is used in tests. Production Postgres should rely on migrations.
        if database_url.startswith("sqlite"):
            ConversationsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def _insert(self):
        if self._engine.dialect.name == "sqlite":
            return sqlite_insert
        return postgresql_insert

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_MessageRow))
                session.execute(delete(_ParticipantRow))
                session.execute(delete(_ConversationRow))

    def create_or_get_conversation(self, client_id: str) -> tuple[ConversationRecord, bool]:
        existing = self.get_conversation_by_client(client_id)
        if existing is not None:
            return existing, False

        row = _ConversationRow(
            conversation_id=f"conv_{uuid4().hex[:20]}",
            client_id=client_id,
            last_message_at=None,
            last_message_preview=None,
            created_at=_now_utc(),
        )
        try:
            with self._session() as session:
                with session.begin():
                    session.add(row)
        except IntegrityError:
            winner = self.get_conversation_by_client(client_id)
            if winner is None:
                raise
            logger.info("conversation create lost race for client_id=%s", client_id)
            return winner, False
        return self._conversation_record(row), True

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        with self._session() as session:
            row = session.get(_ConversationRow, conversation_id)
            return self._conversation_record(row) if row is not None else None

    def get_conversation_by_client(self, client_id: str) -> ConversationRecord | None:
        with self._session() as session:
            row = session.scalar(select(_ConversationRow).where(_ConversationRow.client_id == client_id))
            return self._conversation_record(row) if row is not None else None

    def add_participants(self, conversation_id: str, user_ids: list[str]) -> None:
        if not user_ids:
            return
        now = _now_utc()
        statement = (
            self._insert()(_ParticipantRow)
            .values([
                {"conversation_id": conversation_id, "user_id": user_id, "last_read_at": None, "joined_at": now}
                for user_id in user_ids
            ])
            .on_conflict_do_nothing(index_elements=["conversation_id", "user_id"])
        )
        with self._session() as session:
            with session.begin():
                if session.get(_ConversationRow, conversation_id) is None:
                    raise NotFoundError("Conversation not found")
                session.execute(statement)

    def list_participants(self, conversation_id: str) -> list[ParticipantRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_ParticipantRow)
                .where(_ParticipantRow.conversation_id == conversation_id)
                .order_by(_ParticipantRow.id.asc())
            ).all()
            return [self._participant_record(row) for row in rows]

    def append_message(
        self,
        *,
        conversation_id: str,
        sender_id: str | None,
        type: MessageType,
        content: str,
        attachments: list[dict[str, Any]],
        source_type: SourceType,
        source_metadata: dict[str, Any],
        preview: str,
    ) -> MessageRecord:
        now = _now_utc()
        with self._session() as session:
            with session.begin():
                conversation = session.get(_ConversationRow, conversation_id)
                if conversation is None:
                    raise NotFoundError("Conversation not found")
                row = _MessageRow(
                    message_id=f"msg_{uuid4().hex[:20]}",
                    conversation_id=conversation_id,
                    sender_id=sender_id,
                    type=type,
                    content=content,
                    attachments=[dict(item) for item in attachments],
                    source_type=source_type,
                    source_metadata=dict(source_metadata),
                    created_at=now,
                )
                session.add(row)
                conversation.last_message_at = now
                conversation.last_message_preview = preview
                if sender_id is not None:
                    session.execute(
                        update(_ParticipantRow)
                        .where(_ParticipantRow.conversation_id == conversation_id)
                        .where(_ParticipantRow.user_id == sender_id)
                        .values(last_read_at=now)
                    )
                session.flush()
                return self._message_record(row)

    def mark_read(self, conversation_id: str, user_id: str, *, at: datetime) -> ParticipantRecord | None:
        with self._session() as session:
            with session.begin():
                row = session.scalar(
                    select(_ParticipantRow)
                    .where(_ParticipantRow.conversation_id == conversation_id)
                    .where(_ParticipantRow.user_id == user_id)
                )
                if row is None:
                    return None
                row.last_read_at = at
                session.flush()
                return self._participant_record(row)

    def list_messages(self, conversation_id: str, *, limit: int | None) -> list[MessageRecord]:
        query = (
            select(_MessageRow)
            .where(_MessageRow.conversation_id == conversation_id)
            .order_by(_MessageRow.created_at.desc(), _MessageRow.seq.desc())
        )
        if limit is not None:
            query = query.limit(max(limit, 0))
        with self._session() as session:
            rows = session.scalars(query).all()
            # Newest-first from the query, returned oldest-first.
            return [self._message_record(row) for row in reversed(rows)]

    def list_inbox(self, user_id: str) -> list[InboxEntry]:
        has_message = _MessageRow.seq.is_not(None)
        unread = func.coalesce(
            func.sum(
                case(
                    (
                        and_(
                            has_message,
                            or_(_MessageRow.sender_id.is_(None), _MessageRow.sender_id != user_id),
                            or_(
                                _ParticipantRow.last_read_at.is_(None),
                                _MessageRow.created_at > _ParticipantRow.last_read_at,
                            ),
                        ),
                        1,
                    ),
                    else_=0,
                )
            ),
            0,
        )
        attachments = func.coalesce(
            func.sum(case((has_message, func.json_array_length(_MessageRow.attachments)), else_=0)),
            0,
        )
        query = (
            select(_ConversationRow, unread, attachments)
            .join(
                _ParticipantRow,
                and_(
                    _ParticipantRow.conversation_id == _ConversationRow.conversation_id,
                    _ParticipantRow.user_id == user_id,
                ),
            )
            .outerjoin(_MessageRow, _MessageRow.conversation_id == _ConversationRow.conversation_id)
            .group_by(_ConversationRow.conversation_id, _ParticipantRow.last_read_at)
        )
        with self._session() as session:
            entries = [
                InboxEntry(
                    conversation=self._conversation_record(row),
                    unread_count=int(unread_count or 0),
                    attachment_count=int(attachment_count or 0),
                )
                for row, unread_count, attachment_count in session.execute(query).all()
            ]
        return sorted(entries, key=lambda entry: _inbox_sort_key(entry.conversation), reverse=True)

    @staticmethod
    def _conversation_record(row: _ConversationRow) -> ConversationRecord:
        return ConversationRecord(
            conversation_id=row.conversation_id,
            client_id=row.client_id,
            last_message_at=_as_utc(row.last_message_at),
            last_message_preview=row.last_message_preview,
            created_at=_as_utc(row.created_at),  # type: ignore[arg-type]
        )

    @staticmethod
    def _participant_record(row: _ParticipantRow) -> ParticipantRecord:
        return ParticipantRecord(
            conversation_id=row.conversation_id,
            user_id=row.user_id,
            last_read_at=_as_utc(row.last_read_at),
            joined_at=_as_utc(row.joined_at),  # type: ignore[arg-type]
        )

    @staticmethod
    def _message_record(row: _MessageRow) -> MessageRecord:
        return MessageRecord(
            message_id=row.message_id,
            conversation_id=row.conversation_id,
            sender_id=row.sender_id,
            type=row.type,  # type: ignore[arg-type]
            content=row.content,
            attachments=tuple(dict(item) for item in (row.attachments or [])),
            source_type=row.source_type,  # type: ignore[arg-type]
            source_metadata=dict(row.source_metadata or {}),
            created_at=_as_utc(row.created_at),  # type: ignore[arg-type]
        )


def create_conversation_repository(*, backend: str, database_url: str) -> ConversationRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyConversationRepository(database_url)
    if normalized == "inmemory":
        return InMemoryConversationRepository()
    raise RuntimeError(f"unsupported RELAY_STORE_BACKEND: {backend}")


class ConversationService:
    def __init__(
        self,
        *,
        repository: ConversationRepository,
        directory: DirectoryRepository,
        notifier: RealtimeNotifier,
    ) -> None:
        self._repository = repository
        self._directory = directory
        self._notifier = notifier

    def reset(self) -> None:
        self._repository.reset()

    def get_or_create(
        self,
        client_id: str,
        *,
        caller_id: str | None,
        service_access: bool = False,
    ) -> ConversationRecord:
        """Return the client's conversation, creating it and its participants on first contact.

        ``service_access`` is for unauthenticated provider callbacks; only the
        client and assigned staff are added in that case.
        """
        if caller_id is None and not service_access:
            raise NotAuthenticatedError()

        conversation, created = self._repository.create_or_get_conversation(client_id)
        client = self._directory.get_client_contact(client_id)
        participants = _dedupe([
            client.client_id if client is not None else None,
            caller_id if created else None,
            *self._directory.assigned_staff_ids(client_id),
        ])
        # Idempotent upsert; also repairs a conversation whose participant write never landed.
        self._repository.add_participants(conversation.conversation_id, participants)
        if created:
            logger.info(
                "conversation created conversation_id=%s client_id=%s participants=%d",
                conversation.conversation_id,
                client_id,
                len(participants),
            )
        return conversation

    def get(self, conversation_id: str) -> ConversationRecord:
        conversation = self._repository.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found")
        return conversation

    def find_by_client(self, client_id: str) -> ConversationRecord | None:
        return self._repository.get_conversation_by_client(client_id)

    def is_participant(self, conversation_id: str, user_id: str) -> bool:
        return any(value.user_id == user_id for value in self._repository.list_participants(conversation_id))

    def append_message(
        self,
        conversation_id: str,
        *,
        sender_id: str | None,
        type: MessageType,
        content: str,
        attachments: list[dict[str, Any]] | None = None,
        source_type: SourceType = "chat",
        source_metadata: dict[str, Any] | None = None,
    ) -> MessageRecord:
        message = self._repository.append_message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            type=type,
            content=content,
            attachments=list(attachments or []),
            source_type=source_type,
            source_metadata=dict(source_metadata or {}),
            preview=_preview(content, type),
        )
        self._notifier.publish(
            RealtimeEvent(
                channel=conversation_channel(conversation_id),
                event_type="message.created",
                payload=self._to_message_item(message).model_dump(mode="json"),
            )
        )
        return message

    def append_system_message(
        self,
        conversation_id: str,
        content: str,
        *,
        source_type: SourceType = "chat",
        metadata: dict[str, Any] | None = None,
    ) -> MessageRecord:
        return self.append_message(
            conversation_id,
            sender_id=None,
            type="system",
            content=content,
            source_type=source_type,
            source_metadata=metadata,
        )

    def send_chat_message(
        self,
        conversation_id: str,
        *,
        sender_id: str,
        content: str,
        attachments: list[Attachment],
    ) -> MessageItem:
        message = self.append_message(
            conversation_id,
            sender_id=sender_id,
            type="user",
            content=content,
            attachments=[attachment.model_dump() for attachment in attachments],
            source_type="chat",
        )
        return self._to_message_item(message)

    def mark_read(self, conversation_id: str, user_id: str) -> MarkReadResponse:
        self.get(conversation_id)
        participant = self._repository.mark_read(conversation_id, user_id, at=_now_utc())
        if participant is None or participant.last_read_at is None:
            raise NotFoundError("Not a participant in this conversation")
        return MarkReadResponse(
            conversation_id=conversation_id,
            user_id=user_id,
            last_read_at=participant.last_read_at,
        )

    def list_messages(self, conversation_id: str, *, limit: int = DEFAULT_MESSAGE_LIMIT) -> MessageListResponse:
        self.get(conversation_id)
        messages = self._repository.list_messages(conversation_id, limit=limit)
        return MessageListResponse(
            conversation_id=conversation_id,
            items=[self._to_message_item(value) for value in messages],
        )

    def list_conversations(self, user_id: str) -> ConversationListResponse:
        items: list[ConversationInboxItem] = []
        for entry in self._repository.list_inbox(user_id):
            conversation = entry.conversation
            client = self._directory.get_client_contact(conversation.client_id)
            client_name = None
            if client is not None:
                client_name = " ".join(part for part in (client.first_name, client.last_name) if part) or None
            items.append(
                ConversationInboxItem(
                    **self.to_conversation_item(conversation).model_dump(),
                    client_name=client_name,
                    client_email=client.email if client is not None else None,
                    company_name=client.company_name if client is not None else None,
                    unread_count=entry.unread_count,
                    attachment_count=entry.attachment_count,
                )
            )
        return ConversationListResponse(items=items)

    def client_attachments(self, client_id: str) -> ClientAttachmentListResponse:
        conversation = self._repository.get_conversation_by_client(client_id)
        if conversation is None:
            return ClientAttachmentListResponse(client_id=client_id, items=[])
        items: list[ClientAttachmentItem] = []
        for message in reversed(self._repository.list_messages(conversation.conversation_id, limit=None)):
            for attachment in message.attachments:
                items.append(
                    ClientAttachmentItem(
                        **Attachment.model_validate(attachment).model_dump(),
                        message_id=message.message_id,
                        conversation_id=message.conversation_id,
                        uploaded_at=message.created_at,
                        uploaded_by=message.sender_id,
                    )
                )
        return ClientAttachmentListResponse(client_id=client_id, items=items)

    @staticmethod
    def to_conversation_item(record: ConversationRecord) -> ConversationItem:
        return ConversationItem(
            conversation_id=record.conversation_id,
            client_id=record.client_id,
            last_message_at=record.last_message_at,
            last_message_preview=record.last_message_preview,
            created_at=record.created_at,
        )

    @staticmethod
    def _to_message_item(record: MessageRecord) -> MessageItem:
        return MessageItem(
            message_id=record.message_id,
            conversation_id=record.conversation_id,
            sender_id=record.sender_id,
            type=record.type,
            content=record.content,
            attachments=[Attachment.model_validate(item) for item in record.attachments],
            source_type=record.source_type,
            source_metadata=record.source_metadata,
            created_at=record.created_at,
        )
