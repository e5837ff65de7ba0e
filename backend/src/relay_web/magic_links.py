from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import DateTime, String, Text, create_engine, delete
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .errors import MagicLinkExpiredError, NotFoundError

TOKEN_BYTES = 16


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on round trip.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def generate_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


@dataclass(frozen=True)
class MagicLinkRecord:
    token: str
    conversation_id: str
    message_content: str
    created_by: str | None
    expires_at: datetime
    created_at: datetime


class MagicLinkRepository(Protocol):
    def reset(self) -> None: ...

    def create(self, record: MagicLinkRecord) -> MagicLinkRecord: ...

    def get(self, token: str) -> MagicLinkRecord | None: ...

    def delete(self, token: str) -> bool: ...


class InMemoryMagicLinkRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._links: dict[str, MagicLinkRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._links.clear()

    def create(self, record: MagicLinkRecord) -> MagicLinkRecord:
        with self._lock:
            if record.token in self._links:
                raise ValueError("magic link token already exists")
            self._links[record.token] = record
            return record

    def get(self, token: str) -> MagicLinkRecord | None:
        with self._lock:
            return self._links.get(token)

    def delete(self, token: str) -> bool:
        with self._lock:
            return self._links.pop(token, None) is not None


class MagicLinkBase(DeclarativeBase):
    pass


class _MagicLinkRow(MagicLinkBase):
    __tablename__ = "magic_links"

    token: Mapped[str] = mapped_column(String(64), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    message_content: Mapped[str] = mapped_column(Text, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyMagicLinkRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for RELAY_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            MagicLinkBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_MagicLinkRow))

    def create(self, record: MagicLinkRecord) -> MagicLinkRecord:
        with self._session() as session:
            with session.begin():
                session.add(
                    _MagicLinkRow(
                        token=record.token,
                        conversation_id=record.conversation_id,
                        message_content=record.message_content,
                        created_by=record.created_by,
                        expires_at=record.expires_at,
                        created_at=record.created_at,
                    )
                )
        return record

    def get(self, token: str) -> MagicLinkRecord | None:
        with self._session() as session:
            row = session.get(_MagicLinkRow, token)
            if row is None:
                return None
            return MagicLinkRecord(
                token=row.token,
                conversation_id=row.conversation_id,
                message_content=row.message_content,
                created_by=row.created_by,
                expires_at=_as_utc(row.expires_at),
                created_at=_as_utc(row.created_at),
            )

    def delete(self, token: str) -> bool:
        with self._session() as session:
            with session.begin():
                result = session.execute(delete(_MagicLinkRow).where(_MagicLinkRow.token == token))
                return bool(result.rowcount)


def create_magic_link_repository(*, backend: str, database_url: str) -> MagicLinkRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyMagicLinkRepository(database_url)
    if normalized == "inmemory":
        return InMemoryMagicLinkRepository()
    raise RuntimeError(f"unsupported RELAY_STORE_BACKEND: {backend}")


class MagicLinkService:
    def __init__(self, repository: MagicLinkRepository, *, ttl_hours: int = 24) -> None:
        self._repository = repository
        self._ttl = timedelta(hours=ttl_hours)

    def issue(self, *, conversation_id: str, message_content: str, created_by: str | None) -> MagicLinkRecord:
        now = _now_utc()
        return self._repository.create(
            MagicLinkRecord(
                token=generate_token(),
                conversation_id=conversation_id,
                message_content=message_content,
                created_by=created_by,
                expires_at=now + self._ttl,
                created_at=now,
            )
        )

    def peek(self, token: str) -> MagicLinkRecord | None:
        return self._repository.get(token)

    def discard(self, token: str) -> None:
        self._repository.delete(token)

    def resolve(self, token: str, *, now: datetime | None = None) -> MagicLinkRecord:
        """Return the stored body for ``token`` and consume the link.

        Expired links are deleted as well and raise ``MagicLinkExpiredError``.
        """
        record = self._repository.get(token)
        if record is None:
            raise NotFoundError("Magic link not found")
        current = now or _now_utc()
        if record.expires_at <= current:
            self._repository.delete(token)
            raise MagicLinkExpiredError()
        if not self._repository.delete(token):
            # Another request consumed it first.
            raise NotFoundError("Magic link not found")
        return record
