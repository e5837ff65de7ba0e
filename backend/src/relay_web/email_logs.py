from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy import JSON, DateTime, String, Text, create_engine, delete, func, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import EmailStatus


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EmailLogRecord:
    log_id: str
    recipient_id: str
    recipient_email: str
    type: str
    subject: str
    status: EmailStatus
    error: str | None
    metadata: dict[str, Any]
    created_at: datetime


class EmailLogRepository(Protocol):
    def reset(self) -> None: ...

    def append(
        self,
        *,
        recipient_id: str,
        recipient_email: str,
        type: str,
        subject: str,
        status: EmailStatus,
        error: str | None,
        metadata: dict[str, Any],
    ) -> EmailLogRecord: ...

    def list_recent(self, *, limit: int) -> list[EmailLogRecord]: ...

    def count_for_recipient(self, recipient_id: str) -> int: ...


class InMemoryEmailLogRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._counter = count(1)
        self._logs: list[EmailLogRecord] = []

    def reset(self) -> None:
        with self._lock:
            self._counter = count(1)
            self._logs.clear()

    def append(
        self,
        *,
        recipient_id: str,
        recipient_email: str,
        type: str,
        subject: str,
        status: EmailStatus,
        error: str | None,
        metadata: dict[str, Any],
    ) -> EmailLogRecord:
        with self._lock:
            record = EmailLogRecord(
                log_id=f"elog_{next(self._counter):06d}",
                recipient_id=recipient_id,
                recipient_email=recipient_email,
                type=type,
                subject=subject,
                status=status,
                error=error,
                metadata=dict(metadata),
                created_at=_now_utc(),
            )
            self._logs.append(record)
            return record

    def list_recent(self, *, limit: int) -> list[EmailLogRecord]:
        with self._lock:
            return list(reversed(self._logs))[:limit]

    def count_for_recipient(self, recipient_id: str) -> int:
        with self._lock:
            return sum(1 for record in self._logs if record.recipient_id == recipient_id)


class EmailLogBase(DeclarativeBase):
    pass


class _EmailLogRow(EmailLogBase):
    __tablename__ = "email_logs"

    log_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    recipient_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    recipient_email: Mapped[str] = mapped_column(String(320), nullable=False)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    subject: Mapped[str] = mapped_column(String(512), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class SqlAlchemyEmailLogRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for RELAY_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            EmailLogBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_EmailLogRow))

    def append(
        self,
        *,
        recipient_id: str,
        recipient_email: str,
        type: str,
        subject: str,
        status: EmailStatus,
        error: str | None,
        metadata: dict[str, Any],
    ) -> EmailLogRecord:
        row = _EmailLogRow(
            log_id=f"elog_{uuid4().hex[:20]}",
            recipient_id=recipient_id,
            recipient_email=recipient_email,
            type=type,
            subject=subject,
            status=status,
            error=error,
            metadata_json=dict(metadata),
            created_at=_now_utc(),
        )
        with self._session() as session:
            with session.begin():
                session.add(row)
        return self._record(row)

    def list_recent(self, *, limit: int) -> list[EmailLogRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_EmailLogRow).order_by(_EmailLogRow.created_at.desc()).limit(limit)
            ).all()
            return [self._record(row) for row in rows]

    def count_for_recipient(self, recipient_id: str) -> int:
        with self._session() as session:
            return int(
                session.scalar(
                    select(func.count()).select_from(_EmailLogRow).where(_EmailLogRow.recipient_id == recipient_id)
                )
                or 0
            )

    @staticmethod
    def _record(row: _EmailLogRow) -> EmailLogRecord:
        created_at = row.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return EmailLogRecord(
            log_id=row.log_id,
            recipient_id=row.recipient_id,
            recipient_email=row.recipient_email,
            type=row.type,
            subject=row.subject,
            status=row.status,  # type: ignore[arg-type]
            error=row.error,
            metadata=dict(row.metadata_json or {}),
            created_at=created_at,
        )


def create_email_log_repository(*, backend: str, database_url: str) -> EmailLogRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyEmailLogRepository(database_url)
    if normalized == "inmemory":
        return InMemoryEmailLogRepository()
    raise RuntimeError(f"unsupported RELAY_STORE_BACKEND: {backend}")
