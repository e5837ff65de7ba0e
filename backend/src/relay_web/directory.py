"""Read access to the profiles/services schema owned by the CRUD side of the product.

The relay never creates clients or staff in production; the upsert methods exist
for seeding and tests.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import DateTime, ForeignKey, String, create_engine, delete, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import Role


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ProfileRecord:
    user_id: str
    email: str
    first_name: str | None
    last_name: str | None
    role: Role
    created_at: datetime

    @property
    def display_name(self) -> str:
        parts = [part for part in (self.first_name, self.last_name) if part]
        return " ".join(parts) or self.email


@dataclass(frozen=True)
class ClientContactRecord:
    client_id: str
    email: str
    first_name: str | None
    last_name: str | None
    phone: str | None
    company_name: str | None


@dataclass(frozen=True)
class ServiceRecord:
    service_id: str
    client_id: str
    name: str
    assigned_to: str | None


class DirectoryRepository(Protocol):
    def reset(self) -> None: ...

    def upsert_profile(
        self,
        *,
        user_id: str,
        email: str,
        role: Role,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> ProfileRecord: ...

    def upsert_client_profile(self, *, client_id: str, phone: str | None, company_name: str | None = None) -> None: ...

    def upsert_service(self, *, service_id: str, client_id: str, name: str, assigned_to: str | None) -> None: ...

    def get_profile(self, user_id: str) -> ProfileRecord | None: ...

    def get_client_contact(self, client_id: str) -> ClientContactRecord | None: ...

    def list_client_contacts_with_phone(self) -> list[ClientContactRecord]: ...

    def get_service(self, service_id: str) -> ServiceRecord | None: ...

    def assigned_staff_ids(self, client_id: str) -> list[str]: ...

    def find_admin(self) -> ProfileRecord | None: ...


class InMemoryDirectoryRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._profiles: dict[str, ProfileRecord] = {}
        self._client_profiles: dict[str, tuple[str | None, str | None]] = {}
        self._services: dict[str, ServiceRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._profiles.clear()
            self._client_profiles.clear()
            self._services.clear()

    def upsert_profile(
        self,
        *,
        user_id: str,
        email: str,
        role: Role,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> ProfileRecord:
        with self._lock:
            existing = self._profiles.get(user_id)
            record = ProfileRecord(
                user_id=user_id,
                email=email,
                first_name=first_name,
                last_name=last_name,
                # Role is fixed once the profile exists.
                role=existing.role if existing is not None else role,
                created_at=existing.created_at if existing is not None else _now_utc(),
            )
            self._profiles[user_id] = record
            return record

    def upsert_client_profile(self, *, client_id: str, phone: str | None, company_name: str | None = None) -> None:
        with self._lock:
            self._client_profiles[client_id] = (phone, company_name)

    def upsert_service(self, *, service_id: str, client_id: str, name: str, assigned_to: str | None) -> None:
        with self._lock:
            self._services[service_id] = ServiceRecord(
                service_id=service_id,
                client_id=client_id,
                name=name,
                assigned_to=assigned_to,
            )

    def get_profile(self, user_id: str) -> ProfileRecord | None:
        with self._lock:
            return self._profiles.get(user_id)

    def get_client_contact(self, client_id: str) -> ClientContactRecord | None:
        with self._lock:
            profile = self._profiles.get(client_id)
            if profile is None or profile.role != "client":
                return None
            phone, company_name = self._client_profiles.get(client_id, (None, None))
            return self._contact(profile, phone, company_name)

    def list_client_contacts_with_phone(self) -> list[ClientContactRecord]:
        with self._lock:
            contacts: list[ClientContactRecord] = []
            for client_id, (phone, company_name) in self._client_profiles.items():
                profile = self._profiles.get(client_id)
                if profile is None or profile.role != "client" or not phone:
                    continue
                contacts.append(self._contact(profile, phone, company_name))
            return contacts

    def get_service(self, service_id: str) -> ServiceRecord | None:
        with self._lock:
            return self._services.get(service_id)

    def assigned_staff_ids(self, client_id: str) -> list[str]:
        with self._lock:
            seen: list[str] = []
            for service in self._services.values():
                if service.client_id == client_id and service.assigned_to and service.assigned_to not in seen:
                    seen.append(service.assigned_to)
            return seen

    def find_admin(self) -> ProfileRecord | None:
        with self._lock:
            admins = [profile for profile in self._profiles.values() if profile.role == "admin"]
            admins.sort(key=lambda profile: profile.created_at)
            return admins[0] if admins else None

    @staticmethod
    def _contact(profile: ProfileRecord, phone: str | None, company_name: str | None) -> ClientContactRecord:
        return ClientContactRecord(
            client_id=profile.user_id,
            email=profile.email,
            first_name=profile.first_name,
            last_name=profile.last_name,
            phone=phone,
            company_name=company_name,
        )


class DirectoryBase(DeclarativeBase):
    pass


class _ProfileRow(DirectoryBase):
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, index=True)
    first_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    role: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ClientProfileRow(DirectoryBase):
    __tablename__ = "client_profiles"

    profile_id: Mapped[str] = mapped_column(String(64), ForeignKey("profiles.id"), primary_key=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    company_name: Mapped[str | None] = mapped_column(String(256), nullable=True)


class _ServiceRow(DirectoryBase):
    __tablename__ = "services"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    client_id: Mapped[str] = mapped_column(String(64), ForeignKey("profiles.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    assigned_to: Mapped[str | None] = mapped_column(String(64), ForeignKey("profiles.id"), nullable=True)


class SqlAlchemyDirectoryRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for RELAY_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        # SQLite is used in tests. Production Postgres should rely on migrations.
        if database_url.startswith("sqlite"):
            DirectoryBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_ServiceRow))
                session.execute(delete(_ClientProfileRow))
                session.execute(delete(_ProfileRow))

    def upsert_profile(
        self,
        *,
        user_id: str,
        email: str,
        role: Role,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> ProfileRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_ProfileRow, user_id)
                if row is None:
                    row = _ProfileRow(
                        id=user_id,
                        email=email,
                        first_name=first_name,
                        last_name=last_name,
                        role=role,
                        created_at=_now_utc(),
                    )
                    session.add(row)
                else:
                    row.email = email
                    row.first_name = first_name
                    row.last_name = last_name
                session.flush()
                return self._profile_record(row)

    def upsert_client_profile(self, *, client_id: str, phone: str | None, company_name: str | None = None) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_ClientProfileRow, client_id)
                if row is None:
                    session.add(_ClientProfileRow(profile_id=client_id, phone=phone, company_name=company_name))
                else:
                    row.phone = phone
                    row.company_name = company_name

    def upsert_service(self, *, service_id: str, client_id: str, name: str, assigned_to: str | None) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_ServiceRow, service_id)
                if row is None:
                    session.add(_ServiceRow(id=service_id, client_id=client_id, name=name, assigned_to=assigned_to))
                else:
                    row.client_id = client_id
                    row.name = name
                    row.assigned_to = assigned_to

    def get_profile(self, user_id: str) -> ProfileRecord | None:
        with self._session() as session:
            row = session.get(_ProfileRow, user_id)
            return self._profile_record(row) if row is not None else None

    def get_client_contact(self, client_id: str) -> ClientContactRecord | None:
        with self._session() as session:
            row = session.execute(
                select(_ProfileRow, _ClientProfileRow)
                .outerjoin(_ClientProfileRow, _ClientProfileRow.profile_id == _ProfileRow.id)
                .where(_ProfileRow.id == client_id)
                .where(_ProfileRow.role == "client")
            ).first()
            if row is None:
                return None
            profile, client_profile = row
            return self._contact_record(profile, client_profile)

    def list_client_contacts_with_phone(self) -> list[ClientContactRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_ProfileRow, _ClientProfileRow)
                .join(_ClientProfileRow, _ClientProfileRow.profile_id == _ProfileRow.id)
                .where(_ClientProfileRow.phone.is_not(None))
                .where(_ProfileRow.role == "client")
            ).all()
            return [self._contact_record(profile, client_profile) for profile, client_profile in rows]

    def get_service(self, service_id: str) -> ServiceRecord | None:
        with self._session() as session:
            row = session.get(_ServiceRow, service_id)
            if row is None:
                return None
            return ServiceRecord(service_id=row.id, client_id=row.client_id, name=row.name, assigned_to=row.assigned_to)

    def assigned_staff_ids(self, client_id: str) -> list[str]:
        with self._session() as session:
            values = session.scalars(
                select(_ServiceRow.assigned_to)
                .where(_ServiceRow.client_id == client_id)
                .where(_ServiceRow.assigned_to.is_not(None))
            ).all()
            return list(dict.fromkeys(values))

    def find_admin(self) -> ProfileRecord | None:
        with self._session() as session:
            row = session.scalar(
                select(_ProfileRow)
                .where(_ProfileRow.role == "admin")
                .order_by(_ProfileRow.created_at.asc())
                .limit(1)
            )
            return self._profile_record(row) if row is not None else None

    @staticmethod
    def _profile_record(row: _ProfileRow) -> ProfileRecord:
        return ProfileRecord(
            user_id=row.id,
            email=row.email,
            first_name=row.first_name,
            last_name=row.last_name,
            role=row.role,  # type: ignore[arg-type]
            created_at=row.created_at,
        )

    @staticmethod
    def _contact_record(profile: _ProfileRow, client_profile: _ClientProfileRow | None) -> ClientContactRecord:
        return ClientContactRecord(
            client_id=profile.id,
            email=profile.email,
            first_name=profile.first_name,
            last_name=profile.last_name,
            phone=client_profile.phone if client_profile is not None else None,
            company_name=client_profile.company_name if client_profile is not None else None,
        )


def create_directory_repository(*, backend: str, database_url: str) -> DirectoryRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyDirectoryRepository(database_url)
    if normalized == "inmemory":
        return InMemoryDirectoryRepository()
    raise RuntimeError(f"unsupported RELAY_STORE_BACKEND: {backend}")
