from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Iterable, Protocol

from sqlalchemy import JSON, DateTime, String, UniqueConstraint, create_engine, delete, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .cipher import CipherError, SettingsCipher
from .directory import DirectoryRepository
from .errors import NotConfiguredError

logger = logging.getLogger(__name__)

SMS_PHONE_NUMBER_KEY = "sms_phone_number"
SMS_ACCOUNT_SID_KEY = "sms_account_sid"
SMS_AUTH_TOKEN_KEY = "sms_auth_token"
SMS_SETTING_KEYS = (SMS_PHONE_NUMBER_KEY, SMS_ACCOUNT_SID_KEY, SMS_AUTH_TOKEN_KEY)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SmsProviderConfig:
    phone_number: str
    account_sid: str
    auth_token: str
    owner_id: str


@dataclass(frozen=True)
class StoredSetting:
    user_id: str
    key: str
    value: Any
    updated_at: datetime


class SettingsRepository(Protocol):
    def reset(self) -> None: ...

    def get_values(self, user_id: str, keys: Iterable[str]) -> dict[str, Any]: ...

    def upsert_values(self, user_id: str, values: dict[str, Any]) -> None: ...

    def list_by_key(self, key: str) -> list[StoredSetting]: ...


class InMemorySettingsRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._values: dict[tuple[str, str], StoredSetting] = {}

    def reset(self) -> None:
        with self._lock:
            self._values.clear()

    def get_values(self, user_id: str, keys: Iterable[str]) -> dict[str, Any]:
        with self._lock:
            found: dict[str, Any] = {}
            for key in keys:
                stored = self._values.get((user_id, key))
                if stored is not None:
                    found[key] = stored.value
            return found

    def upsert_values(self, user_id: str, values: dict[str, Any]) -> None:
        now = _now_utc()
        with self._lock:
            for key, value in values.items():
                self._values[(user_id, key)] = StoredSetting(user_id=user_id, key=key, value=value, updated_at=now)

    def list_by_key(self, key: str) -> list[StoredSetting]:
        with self._lock:
            return [stored for (_, stored_key), stored in self._values.items() if stored_key == key]


class SettingsBase(DeclarativeBase):
    pass


class _AppSettingRow(SettingsBase):
    __tablename__ = "app_settings"
    __table_args__ = (UniqueConstraint("user_id", "key", name="uq_app_settings_user_key"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    key: Mapped[str] = mapped_column(String(128), nullable=False)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemySettingsRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for RELAY_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            SettingsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_AppSettingRow))

    def get_values(self, user_id: str, keys: Iterable[str]) -> dict[str, Any]:
        wanted = list(keys)
        with self._session() as session:
            rows = session.scalars(
                select(_AppSettingRow)
                .where(_AppSettingRow.user_id == user_id)
                .where(_AppSettingRow.key.in_(wanted))
            ).all()
            return {row.key: row.value for row in rows}

    def upsert_values(self, user_id: str, values: dict[str, Any]) -> None:
        now = _now_utc()
        with self._session() as session:
            with session.begin():
                existing = {
                    row.key: row
                    for row in session.scalars(
                        select(_AppSettingRow)
                        .where(_AppSettingRow.user_id == user_id)
                        .where(_AppSettingRow.key.in_(list(values)))
                        .with_for_update()
                    ).all()
                }
                for key, value in values.items():
                    row = existing.get(key)
                    if row is None:
                        session.add(_AppSettingRow(user_id=user_id, key=key, value=value, updated_at=now))
                    else:
                        row.value = value
                        row.updated_at = now

    def list_by_key(self, key: str) -> list[StoredSetting]:
        with self._session() as session:
            rows = session.scalars(select(_AppSettingRow).where(_AppSettingRow.key == key)).all()
            return [
                StoredSetting(user_id=row.user_id, key=row.key, value=row.value, updated_at=row.updated_at)
                for row in rows
            ]


def create_settings_repository(*, backend: str, database_url: str) -> SettingsRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemySettingsRepository(database_url)
    if normalized == "inmemory":
        return InMemorySettingsRepository()
    raise RuntimeError(f"unsupported RELAY_STORE_BACKEND: {backend}")


class SmsSettingsService:
    """Admin-scoped SMS provider settings, auth token encrypted at rest."""

    def __init__(
        self,
        repository: SettingsRepository,
        directory: DirectoryRepository,
        cipher: SettingsCipher,
    ) -> None:
        self._repository = repository
        self._directory = directory
        self._cipher = cipher

    def save(self, *, user_id: str, phone_number: str, account_sid: str, auth_token: str) -> None:
        self._repository.upsert_values(
            user_id,
            {
                SMS_PHONE_NUMBER_KEY: phone_number,
                SMS_ACCOUNT_SID_KEY: account_sid,
                SMS_AUTH_TOKEN_KEY: self._cipher.encrypt(auth_token),
            },
        )
        logger.info("sms settings updated by user_id=%s", user_id)

    def read(self, *, user_id: str) -> dict[str, str]:
        stored = self._repository.get_values(user_id, SMS_SETTING_KEYS)
        auth_token = ""
        encrypted = stored.get(SMS_AUTH_TOKEN_KEY)
        if encrypted:
            try:
                auth_token = self._cipher.decrypt(str(encrypted))
            except CipherError:
                logger.exception("stored sms auth token could not be decrypted for user_id=%s", user_id)
        return {
            "phone_number": str(stored.get(SMS_PHONE_NUMBER_KEY) or ""),
            "account_sid": str(stored.get(SMS_ACCOUNT_SID_KEY) or ""),
            "auth_token": auth_token,
        }

    def load_provider_config(self) -> SmsProviderConfig:
        """Load the first admin's SMS settings as a validated config.

        Raises ``NotConfiguredError`` when the admin, any key, or the token's
        decryption is missing.
        """
        admin = self._directory.find_admin()
        if admin is None:
            raise NotConfiguredError()
        stored = self._repository.get_values(admin.user_id, SMS_SETTING_KEYS)
        if len(stored) < len(SMS_SETTING_KEYS):
            raise NotConfiguredError()

        phone_number = str(stored.get(SMS_PHONE_NUMBER_KEY) or "").strip()
        account_sid = str(stored.get(SMS_ACCOUNT_SID_KEY) or "").strip()
        encrypted = str(stored.get(SMS_AUTH_TOKEN_KEY) or "").strip()
        if not phone_number or not account_sid or not encrypted:
            raise NotConfiguredError("SMS configuration incomplete")
        try:
            auth_token = self._cipher.decrypt(encrypted)
        except CipherError as exc:
            logger.error("sms auth token for admin user_id=%s failed to decrypt: %s", admin.user_id, exc)
            raise NotConfiguredError("SMS configuration incomplete") from exc
        if not auth_token:
            raise NotConfiguredError("SMS configuration incomplete")

        return SmsProviderConfig(
            phone_number=phone_number,
            account_sid=account_sid,
            auth_token=auth_token,
            owner_id=admin.user_id,
        )
