from __future__ import annotations

import os
from dataclasses import dataclass, field

INSECURE_DEFAULT_ENCRYPTION_KEY = "your-secret-key-here-change-this-32ch"


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _as_key_map(value: str | None) -> dict[str, str]:
    """Parse ``"1=old-secret,2=older-secret"`` into a version -> secret map."""
    if value is None:
        return {}
    parsed: dict[str, str] = {}
    for chunk in value.split(","):
        version, _, secret = chunk.partition("=")
        version = version.strip()
        secret = secret.strip()
        if version and secret:
            parsed[version] = secret
    return parsed


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Agency Conversation Relay"
    api_prefix: str = "/api/v1"
    store_backend: str = "inmemory"
    database_url: str = ""
    app_base_url: str = "http://localhost:3000"
    cors_allowed_origin: str = "http://localhost:3000"
    session_token_secret: str = "dev-session-secret"
    settings_encryption_key: str = INSECURE_DEFAULT_ENCRYPTION_KEY
    settings_encryption_key_version: str = "1"
    # Retired keys kept readable during rotation, keyed by version tag.
    settings_encryption_previous_keys: dict[str, str] = field(default_factory=dict)
    sms_sender_type: str = "stub"
    sms_truncate_threshold: int = 140
    sms_truncate_length: int = 120
    magic_link_ttl_hours: int = 24
    twilio_webhook_signature_mode: str = "log_only"
    email_sender_type: str = "stub"
    resend_api_key: str = ""
    resend_from_email: str = "AgencyOS <notifications@example.com>"
    resend_api_base_url: str = "https://api.resend.com"
    email_timeout_seconds: int = 10
    runtime_secret_guard_mode: str = "warn"

    def encryption_keys(self) -> dict[str, str]:
        keys = dict(self.settings_encryption_previous_keys)
        keys[self.settings_encryption_key_version] = self.settings_encryption_key
        return keys

    def magic_link_url(self, token: str) -> str:
        return f"{self.app_base_url.rstrip('/')}/m/{token}"

    def app_url(self, path: str) -> str:
        return f"{self.app_base_url.rstrip('/')}/{path.lstrip('/')}"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("RELAY_APP_NAME", "Agency Conversation Relay"),
        api_prefix=os.getenv("RELAY_API_PREFIX", "/api/v1"),
        store_backend=os.getenv("RELAY_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        app_base_url=os.getenv("APP_BASE_URL", "http://localhost:3000"),
        cors_allowed_origin=os.getenv("CORS_ALLOWED_ORIGIN", os.getenv("APP_BASE_URL", "http://localhost:3000")),
        session_token_secret=os.getenv("SESSION_TOKEN_SECRET", "dev-session-secret"),
        settings_encryption_key=os.getenv("SETTINGS_ENCRYPTION_KEY", INSECURE_DEFAULT_ENCRYPTION_KEY),
        settings_encryption_key_version=os.getenv("SETTINGS_ENCRYPTION_KEY_VERSION", "1").strip() or "1",
        settings_encryption_previous_keys=_as_key_map(os.getenv("SETTINGS_ENCRYPTION_PREVIOUS_KEYS")),
        sms_sender_type=_normalize_mode(os.getenv("SMS_SENDER_TYPE"), default="stub", allowed={"stub", "twilio"}),
        sms_truncate_threshold=_as_int(os.getenv("SMS_TRUNCATE_THRESHOLD"), 140),
        sms_truncate_length=_as_int(os.getenv("SMS_TRUNCATE_LENGTH"), 120),
        magic_link_ttl_hours=_as_int(os.getenv("MAGIC_LINK_TTL_HOURS"), 24),
        twilio_webhook_signature_mode=_normalize_mode(
            os.getenv("TWILIO_WEBHOOK_SIGNATURE_MODE"),
            default="log_only",
            allowed={"off", "log_only", "enforce"},
        ),
        email_sender_type=_normalize_mode(os.getenv("EMAIL_SENDER_TYPE"), default="stub", allowed={"stub", "resend"}),
        resend_api_key=os.getenv("RESEND_API_KEY", ""),
        resend_from_email=os.getenv("RESEND_FROM_EMAIL", "AgencyOS <notifications@example.com>"),
        resend_api_base_url=os.getenv("RESEND_API_BASE_URL", "https://api.resend.com"),
        email_timeout_seconds=_as_int(os.getenv("EMAIL_TIMEOUT_SECONDS"), 10),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(
        settings.settings_encryption_key,
        defaults={INSECURE_DEFAULT_ENCRYPTION_KEY, "change-me-in-production"},
    ):
        issues.append("SETTINGS_ENCRYPTION_KEY is empty or uses the documented insecure default")
    elif len(settings.settings_encryption_key.encode("utf-8")) < 32:
        issues.append("SETTINGS_ENCRYPTION_KEY must be at least 32 bytes")
    if _is_placeholder(
        settings.session_token_secret,
        defaults={"dev-session-secret", "change-me-in-production"},
    ):
        issues.append("SESSION_TOKEN_SECRET is empty or uses a development placeholder")
    if settings.email_sender_type == "resend" and not settings.resend_api_key.strip():
        issues.append("RESEND_API_KEY is required when EMAIL_SENDER_TYPE=resend")
    if settings.store_backend.strip().lower() == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when RELAY_STORE_BACKEND=postgres")
    return tuple(issues)
