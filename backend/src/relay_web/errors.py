from __future__ import annotations


class RelayError(Exception):
    """Base class for errors surfaced to API callers as ``{"error": ...}`` bodies."""

    code = "relay_error"
    status_code = 400
    default_message = "Request failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class NotAuthenticatedError(RelayError):
    code = "not_authenticated"
    status_code = 401
    default_message = "Not authenticated"


class NotAuthorizedError(RelayError):
    code = "not_authorized"
    status_code = 403
    default_message = "Unauthorized"


class NotConfiguredError(RelayError):
    code = "not_configured"
    status_code = 503
    default_message = "SMS not configured. Please configure SMS settings first."


class ProviderError(RelayError):
    """A third-party SMS or email API call failed; the provider's text is kept."""

    code = "provider_error"
    status_code = 502
    default_message = "Provider request failed"

    def __init__(self, message: str | None = None, *, error_code: str | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code


class NotFoundError(RelayError, KeyError):
    code = "not_found"
    status_code = 404
    default_message = "Not found"

    def __str__(self) -> str:
        return self.message


class MagicLinkExpiredError(RelayError):
    code = "link_expired"
    status_code = 410
    default_message = "Magic link expired"
