"""Error taxonomy for OAuth connection flows.

Every error carries the HTTP status it is surfaced with so the routers and the
app-level exception handler can render it without further mapping.
"""

from __future__ import annotations

from typing import Optional


class OAuthError(Exception):
    """Base class for errors rendered as a failed response envelope."""

    status_code: int = 400

    def __init__(self, message: str, *, detail: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail


class AuthenticationRequired(OAuthError):
    status_code = 401

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message)


class ValidationError(OAuthError):
    status_code = 400


class CsrfViolation(OAuthError):
    status_code = 400

    def __init__(self, message: str = "Invalid OAuth state. Possible CSRF attack.") -> None:
        super().__init__(message)


class AuthError(OAuthError):
    """A connection attempt was refused by a rule or by the provider."""

    status_code = 400


class PolicyDenied(AuthError):
    status_code = 403


class ProviderAuthError(AuthError):
    """Provider rejected the code/credentials. Raw body lives in ``detail``, never in ``message``."""


class ProviderUnavailable(ProviderAuthError):
    """Network failure, timeout, or 5xx after retries were exhausted."""


class InternalError(OAuthError):
    status_code = 500

    def __init__(self, message: str = "Internal server error") -> None:
        super().__init__(message)


class RateLimited(OAuthError):
    status_code = 429


class SessionStoreUnavailable(OAuthError):
    status_code = 503

    def __init__(self, message: str = "Session storage is temporarily unavailable. Please try again.") -> None:
        super().__init__(message)
