from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each exception class carries an HTTP-style ``status_code`` and a stable
    ``error_code`` so an outer transport can map failures without inspecting
    messages:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Input failed shape validation (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class ConflictError(ServiceError):
    """Resource conflict (409)."""
    status_code = 409
    error_code = "conflict"


class UnavailableError(ServiceError):
    """Store or upstream identity provider failed; the caller may retry (503)."""
    status_code = 503
    error_code = "unavailable"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email, wrong provider, missing hash or wrong password.

    All four collapse into this one error so login cannot be used to discover
    which emails are registered.
    """
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class EmailNotVerifiedError(ForbiddenError):
    error_code = "email_not_verified"

    def __init__(self, message: str = "Please verify your email before logging in", **kwargs) -> None:
        super().__init__(message, **kwargs)


class EmailInUseError(ConflictError):
    error_code = "email_in_use"

    def __init__(self, message: str = "Email is already registered", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ProviderConflictError(ConflictError):
    """Email already belongs to an account using a different sign-in method."""
    error_code = "provider_conflict"

    def __init__(
        self,
        message: str = "This email is registered with a different sign-in method",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


class InvalidOrExpiredCodeError(ValidationError):
    """Wrong, expired or already used one-time code (indistinguishable by design)."""
    error_code = "invalid_or_expired_code"

    def __init__(self, message: str = "Invalid or expired code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthenticationError):
    """Malformed, badly signed, expired or wrong-type token."""
    error_code = "invalid_token"


class SessionNotFoundError(AuthenticationError):
    error_code = "session_not_found"

    def __init__(self, message: str = "Session not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionRevokedError(AuthenticationError):
    error_code = "session_revoked"

    def __init__(self, message: str = "Session has been revoked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionExpiredError(AuthenticationError):
    error_code = "session_expired"

    def __init__(self, message: str = "Session has expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionNotActiveError(AuthenticationError):
    error_code = "session_not_active"

    def __init__(self, message: str = "Session is no longer active", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidRefreshTokenError(AuthenticationError):
    error_code = "invalid_refresh_token"

    def __init__(self, message: str = "Invalid refresh token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenReuseDetectedError(AuthenticationError):
    """A rotated refresh token was replayed; every session of the user is revoked."""
    error_code = "token_reuse_detected"

    def __init__(
        self,
        message: str = "Refresh token reuse detected; all sessions have been revoked",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


class RefreshConflictError(ConflictError):
    """A concurrent refresh of the same session won the rotation."""
    error_code = "refresh_conflict"

    def __init__(
        self,
        message: str = "Session was refreshed concurrently; use the latest tokens",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


class FederatedProfileMissingEmailError(AuthenticationError):
    error_code = "federated_profile_missing_email"

    def __init__(
        self, message: str = "Identity provider did not supply an email address", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "ConflictError",
    "UnavailableError",
    "InvalidCredentialsError",
    "EmailNotVerifiedError",
    "EmailInUseError",
    "ProviderConflictError",
    "InvalidOrExpiredCodeError",
    "InvalidTokenError",
    "SessionNotFoundError",
    "SessionRevokedError",
    "SessionExpiredError",
    "SessionNotActiveError",
    "InvalidRefreshTokenError",
    "TokenReuseDetectedError",
    "RefreshConflictError",
    "FederatedProfileMissingEmailError",
]
