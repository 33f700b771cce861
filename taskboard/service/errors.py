from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``
    that clients can switch on:
    - validation_error / duplicate_email (400)
    - unauthorized / invalid_credentials / invalid_or_expired_token (401)
    - not_found (404)
    - rate_limited (429)
    - server_error (500)
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

    @property
    def field(self) -> Optional[str]:
        """Wire name of the single offending field, when the error has one."""
        field = self.detail.get("field")
        return field if isinstance(field, str) else None


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class DuplicateEmailError(ValidationError):
    """An account already uses this email address (400)."""
    error_code = "duplicate_email"

    def __init__(self, message: str = "User already exists with this email", **kwargs) -> None:
        kwargs.setdefault("detail", {"field": "email"})
        super().__init__(message, **kwargs)


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Email/password pair rejected; one message for every cause (401)."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidOrExpiredTokenError(AuthenticationError):
    """Refresh token is malformed, expired, revoked or already rotated (401)."""
    error_code = "invalid_or_expired_token"

    def __init__(self, message: str = "Invalid or expired refresh token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UserNotFoundError(AuthenticationError):
    """Token subject no longer exists (401)."""
    pass


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "DuplicateEmailError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidOrExpiredTokenError",
    "UserNotFoundError",
    "NotFoundError",
    "RateLimitedError",
    "ServerError",
]
