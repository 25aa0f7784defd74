from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on.
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
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Bearer token missing, malformed or expired (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the two are indistinguishable (401)."""
    error_code = "invalid_credentials"


class NotVerifiedError(ServiceError):
    """Login refused until the email address is verified (403)."""
    status_code = 403
    error_code = "not_verified"


class AccountLockedError(ServiceError):
    """Too many failed logins; refused until the lock expires (423)."""
    status_code = 423
    error_code = "account_locked"


class InvalidOrExpiredCodeError(ServiceError):
    status_code = 400
    error_code = "invalid_or_expired_code"


class InvalidOrExpiredTokenError(ServiceError):
    status_code = 400
    error_code = "invalid_or_expired_token"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate email (409)."""
    status_code = 409
    error_code = "conflict"


class DependencyError(ServiceError):
    """Email gateway or account store unavailable (503)."""
    status_code = 503
    error_code = "dependency_unavailable"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


InternalError = ServerError


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "NotVerifiedError",
    "AccountLockedError",
    "InvalidOrExpiredCodeError",
    "InvalidOrExpiredTokenError",
    "NotFoundError",
    "ConflictError",
    "DependencyError",
    "ServerError",
    "InternalError",
]
