from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on:
    - validation_error (400)
    - unauthorized, invalid_credentials, token_* (401)
    - forbidden, account_suspended, email_unverified (403)
    - not_found (404)
    - conflict (409)
    - account_locked (423)
    - rate_limited (429)
    - server_error (500)
    - service_unavailable (503)
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
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Wrong password or unknown identifier; one message for both."""
    error_code = "invalid_credentials"


class TokenError(AuthenticationError):
    """Base for every rejection of a presented token."""
    error_code = "token_invalid"


class TokenInvalidError(TokenError):
    """Malformed token, bad signature, wrong issuer or audience, or unknown subject."""
    pass


class TokenExpiredError(TokenError):
    error_code = "token_expired"


class TokenTypeMismatchError(TokenError):
    error_code = "token_type_mismatch"


class TokenReplayedError(TokenError):
    """Token was superseded by rotation or revoked by logout."""
    error_code = "token_replayed"


class StorageConflictError(TokenReplayedError):
    """Lost a refresh rotation race; callers handle it exactly like a replay."""
    pass


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountSuspendedError(ForbiddenError):
    error_code = "account_suspended"


class EmailUnverifiedError(ForbiddenError):
    error_code = "email_unverified"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class AccountLockedError(ServiceError):
    """Too many failed logins; refused until the lock expires (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(self, message: str, *, retry_after_seconds: int, **kwargs) -> None:
        detail = {"retry_after_seconds": retry_after_seconds, **(kwargs.pop("detail", None) or {})}
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after_seconds = retry_after_seconds


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after_seconds: int, **kwargs) -> None:
        detail = {"retry_after_seconds": retry_after_seconds, **(kwargs.pop("detail", None) or {})}
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after_seconds = retry_after_seconds


class TransientError(ServiceError):
    """Backing store unreachable; the caller may retry (503)."""
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "TokenError",
    "TokenInvalidError",
    "TokenExpiredError",
    "TokenTypeMismatchError",
    "TokenReplayedError",
    "StorageConflictError",
    "ForbiddenError",
    "AccountSuspendedError",
    "EmailUnverifiedError",
    "NotFoundError",
    "ConflictError",
    "AccountLockedError",
    "RateLimitedError",
    "TransientError",
]
