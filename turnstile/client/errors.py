from __future__ import annotations

from typing import Optional


class ClientAuthError(Exception):
    """Base class for failures surfaced by the client-side auth stack."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code


class TransientAuthError(ClientAuthError):
    """Timeout, connection failure, 429 or 5xx; the durable token is still good."""


class TokenRejectedError(ClientAuthError):
    """Server answered 401/403; ``error_code`` says which token check failed."""


class SessionExpiredError(ClientAuthError):
    """Session terminated by a rejected refresh; the user must log in again."""


class RefreshFailedError(TransientAuthError):
    """Refresh retries exhausted; the durable token is kept for a later attempt."""


__all__ = [
    "ClientAuthError",
    "TransientAuthError",
    "TokenRejectedError",
    "SessionExpiredError",
    "RefreshFailedError",
]
