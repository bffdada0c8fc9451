from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

ROLES = ("student", "staff", "admin")
DEFAULT_ROLE = "student"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Suspension:
    at: datetime
    reason: Optional[str] = None


@dataclass
class Account:
    """Credential record; exactly one live refresh token per account."""

    id: str
    email: str
    password_hash: str
    role: str = DEFAULT_ROLE
    name: Optional[str] = None
    email_verified: bool = False
    suspension: Optional[Suspension] = None
    current_refresh_token: Optional[str] = None
    verification_token_hash: Optional[str] = None
    verification_expires_at: Optional[datetime] = None
    reset_token_hash: Optional[str] = None
    reset_expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @property
    def suspended(self) -> bool:
        return self.suspension is not None

    def public_view(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "email_verified": self.email_verified,
            "created_at": self.created_at,
        }


@dataclass
class LockoutState:
    """Failed-login bookkeeping keyed by normalized email, account or not."""

    identifier: str
    failed_count: int = 0
    window_started_at: Optional[datetime] = None
    last_failed_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until


@dataclass
class RevocationEntry:
    token_digest: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"
