from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, Optional

from turnstile.storage.common import apply_login_failure, normalize_email
from turnstile.storage.errors import ConstraintViolation
from turnstile.storage.models import (
    DEFAULT_ROLE,
    Account,
    LockoutState,
    RevocationEntry,
    Suspension,
    utcnow,
)


class MemoryStore:
    """In-process credential store for tests and single-process development.

    Every read-modify-write runs under one re-entrant lock, which gives the
    same atomicity the postgres backend gets from row locks and conditional
    updates. Accounts are handed out as copies so callers cannot mutate
    stored state behind the lock.
    """

    def __init__(self) -> None:
        self.accounts: Dict[str, Account] = {}
        self.lockouts: Dict[str, LockoutState] = {}
        self.revoked: Dict[str, RevocationEntry] = {}
        self._data_lock = threading.RLock()

    # accounts

    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = DEFAULT_ROLE,
        name: Optional[str] = None,
        email_verified: bool = False,
    ) -> Account:
        email = normalize_email(email)
        with self._data_lock:
            if any(existing.email == email for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=str(uuid.uuid4()),
                email=email,
                password_hash=password_hash,
                role=role,
                name=name,
                email_verified=email_verified,
            )
            self.accounts[account.id] = account
            return replace(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        email = normalize_email(email)
        with self._data_lock:
            account = next((a for a in self.accounts.values() if a.email == email), None)
            return replace(account) if account else None

    def _update(self, account_id: str, **fields) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                return None
            updated = replace(account, updated_at=utcnow(), **fields)
            self.accounts[account_id] = updated
            return replace(updated)

    def set_refresh_token(self, account_id: str, token: Optional[str]) -> None:
        self._update(account_id, current_refresh_token=token)

    def compare_and_set_refresh_token(
        self, account_id: str, expected: str, new: Optional[str]
    ) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None or account.current_refresh_token != expected:
                return False
            self.accounts[account_id] = replace(
                account, current_refresh_token=new, updated_at=utcnow()
            )
            return True

    def save_password(
        self, account_id: str, password_hash: str, *, clear_refresh_token: bool = True
    ) -> Optional[Account]:
        fields = {"password_hash": password_hash, "reset_token_hash": None, "reset_expires_at": None}
        if clear_refresh_token:
            fields["current_refresh_token"] = None
        return self._update(account_id, **fields)

    def update_profile(self, account_id: str, *, name: Optional[str]) -> Optional[Account]:
        return self._update(account_id, name=name)

    def update_role(self, account_id: str, role: str) -> Optional[Account]:
        return self._update(account_id, role=role)

    def set_suspension(
        self, account_id: str, reason: Optional[str], *, suspended: bool = True
    ) -> Optional[Account]:
        if suspended:
            return self._update(
                account_id,
                suspension=Suspension(at=utcnow(), reason=reason),
                current_refresh_token=None,
            )
        return self._update(account_id, suspension=None)

    def set_verification_token(
        self, account_id: str, token_hash: str, expires_at: datetime
    ) -> Optional[Account]:
        return self._update(
            account_id,
            verification_token_hash=token_hash,
            verification_expires_at=expires_at,
        )

    def get_account_by_verification_token(self, token_hash: str) -> Optional[Account]:
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.verification_token_hash == token_hash),
                None,
            )
            return replace(account) if account else None

    def mark_email_verified(self, account_id: str) -> Optional[Account]:
        return self._update(
            account_id,
            email_verified=True,
            verification_token_hash=None,
            verification_expires_at=None,
        )

    def set_reset_token(
        self, account_id: str, token_hash: str, expires_at: datetime
    ) -> Optional[Account]:
        return self._update(account_id, reset_token_hash=token_hash, reset_expires_at=expires_at)

    def get_account_by_reset_token(self, token_hash: str) -> Optional[Account]:
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.reset_token_hash == token_hash),
                None,
            )
            return replace(account) if account else None

    # lockout

    def get_lockout_state(self, identifier: str) -> Optional[LockoutState]:
        with self._data_lock:
            state = self.lockouts.get(identifier)
            return replace(state) if state else None

    def record_login_failure(
        self,
        identifier: str,
        *,
        now: datetime,
        threshold: int,
        window: timedelta,
        lockout: timedelta,
    ) -> LockoutState:
        with self._data_lock:
            state = apply_login_failure(
                self.lockouts.get(identifier),
                identifier,
                now=now,
                threshold=threshold,
                window=window,
                lockout=lockout,
            )
            self.lockouts[identifier] = state
            return replace(state)

    def clear_lockout(self, identifier: str) -> None:
        with self._data_lock:
            self.lockouts.pop(identifier, None)

    # revocation ledger

    def add_revoked_token(self, token_digest: str, expires_at: datetime) -> None:
        with self._data_lock:
            existing = self.revoked.get(token_digest)
            if existing and existing.expires_at >= expires_at:
                return
            self.revoked[token_digest] = RevocationEntry(token_digest, expires_at)

    def is_token_revoked(self, token_digest: str, now: datetime) -> bool:
        with self._data_lock:
            entry = self.revoked.get(token_digest)
            return entry is not None and entry.expires_at > now

    def purge_revoked_tokens(self, now: datetime) -> int:
        with self._data_lock:
            expired = [k for k, e in self.revoked.items() if e.expires_at <= now]
            for key in expired:
                del self.revoked[key]
            return len(expired)

    def ping(self) -> bool:
        return True
