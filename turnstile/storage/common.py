"""Storage helpers shared between the memory and postgres backends.

Both backends apply the same lockout transition so that counters behave
identically regardless of where they are persisted.
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timedelta
from typing import Optional

from turnstile.storage.models import LockoutState


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def token_digest(token: str) -> str:
    """Stable key for a token; raw token values are never persisted by the ledger."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def apply_login_failure(
    state: Optional[LockoutState],
    identifier: str,
    *,
    now: datetime,
    threshold: int,
    window: timedelta,
    lockout: timedelta,
) -> LockoutState:
    """Return the lockout state after one more failed attempt.

    An active lock is never extended by further failures. An expired lock,
    or a window older than ``window``, starts a fresh count.
    """
    if state is not None and state.is_locked(now):
        return LockoutState(
            identifier=identifier,
            failed_count=state.failed_count,
            window_started_at=state.window_started_at,
            last_failed_at=now,
            locked_until=state.locked_until,
        )
    fresh = (
        state is None
        or state.locked_until is not None
        or state.window_started_at is None
        or now - state.window_started_at >= window
    )
    if fresh:
        count = 1
        window_started_at = now
    else:
        count = state.failed_count + 1
        window_started_at = state.window_started_at
    locked_until = now + lockout if count >= threshold else None
    return LockoutState(
        identifier=identifier,
        failed_count=count,
        window_started_at=window_started_at,
        last_failed_at=now,
        locked_until=locked_until,
    )
