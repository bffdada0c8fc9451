from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from turnstile.config import Settings
from turnstile.logging import fingerprint, get_logger
from turnstile.storage.common import normalize_email
from turnstile.storage.models import LockoutState, utcnow

logger = get_logger(__name__)


class LockoutStore(Protocol):
    def get_lockout_state(self, identifier: str) -> Optional[LockoutState]: ...

    def record_login_failure(
        self,
        identifier: str,
        *,
        now: datetime,
        threshold: int,
        window: timedelta,
        lockout: timedelta,
    ) -> LockoutState: ...

    def clear_lockout(self, identifier: str) -> None: ...


@dataclass(frozen=True)
class LockoutPolicy:
    threshold: int = 5
    window: timedelta = timedelta(minutes=15)
    duration: timedelta = timedelta(minutes=15)

    @classmethod
    def from_settings(cls, settings: Settings) -> "LockoutPolicy":
        return cls(
            threshold=settings.lockout_threshold,
            window=timedelta(minutes=settings.lockout_window_minutes),
            duration=timedelta(minutes=settings.lockout_duration_minutes),
        )


@dataclass(frozen=True)
class LockoutDecision:
    allowed: bool
    message: Optional[str] = None
    remaining_attempts: Optional[int] = None
    retry_after_seconds: int = 0


def _locked_message(retry_after_seconds: int) -> str:
    minutes = max(1, math.ceil(retry_after_seconds / 60))
    unit = "minute" if minutes == 1 else "minutes"
    return f"Account is locked. Try again in {minutes} {unit}."


class LockoutGuard:
    """Brute-force protection keyed by normalized email.

    Failures are recorded whether or not an account exists for the
    identifier, so lockout behavior reveals nothing about registration.
    The increment itself is delegated to the store, which performs it as
    one atomic read-modify-write.
    """

    def __init__(
        self,
        store: LockoutStore,
        policy: LockoutPolicy,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.policy = policy
        self._clock = clock

    def _locked(self, state: LockoutState, now: datetime) -> LockoutDecision:
        retry_after = max(1, math.ceil((state.locked_until - now).total_seconds()))
        return LockoutDecision(
            allowed=False,
            message=_locked_message(retry_after),
            remaining_attempts=0,
            retry_after_seconds=retry_after,
        )

    def check_allowed(self, identifier: str) -> LockoutDecision:
        key = normalize_email(identifier)
        now = self._clock()
        state = self.store.get_lockout_state(key)
        if state is None:
            return LockoutDecision(allowed=True, remaining_attempts=self.policy.threshold)
        if state.is_locked(now):
            return self._locked(state, now)
        if state.locked_until is not None:
            # Lock ran out; the next failure starts a fresh count
            return LockoutDecision(allowed=True, remaining_attempts=self.policy.threshold)
        return LockoutDecision(
            allowed=True,
            remaining_attempts=max(0, self.policy.threshold - state.failed_count),
        )

    def record_failure(self, identifier: str) -> LockoutDecision:
        key = normalize_email(identifier)
        now = self._clock()
        state = self.store.record_login_failure(
            key,
            now=now,
            threshold=self.policy.threshold,
            window=self.policy.window,
            lockout=self.policy.duration,
        )
        if state.is_locked(now):
            logger.warning(
                "account_locked",
                identifier_hash=fingerprint(key),
                failed_count=state.failed_count,
                locked_until=state.locked_until.isoformat(),
            )
            return self._locked(state, now)
        remaining = max(0, self.policy.threshold - state.failed_count)
        logger.info(
            "login_failure_recorded",
            identifier_hash=fingerprint(key),
            failed_count=state.failed_count,
            remaining_attempts=remaining,
        )
        return LockoutDecision(allowed=True, remaining_attempts=remaining)

    def record_success(self, identifier: str) -> None:
        self.store.clear_lockout(normalize_email(identifier))

    def unlock(self, identifier: str) -> None:
        """Administrative reset of the counter and any active lock."""
        key = normalize_email(identifier)
        self.store.clear_lockout(key)
        logger.info("account_unlocked", identifier_hash=fingerprint(key))
