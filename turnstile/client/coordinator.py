"""Single-flight refresh for one client session.

However many requests discover an expired access token at once, one refresh
call goes to the server; every other caller subscribes and receives the
same outcome.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from turnstile.client.errors import (
    ClientAuthError,
    RefreshFailedError,
    SessionExpiredError,
    TokenRejectedError,
    TransientAuthError,
)
from turnstile.client.session import ClientSession
from turnstile.config import Settings
from turnstile.logging import fingerprint, get_logger
from turnstile.service.signer import peek_claims

logger = get_logger(__name__)

IDLE = "idle"
REFRESHING = "refreshing"


class RefreshTransport(Protocol):
    async def refresh(self, refresh_token: str) -> Dict[str, Any]: ...


def token_lifetime(access_token: Optional[str]) -> Optional[tuple[float, float]]:
    """``(issued_at, expires_at)`` read from an access token, or None."""
    claims = peek_claims(access_token) if access_token else None
    if not claims:
        return None
    try:
        issued_at = float(claims["iat"])
        expires_at = float(claims["exp"])
    except (KeyError, TypeError, ValueError):
        return None
    if expires_at <= issued_at:
        return None
    return issued_at, expires_at


class RefreshCoordinator:
    def __init__(
        self,
        transport: RefreshTransport,
        session: ClientSession,
        *,
        max_retries: int = 3,
        backoff_seconds: float = 5.0,
        backoff_multiplier: float = 2.0,
        lead_fraction: float = 0.85,
        proactive: bool = True,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_session_expired: Optional[Callable[[ClientSession], None]] = None,
    ) -> None:
        self.transport = transport
        self.session = session
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.backoff_multiplier = backoff_multiplier
        self.lead_fraction = lead_fraction
        self.proactive = proactive
        self._clock = clock
        self._sleep = sleep
        self._on_session_expired = on_session_expired
        self._state = IDLE
        self._subscribers: List[asyncio.Future] = []
        self._inflight: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls, transport: RefreshTransport, session: ClientSession, settings: Settings, **kwargs
    ) -> "RefreshCoordinator":
        return cls(
            transport,
            session,
            max_retries=settings.refresh_max_retries,
            backoff_seconds=settings.refresh_retry_backoff_seconds,
            backoff_multiplier=settings.refresh_backoff_multiplier,
            lead_fraction=settings.refresh_lead_fraction,
            **kwargs,
        )

    @property
    def state(self) -> str:
        return self._state

    @property
    def is_refreshing(self) -> bool:
        return self._state == REFRESHING

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # single flight

    async def refresh(self, stale_token: Optional[str] = None) -> str:
        """Return a fresh access token, joining any refresh already in flight.

        ``stale_token`` is the access token the caller saw rejected; when the
        session already holds a different one, it is returned without a call.
        """
        if self.session.closed:
            raise SessionExpiredError("session has ended; log in again")
        if (
            stale_token is not None
            and self.session.access_token is not None
            and self.session.access_token != stale_token
            and self._state == IDLE
        ):
            return self.session.access_token

        waiter = asyncio.get_running_loop().create_future()
        self._subscribers.append(waiter)
        if self._state == IDLE:
            self._state = REFRESHING
            self._inflight = asyncio.create_task(self._drive(self.session.generation))
        else:
            logger.debug("refresh_joined", subscribers=len(self._subscribers))
        return await waiter

    async def _drive(self, generation: int) -> None:
        try:
            token = await self._run(generation)
        except asyncio.CancelledError:
            self._finish(error=TransientAuthError("refresh was cancelled"))
            raise
        except Exception as exc:
            self._finish(error=exc)
        else:
            self._finish(result=token)

    def _finish(
        self, *, result: Optional[str] = None, error: Optional[BaseException] = None
    ) -> None:
        subscribers, self._subscribers = self._subscribers, []
        self._state = IDLE
        self._inflight = None
        for waiter in subscribers:
            if waiter.done():
                continue
            if error is not None:
                waiter.set_exception(error)
            else:
                waiter.set_result(result)

    async def _run(self, generation: int) -> str:
        presented = self.session.refresh_token
        if not presented:
            self._terminate("no_refresh_token")
            raise SessionExpiredError("no refresh token available; log in again")

        recovered = False
        while True:
            try:
                data = await self.transport.refresh(presented)
            except TokenRejectedError as exc:
                durable = self.session.refresh_token
                if not recovered and durable and durable != presented:
                    # Another holder of this store rotated first; use its token
                    logger.info(
                        "refresh_replay_recovered",
                        presented=fingerprint(presented),
                        durable=fingerprint(durable),
                    )
                    recovered = True
                    presented = durable
                    continue
                if self._superseded(generation):
                    return self._discarded()
                self._terminate(exc.error_code or "refresh_rejected")
                raise SessionExpiredError(
                    "session expired; log in again",
                    status_code=exc.status_code,
                    error_code=exc.error_code,
                ) from exc
            except TransientAuthError as exc:
                if self._superseded(generation):
                    return self._discarded()
                self.session.retry_count += 1
                attempt = self.session.retry_count
                if attempt >= self.max_retries:
                    logger.warning(
                        "refresh_retries_exhausted", attempts=attempt, error=exc.message
                    )
                    # Keep the durable token; a later user action may succeed
                    self.session.retry_count = 0
                    raise RefreshFailedError(
                        f"refresh failed after {attempt} attempts: {exc.message}",
                        status_code=exc.status_code,
                        error_code=exc.error_code,
                    ) from exc
                delay = self.backoff_seconds * (self.backoff_multiplier ** (attempt - 1))
                logger.info("refresh_retry_scheduled", attempt=attempt, delay_seconds=delay)
                await self._sleep(delay)
                if self._superseded(generation):
                    return self._discarded()
                continue

            if self._superseded(generation):
                return self._discarded()
            access_token = data["access_token"]
            self.session.install(
                access_token, data["refresh_token"], user=data.get("user"), now=self._clock()
            )
            logger.info("refresh_succeeded", recovered=recovered)
            self.schedule(access_token)
            return access_token

    def _superseded(self, generation: int) -> bool:
        return self.session.generation != generation

    def _discarded(self) -> str:
        """The session changed under an in-flight refresh; drop its result."""
        logger.info("refresh_result_discarded", closed=self.session.closed)
        if self.session.authenticated:
            return self.session.access_token
        raise SessionExpiredError("session ended while refreshing")

    def _terminate(self, reason: str) -> None:
        self.cancel_timer()
        self.session.clear(reason=reason)
        if self._on_session_expired is not None:
            try:
                self._on_session_expired(self.session)
            except Exception as exc:
                logger.error("session_expired_callback_failed", error=str(exc))

    # proactive refresh

    def next_refresh_delay(self, access_token: Optional[str]) -> Optional[float]:
        """Seconds until ``lead_fraction`` of the token's lifetime has passed."""
        window = token_lifetime(access_token)
        if window is None:
            return None
        issued_at, expires_at = window
        due = issued_at + (expires_at - issued_at) * self.lead_fraction
        return max(0.0, due - self._clock())

    def schedule(self, access_token: Optional[str] = None) -> None:
        if not self.proactive:
            return
        delay = self.next_refresh_delay(access_token or self.session.access_token)
        if delay is None:
            return
        self.cancel_timer()
        try:
            self._timer = asyncio.get_running_loop().create_task(self._timer_fired(delay))
        except RuntimeError:
            logger.debug("refresh_timer_skipped_no_loop")

    def cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None and timer is not asyncio.current_task() and not timer.done():
            timer.cancel()

    async def _timer_fired(self, delay: float) -> None:
        await self._sleep(delay)
        if self._timer is asyncio.current_task():
            # The refresh below schedules the next timer
            self._timer = None
        if not self.session.authenticated:
            return
        try:
            await self.refresh()
        except ClientAuthError as exc:
            logger.warning("proactive_refresh_failed", error_type=type(exc).__name__)

    async def _refresh_if_stale(self, trigger: str) -> bool:
        if not self.session.authenticated or self.session.last_refresh_at is None:
            return False
        window = token_lifetime(self.session.access_token)
        if window is None:
            return False
        lifetime = window[1] - window[0]
        elapsed = self._clock() - self.session.last_refresh_at
        if elapsed <= lifetime / 2:
            return False
        logger.info("out_of_band_refresh", trigger=trigger, elapsed_seconds=int(elapsed))
        try:
            await self.refresh()
        except ClientAuthError as exc:
            logger.warning("out_of_band_refresh_failed", trigger=trigger, error_type=type(exc).__name__)
            return False
        return True

    async def on_visible(self) -> bool:
        """Host regained foreground; refresh if over half the lifetime has passed."""
        return await self._refresh_if_stale("visible")

    async def on_online(self) -> bool:
        """Host regained connectivity; same rule as ``on_visible``."""
        return await self._refresh_if_stale("online")

    async def aclose(self) -> None:
        self.cancel_timer()
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            # Let the call land so the server-side rotation stays consistent
            await asyncio.wait({inflight})
