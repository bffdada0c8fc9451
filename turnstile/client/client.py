from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from turnstile.client.coordinator import RefreshCoordinator
from turnstile.client.errors import ClientAuthError, SessionExpiredError
from turnstile.client.session import ClientSession
from turnstile.client.storage import MemoryRefreshTokenStore, RefreshTokenStore
from turnstile.client.transport import AuthTransport, raise_for_auth_status
from turnstile.config import Settings
from turnstile.logging import get_logger

logger = get_logger(__name__)

# A 401 from these means bad credentials or a bad token, never "refresh and retry"
AUTH_ENDPOINTS = (
    "/auth/login",
    "/auth/signup",
    "/auth/refresh",
    "/auth/logout",
    "/auth/verify-email",
    "/auth/resend-verification",
    "/auth/forgot-password",
    "/auth/reset-password",
)


def is_auth_endpoint(url: str) -> bool:
    path = httpx.URL(url).path
    return any(path.endswith(suffix) for suffix in AUTH_ENDPOINTS)


class AuthenticatedClient:
    """HTTP client that carries one session and refreshes it on demand.

    Usage::

        async with AuthenticatedClient("https://api.example.edu") as api:
            await api.login("a@x.com", "correct horse")
            resp = await api.request("GET", "/v1/resources")
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        store: Optional[RefreshTokenStore] = None,
        settings: Optional[Settings] = None,
        timeout: Optional[float] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        proactive: bool = True,
        on_session_expired: Optional[Callable[[ClientSession], None]] = None,
    ) -> None:
        if timeout is None:
            timeout = settings.client_request_timeout_seconds if settings else 30.0
        self.http = httpx.AsyncClient(
            base_url=base_url, timeout=timeout, transport=http_transport
        )
        self.transport = AuthTransport(client=self.http)
        self.session = ClientSession(store=store or MemoryRefreshTokenStore())
        self._clock = clock
        options = dict(
            clock=clock, sleep=sleep, proactive=proactive, on_session_expired=on_session_expired
        )
        if settings is not None:
            self.coordinator = RefreshCoordinator.from_settings(
                self.transport, self.session, settings, **options
            )
        else:
            self.coordinator = RefreshCoordinator(self.transport, self.session, **options)

    async def __aenter__(self) -> "AuthenticatedClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    @property
    def user(self) -> Optional[Dict[str, Any]]:
        return self.session.user

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        data = await self.transport.login(email, password)
        tokens = data.get("tokens") or {}
        self.session.install(
            tokens["access_token"],
            tokens["refresh_token"],
            user=data.get("user"),
            now=self._clock(),
        )
        self.coordinator.schedule(tokens["access_token"])
        logger.info("client_login_succeeded")
        return data.get("user") or {}

    async def resume(self) -> bool:
        """Rebuild an access token from a refresh token left by an earlier process."""
        if not self.session.refresh_token:
            return False
        try:
            await self.coordinator.refresh()
        except SessionExpiredError:
            return False
        return True

    async def logout(self) -> None:
        """End the session locally even when the server cannot be reached."""
        access_token = self.session.access_token
        refresh_token = self.session.refresh_token
        self.coordinator.cancel_timer()
        self.session.clear(reason="logout")
        if not access_token and not refresh_token:
            return
        try:
            await self.transport.logout(access_token, refresh_token)
        except ClientAuthError as exc:
            logger.warning(
                "client_logout_server_call_failed",
                error_type=type(exc).__name__,
                error_code=exc.error_code,
            )

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send with the bearer token; on a 401 refresh once and retry once."""
        access_token = self.session.access_token
        response = await self.transport.send(method, url, access_token=access_token, **kwargs)
        if response.status_code != 401 or is_auth_endpoint(url):
            return response
        if self.session.closed or not self.session.refresh_token:
            return response

        logger.info("access_token_rejected", method=method, url=url)
        new_token = await self.coordinator.refresh(stale_token=access_token)
        return await self.transport.send(method, url, access_token=new_token, **kwargs)

    async def me(self) -> Dict[str, Any]:
        response = await self.request("GET", self.transport.path("/auth/me"))
        raise_for_auth_status(response)
        user = (response.json().get("data") or {}).get("user") or {}
        self.session.user = user
        return user

    async def on_visible(self) -> bool:
        return await self.coordinator.on_visible()

    async def on_online(self) -> bool:
        return await self.coordinator.on_online()

    async def aclose(self) -> None:
        await self.coordinator.aclose()
        await self.http.aclose()
