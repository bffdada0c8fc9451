from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from turnstile.client.errors import ClientAuthError, TokenRejectedError, TransientAuthError
from turnstile.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0

# Timeouts and connection failures leave the session intact
HTTPX_RETRYABLE = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)


def _error_fields(response: httpx.Response) -> tuple[Optional[str], str]:
    try:
        body = response.json()
    except ValueError:
        return None, response.reason_phrase or f"HTTP {response.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("code"), error.get("message") or f"HTTP {response.status_code}"
    return None, f"HTTP {response.status_code}"


def raise_for_auth_status(response: httpx.Response) -> None:
    """Translate a non-2xx response into the client error taxonomy."""
    status = response.status_code
    if status < 400:
        return
    code, message = _error_fields(response)
    if status in (401, 403):
        raise TokenRejectedError(message, status_code=status, error_code=code)
    if status == 429 or status >= 500:
        raise TransientAuthError(message, status_code=status, error_code=code)
    raise ClientAuthError(message, status_code=status, error_code=code)


class AuthTransport:
    """Thin async HTTP binding for the auth endpoints.

    Every call is bounded by ``timeout``; a hung network surfaces as
    TransientAuthError instead of blocking the caller.
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        api_prefix: str = "/v1",
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_prefix = api_prefix.rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    def path(self, suffix: str) -> str:
        return f"{self.api_prefix}{suffix}"

    async def send(
        self,
        method: str,
        url: str,
        *,
        access_token: Optional[str] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Issue a request, attaching the bearer token when one is given."""
        headers = dict(kwargs.pop("headers", None) or {})
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        try:
            return await self.client.request(method, url, headers=headers, **kwargs)
        except HTTPX_RETRYABLE as exc:
            logger.warning(
                "auth_transport_unreachable",
                method=method,
                url=url,
                error_type=type(exc).__name__,
            )
            raise TransientAuthError(f"{type(exc).__name__}: {exc}") from exc

    async def _call(
        self, suffix: str, *, method: str = "POST", **kwargs: Any
    ) -> Dict[str, Any]:
        response = await self.send(method, self.path(suffix), **kwargs)
        raise_for_auth_status(response)
        try:
            body = response.json()
        except ValueError as exc:
            raise TransientAuthError("malformed response from auth server") from exc
        data = body.get("data") if isinstance(body, dict) else None
        return data if isinstance(data, dict) else {}

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        return await self._call("/auth/login", json={"email": email, "password": password})

    async def refresh(self, refresh_token: str) -> Dict[str, Any]:
        data = await self._call("/auth/refresh", json={"refresh_token": refresh_token})
        if not data.get("access_token") or not data.get("refresh_token"):
            raise TransientAuthError("refresh response is missing tokens")
        return data

    async def logout(
        self, access_token: Optional[str], refresh_token: Optional[str] = None
    ) -> None:
        await self._call(
            "/auth/logout", access_token=access_token, json={"refresh_token": refresh_token}
        )

    async def me(self, access_token: str) -> Dict[str, Any]:
        data = await self._call("/auth/me", method="GET", access_token=access_token)
        return data.get("user") or {}

    async def aclose(self) -> None:
        if self._owns_client and not self.client.is_closed:
            await self.client.aclose()
