from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from turnstile.client.storage import MemoryRefreshTokenStore, RefreshTokenStore
from turnstile.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ClientSession:
    """The one owned session object of a client process.

    Created empty, populated by ``install`` at login and after every refresh,
    and emptied by ``clear`` on logout or a rejected refresh. ``generation``
    increases on every mutation; a refresh that started under an older
    generation must not install its result.
    """

    store: RefreshTokenStore = field(default_factory=MemoryRefreshTokenStore)
    access_token: Optional[str] = None
    user: Optional[Dict[str, Any]] = None
    last_refresh_at: Optional[float] = None
    retry_count: int = 0
    generation: int = 0
    closed: bool = False

    @property
    def refresh_token(self) -> Optional[str]:
        return self.store.load()

    @property
    def authenticated(self) -> bool:
        return not self.closed and self.access_token is not None

    def install(
        self,
        access_token: str,
        refresh_token: str,
        *,
        user: Optional[Dict[str, Any]] = None,
        now: float,
    ) -> None:
        self.store.save(refresh_token)
        self.access_token = access_token
        if user is not None:
            self.user = user
        self.last_refresh_at = now
        self.retry_count = 0
        self.closed = False
        self.generation += 1

    def clear(self, *, reason: str = "logout") -> None:
        self.store.clear()
        self.access_token = None
        self.user = None
        self.last_refresh_at = None
        self.retry_count = 0
        self.closed = True
        self.generation += 1
        logger.info("client_session_cleared", reason=reason)

