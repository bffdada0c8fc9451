from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, Protocol, Union

from redis.exceptions import RedisError

from turnstile.logging import get_logger
from turnstile.storage.common import token_digest
from turnstile.storage.errors import StorageUnavailable
from turnstile.storage.models import utcnow
from turnstile.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


class RevocationStore(Protocol):
    def add_revoked_token(self, token_digest: str, expires_at: datetime) -> None: ...

    def is_token_revoked(self, token_digest: str, now: datetime) -> bool: ...

    def purge_revoked_tokens(self, now: datetime) -> int: ...


class RevocationLedger:
    """Record of retired tokens, kept until each token's natural expiry.

    With Redis every entry carries a native TTL and disappears on its own.
    Without it entries live in the credential store, are filtered by
    ``expires_at`` on read, and are deleted by :meth:`sweep`.
    Only a SHA-256 digest of each token is stored.
    """

    def __init__(
        self,
        store: RevocationStore,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self._clock = clock

    @property
    def self_expiring(self) -> bool:
        return self.cache is not None

    async def record(self, token: str, expires_at: datetime) -> None:
        if expires_at <= self._clock():
            # Already unusable; signature verification rejects it
            return
        digest = token_digest(token)
        if self.cache is not None:
            try:
                await self.cache.revoke_token(digest, expires_at)
            except RedisError as exc:
                logger.error("revocation_record_failed", token_fingerprint=digest[:12], error=str(exc))
                raise StorageUnavailable("revocation ledger unavailable") from exc
        else:
            self.store.add_revoked_token(digest, expires_at)
        logger.debug("token_revoked", token_fingerprint=digest[:12], expires_at=expires_at.isoformat())

    async def contains(self, token: str) -> bool:
        digest = token_digest(token)
        if self.cache is not None:
            try:
                return await self.cache.is_token_revoked(digest)
            except RedisError as exc:
                # Fail closed: the caller turns this into a retryable rejection
                logger.warning(
                    "revocation_check_failed", token_fingerprint=digest[:12], error=str(exc)
                )
                raise StorageUnavailable("revocation ledger unavailable") from exc
        return self.store.is_token_revoked(digest, self._clock())

    def sweep(self) -> int:
        """Delete store-backed entries past their expiry; no-op with Redis."""
        if self.self_expiring:
            return 0
        removed = self.store.purge_revoked_tokens(self._clock())
        if removed:
            logger.info("revocation_ledger_sweep", removed=removed)
        return removed
