"""Durable client-local storage for the refresh token.

The access token never touches these stores; it lives only in memory on the
session object.
"""

from __future__ import annotations

import os
import tempfile
import threading
from pathlib import Path
from typing import Optional, Protocol, Union

from turnstile.logging import get_logger

logger = get_logger(__name__)


class RefreshTokenStore(Protocol):
    def load(self) -> Optional[str]: ...

    def save(self, token: str) -> None: ...

    def clear(self) -> None: ...


class MemoryRefreshTokenStore:
    def __init__(self, token: Optional[str] = None) -> None:
        self._token = token
        self._lock = threading.Lock()

    def load(self) -> Optional[str]:
        with self._lock:
            return self._token

    def save(self, token: str) -> None:
        with self._lock:
            self._token = token

    def clear(self) -> None:
        with self._lock:
            self._token = None


class FileRefreshTokenStore:
    """Keeps the token in a single owner-only (0600) file.

    Writes go through a temp file in the same directory and an atomic rename,
    so a reader never observes a half-written token.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def load(self) -> Optional[str]:
        with self._lock:
            if not self.path.exists() or self.path.is_symlink():
                return None
            try:
                token = self.path.read_text().strip()
            except OSError as exc:
                logger.warning("refresh_token_read_failed", path=str(self.path), error=str(exc))
                return None
            return token or None

    def save(self, token: str) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=".refresh_", suffix=".tmp"
            )
            try:
                try:
                    os.fchmod(fd, 0o600)
                    os.write(fd, token.encode("utf-8"))
                    os.fsync(fd)
                finally:
                    os.close(fd)
                os.replace(tmp_path, self.path)
            except OSError:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise

    def clear(self) -> None:
        with self._lock:
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
