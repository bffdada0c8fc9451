from __future__ import annotations

import contextlib
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, Optional

import psycopg
from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from turnstile.logging import get_logger
from turnstile.storage.common import apply_login_failure, normalize_email
from turnstile.storage.errors import ConstraintViolation, StorageUnavailable
from turnstile.storage.models import (
    DEFAULT_ROLE,
    Account,
    LockoutState,
    Suspension,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'student',
        name TEXT,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        suspended_at TIMESTAMPTZ,
        suspension_reason TEXT,
        current_refresh_token TEXT,
        verification_token_hash TEXT,
        verification_expires_at TIMESTAMPTZ,
        reset_token_hash TEXT,
        reset_expires_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS login_lockout (
        identifier TEXT PRIMARY KEY,
        failed_count INTEGER NOT NULL DEFAULT 0,
        window_started_at TIMESTAMPTZ,
        last_failed_at TIMESTAMPTZ,
        locked_until TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS revoked_token (
        token_digest TEXT PRIMARY KEY,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS revoked_token_expires_at_idx ON revoked_token (expires_at)",
)

_ACCOUNT_COLUMNS = frozenset(
    {
        "password_hash",
        "role",
        "name",
        "email_verified",
        "suspended_at",
        "suspension_reason",
        "current_refresh_token",
        "verification_token_hash",
        "verification_expires_at",
        "reset_token_hash",
        "reset_expires_at",
    }
)


class PostgresStore:
    """Postgres-backed credential store.

    Refresh-token rotation is a conditional UPDATE and lockout counting runs
    under a row lock, so any number of service processes can share one
    database without further coordination.
    """

    def __init__(self, dsn: str, *, pool: Optional[ConnectionPool] = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except psycopg.OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StorageUnavailable("credential store unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @staticmethod
    def _row_to_account(row: Dict[str, Any]) -> Account:
        suspension = None
        if row.get("suspended_at"):
            suspension = Suspension(at=row["suspended_at"], reason=row.get("suspension_reason"))
        return Account(
            id=row["id"],
            email=row["email"],
            password_hash=row["password_hash"],
            role=row["role"],
            name=row.get("name"),
            email_verified=bool(row.get("email_verified")),
            suspension=suspension,
            current_refresh_token=row.get("current_refresh_token"),
            verification_token_hash=row.get("verification_token_hash"),
            verification_expires_at=row.get("verification_expires_at"),
            reset_token_hash=row.get("reset_token_hash"),
            reset_expires_at=row.get("reset_expires_at"),
            created_at=row["created_at"],
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _row_to_lockout(row: Dict[str, Any]) -> LockoutState:
        return LockoutState(
            identifier=row["identifier"],
            failed_count=row["failed_count"],
            window_started_at=row.get("window_started_at"),
            last_failed_at=row.get("last_failed_at"),
            locked_until=row.get("locked_until"),
        )

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
        account_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (id, email, password_hash, role, name, email_verified)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (account_id, normalize_email(email), password_hash, role, name, email_verified),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_account(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM account WHERE id = %s", (account_id,)).fetchone()
        return self._row_to_account(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def _update(self, account_id: str, **fields: Any) -> Optional[Account]:
        unknown = set(fields) - _ACCOUNT_COLUMNS
        if unknown:
            raise ValueError(f"unknown account columns: {sorted(unknown)}")
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = {}").format(sql.Identifier(col), sql.Placeholder(col))
            for col in fields
        )
        query = sql.SQL(
            "UPDATE account SET {}, updated_at = now() WHERE id = {} RETURNING *"
        ).format(assignments, sql.Placeholder("account_id"))
        with self._connect() as conn:
            row = conn.execute(query, {**fields, "account_id": account_id}).fetchone()
        return self._row_to_account(row) if row else None

    def set_refresh_token(self, account_id: str, token: Optional[str]) -> None:
        self._update(account_id, current_refresh_token=token)

    def compare_and_set_refresh_token(
        self, account_id: str, expected: str, new: Optional[str]
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE account SET current_refresh_token = %s, updated_at = now()
                WHERE id = %s AND current_refresh_token = %s
                """,
                (new, account_id, expected),
            )
            return cur.rowcount == 1

    def save_password(
        self, account_id: str, password_hash: str, *, clear_refresh_token: bool = True
    ) -> Optional[Account]:
        fields: Dict[str, Any] = {
            "password_hash": password_hash,
            "reset_token_hash": None,
            "reset_expires_at": None,
        }
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
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE account
                    SET suspended_at = now(), suspension_reason = %s,
                        current_refresh_token = NULL, updated_at = now()
                    WHERE id = %s RETURNING *
                    """,
                    (reason, account_id),
                ).fetchone()
            return self._row_to_account(row) if row else None
        return self._update(account_id, suspended_at=None, suspension_reason=None)

    def set_verification_token(
        self, account_id: str, token_hash: str, expires_at: datetime
    ) -> Optional[Account]:
        return self._update(
            account_id,
            verification_token_hash=token_hash,
            verification_expires_at=expires_at,
        )

    def get_account_by_verification_token(self, token_hash: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE verification_token_hash = %s", (token_hash,)
            ).fetchone()
        return self._row_to_account(row) if row else None

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
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE reset_token_hash = %s", (token_hash,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    # lockout

    def get_lockout_state(self, identifier: str) -> Optional[LockoutState]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM login_lockout WHERE identifier = %s", (identifier,)
            ).fetchone()
        return self._row_to_lockout(row) if row else None

    def record_login_failure(
        self,
        identifier: str,
        *,
        now: datetime,
        threshold: int,
        window: timedelta,
        lockout: timedelta,
    ) -> LockoutState:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO login_lockout (identifier) VALUES (%s) ON CONFLICT (identifier) DO NOTHING",
                (identifier,),
            )
            row = conn.execute(
                "SELECT * FROM login_lockout WHERE identifier = %s FOR UPDATE",
                (identifier,),
            ).fetchone()
            current = self._row_to_lockout(row)
            state = apply_login_failure(
                current,
                identifier,
                now=now,
                threshold=threshold,
                window=window,
                lockout=lockout,
            )
            conn.execute(
                """
                UPDATE login_lockout
                SET failed_count = %s, window_started_at = %s, last_failed_at = %s, locked_until = %s
                WHERE identifier = %s
                """,
                (
                    state.failed_count,
                    state.window_started_at,
                    state.last_failed_at,
                    state.locked_until,
                    identifier,
                ),
            )
        return state

    def clear_lockout(self, identifier: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM login_lockout WHERE identifier = %s", (identifier,))

    # revocation ledger

    def add_revoked_token(self, token_digest: str, expires_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO revoked_token (token_digest, expires_at) VALUES (%s, %s)
                ON CONFLICT (token_digest)
                DO UPDATE SET expires_at = GREATEST(revoked_token.expires_at, EXCLUDED.expires_at)
                """,
                (token_digest, expires_at),
            )

    def is_token_revoked(self, token_digest: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM revoked_token WHERE token_digest = %s AND expires_at > %s",
                (token_digest, now),
            ).fetchone()
        return row is not None

    def purge_revoked_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM revoked_token WHERE expires_at <= %s", (now,))
            return cur.rowcount

    def ping(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1")
            return True
        except StorageUnavailable:
            return False

    def close(self) -> None:
        self.pool.close()
