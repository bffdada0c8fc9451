from __future__ import annotations

import asyncio
import contextlib
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from turnstile.config import Settings
from turnstile.logging import fingerprint, get_logger
from turnstile.service.email import EmailService
from turnstile.service.errors import (
    AccountLockedError,
    AccountSuspendedError,
    ConflictError,
    EmailUnverifiedError,
    ForbiddenError,
    InvalidCredentialsError,
    NotFoundError,
    StorageConflictError,
    TokenError,
    TokenInvalidError,
    TokenReplayedError,
    TransientError,
    ValidationError,
)
from turnstile.service.ledger import RevocationLedger, RevocationStore
from turnstile.service.lockout import LockoutDecision, LockoutGuard, LockoutStore
from turnstile.service.signer import ACCESS, REFRESH, TokenSigner
from turnstile.storage.common import normalize_email
from turnstile.storage.errors import ConstraintViolation, StorageUnavailable
from turnstile.storage.models import ROLES, Account, TokenPair, utcnow

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
# Remaining-attempt hints appear once the caller is this close to a lock
_REMAINING_HINT_AT = 2
_ROLE_RANK = {role: rank for rank, role in enumerate(ROLES)}


class CredentialStore(LockoutStore, RevocationStore, Protocol):
    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = "student",
        name: Optional[str] = None,
        email_verified: bool = False,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def set_refresh_token(self, account_id: str, token: Optional[str]) -> None: ...

    def compare_and_set_refresh_token(
        self, account_id: str, expected: str, new: Optional[str]
    ) -> bool: ...

    def save_password(
        self, account_id: str, password_hash: str, *, clear_refresh_token: bool = True
    ) -> Optional[Account]: ...

    def update_profile(self, account_id: str, *, name: Optional[str]) -> Optional[Account]: ...

    def update_role(self, account_id: str, role: str) -> Optional[Account]: ...

    def set_suspension(
        self, account_id: str, reason: Optional[str], *, suspended: bool = True
    ) -> Optional[Account]: ...

    def set_verification_token(
        self, account_id: str, token_hash: str, expires_at: datetime
    ) -> Optional[Account]: ...

    def get_account_by_verification_token(self, token_hash: str) -> Optional[Account]: ...

    def mark_email_verified(self, account_id: str) -> Optional[Account]: ...

    def set_reset_token(
        self, account_id: str, token_hash: str, expires_at: datetime
    ) -> Optional[Account]: ...

    def get_account_by_reset_token(self, token_hash: str) -> Optional[Account]: ...


@dataclass
class AuthContext:
    account_id: str
    role: str
    email: str
    token_jti: str
    expires_at: datetime


@dataclass
class SignupResult:
    account: Account
    verification_token: str


def role_allows(role: str, required: str) -> bool:
    """Roles are ordered student < staff < admin."""
    return _ROLE_RANK.get(role, -1) >= _ROLE_RANK.get(required, len(ROLES))


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def validate_password(password: str) -> None:
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"password must be at least {MIN_PASSWORD_LENGTH} characters",
            detail={"field": "password"},
        )
    if len(password) > MAX_PASSWORD_LENGTH:
        raise ValidationError(
            f"password must be at most {MAX_PASSWORD_LENGTH} characters",
            detail={"field": "password"},
        )


class AuthService:
    """Login, token rotation, logout, and the account flows around them.

    Per account the token lifecycle moves Anonymous -> Authenticated ->
    (Rotating) -> Authenticated -> Revoked. The account's single
    ``current_refresh_token`` is the only shared mutable state; it is
    overwritten on login, swapped by compare-and-set on refresh, and
    cleared on logout, password change, reset, and suspension.
    """

    def __init__(
        self,
        store: CredentialStore,
        signer: TokenSigner,
        lockout: LockoutGuard,
        ledger: RevocationLedger,
        settings: Settings,
        *,
        email: Optional[EmailService] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.signer = signer
        self.lockout = lockout
        self.ledger = ledger
        self.settings = settings
        self.email = email
        self._clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self._background: set[asyncio.Task] = set()

    # helpers

    @contextlib.contextmanager
    def _storage(self, operation: str) -> Iterator[None]:
        try:
            yield
        except StorageUnavailable as exc:
            logger.error("auth_storage_unavailable", operation=operation, error=str(exc))
            raise TransientError(
                "authentication backend temporarily unavailable; retry shortly"
            ) from exc

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _password_matches(self, account: Optional[Account], password: str) -> bool:
        if account is None:
            # Same argon2 cost for unknown identifiers as for real ones
            if self._dummy_hash is None:
                self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
            with contextlib.suppress(VerificationError, InvalidHash):
                self._pwd_hasher.verify(self._dummy_hash, password)
            return False
        try:
            self._pwd_hasher.verify(account.password_hash, password)
        except VerifyMismatchError:
            return False
        except (VerificationError, InvalidHash) as exc:
            logger.warning("password_hash_invalid", account_id=account.id, error=str(exc))
            return False
        if self._pwd_hasher.check_needs_rehash(account.password_hash):
            self.store.save_password(
                account.id, self._hash_password(password), clear_refresh_token=False
            )
        return True

    def _mint(self, account: Account) -> TokenPair:
        access, access_claims = self.signer.issue(
            account.id,
            account.role,
            ACCESS,
            timedelta(minutes=self.settings.access_token_ttl_minutes),
        )
        refresh, refresh_claims = self.signer.issue(
            account.id,
            account.role,
            REFRESH,
            timedelta(minutes=self.settings.refresh_token_ttl_minutes),
        )
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            access_expires_at=access_claims.expires_at,
            refresh_expires_at=refresh_claims.expires_at,
        )

    def _notify(self, send: Callable[..., bool], *args: Any, **kwargs: Any) -> None:
        """Hand a message to the mail sink without waiting for delivery."""
        if self.email is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            send(*args, **kwargs)
            return
        task = loop.create_task(asyncio.to_thread(send, *args, **kwargs))
        self._background.add(task)
        task.add_done_callback(self._notification_done)

    def _notification_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("notification_failed", error_type=type(exc).__name__, error=str(exc))

    def _require_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        return account

    @staticmethod
    def _invalid_credentials(decision: LockoutDecision) -> InvalidCredentialsError:
        message = "Invalid email or password"
        remaining = decision.remaining_attempts
        if remaining is not None and 0 < remaining <= _REMAINING_HINT_AT:
            noun = "attempt" if remaining == 1 else "attempts"
            return InvalidCredentialsError(
                f"{message}. {remaining} {noun} remaining before the account is locked.",
                detail={"remaining_attempts": remaining},
            )
        return InvalidCredentialsError(message)

    # signup and verification

    async def signup(
        self, email: str, password: str, *, name: Optional[str] = None
    ) -> SignupResult:
        validate_password(password)
        with self._storage("signup"):
            try:
                account = self.store.create_account(
                    normalize_email(email), self._hash_password(password), name=name
                )
            except ConstraintViolation:
                raise ConflictError(
                    "An account with this email already exists", detail={"field": "email"}
                )
            token = self._issue_verification(account)
        logger.info("account_created", account_id=account.id)
        return SignupResult(account=account, verification_token=token)

    def _issue_verification(self, account: Account) -> str:
        token = secrets.token_urlsafe(32)
        ttl_hours = self.settings.email_verification_ttl_hours
        self.store.set_verification_token(
            account.id, _hash_token(token), self._clock() + timedelta(hours=ttl_hours)
        )
        if self.email is not None:
            self._notify(
                self.email.send_email_verification, account.email, token, ttl_hours=ttl_hours
            )
        return token

    async def verify_email(self, token: str) -> Account:
        with self._storage("verify_email"):
            account = self.store.get_account_by_verification_token(_hash_token(token))
            if (
                account is None
                or account.verification_expires_at is None
                or account.verification_expires_at <= self._clock()
            ):
                logger.warning("email_verification_invalid_token")
                raise ValidationError("invalid or expired verification token")
            verified = self.store.mark_email_verified(account.id)
        logger.info("email_verified", account_id=account.id)
        return verified

    async def resend_verification(self, email: str) -> Optional[str]:
        """Issue a fresh verification token; ``None`` when nothing was sent."""
        with self._storage("resend_verification"):
            account = self.store.get_account_by_email(email)
            if account is None or account.email_verified:
                return None
            return self._issue_verification(account)

    # login / refresh / logout

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[Account, TokenPair]:
        identifier = normalize_email(email)
        with self._storage("login"):
            # Lockout is consulted before any password comparison
            decision = self.lockout.check_allowed(identifier)
            if not decision.allowed:
                logger.warning(
                    "login_refused_locked",
                    email_hash=fingerprint(identifier),
                    ip_addr=ip_addr,
                )
                raise AccountLockedError(
                    decision.message, retry_after_seconds=decision.retry_after_seconds
                )

            account = self.store.get_account_by_email(identifier)
            if not self._password_matches(account, password):
                failure = self.lockout.record_failure(identifier)
                logger.info(
                    "login_failed",
                    email_hash=fingerprint(identifier),
                    ip_addr=ip_addr,
                    known_account=account is not None,
                )
                if not failure.allowed:
                    raise AccountLockedError(
                        failure.message, retry_after_seconds=failure.retry_after_seconds
                    )
                raise self._invalid_credentials(failure)

            if account.suspended:
                reason = account.suspension.reason
                raise AccountSuspendedError(
                    f"Account is suspended: {reason}" if reason else "Account is suspended"
                )
            if not account.email_verified:
                raise EmailUnverifiedError("Please verify your email before logging in")

            self.lockout.record_success(identifier)
            pair = self._mint(account)
            # The previous refresh token is superseded, not revoked; it fails
            # the equality check on any later refresh.
            self.store.set_refresh_token(account.id, pair.refresh_token)
        logger.info(
            "login_succeeded", account_id=account.id, ip_addr=ip_addr, user_agent=user_agent
        )
        return account, pair

    async def refresh(self, presented: str) -> Tuple[Account, TokenPair]:
        claims = self.signer.verify(presented, REFRESH)
        with self._storage("refresh"):
            account = self.store.get_account(claims.subject)
            if account is None:
                raise TokenInvalidError("account no longer exists")
            stored = account.current_refresh_token
            if stored is None or not hmac.compare_digest(
                stored.encode("utf-8"), presented.encode("utf-8")
            ):
                logger.warning(
                    "refresh_token_replayed",
                    account_id=account.id,
                    reason="superseded",
                    jti=claims.jti,
                )
                raise TokenReplayedError("refresh token has been superseded")
            if await self.ledger.contains(presented):
                logger.warning(
                    "refresh_token_replayed", account_id=account.id, reason="revoked", jti=claims.jti
                )
                raise TokenReplayedError("refresh token has been revoked")
            if account.suspended:
                raise AccountSuspendedError("Account is suspended")

            pair = self._mint(account)
            if not self.store.compare_and_set_refresh_token(
                account.id, presented, pair.refresh_token
            ):
                logger.warning("refresh_rotation_conflict", account_id=account.id, jti=claims.jti)
                raise StorageConflictError("refresh token was rotated by a concurrent request")
        try:
            await self.ledger.record(presented, claims.expires_at)
        except StorageUnavailable as exc:
            # Rotation already retired the token through the equality check
            logger.warning(
                "refresh_ledger_record_failed", account_id=account.id, error=str(exc)
            )
        logger.info("refresh_rotated", account_id=account.id)
        return account, pair

    async def logout(
        self, access_token: Optional[str], refresh_token: Optional[str] = None
    ) -> None:
        """Revoke the presented tokens and drop the account's refresh token. Idempotent.

        A verifiable refresh token is enough on its own, so a client whose
        access token has already expired can still end its session.
        """
        claims = None
        access_error: Optional[TokenError] = None
        if access_token:
            try:
                claims = self.signer.verify(access_token, ACCESS)
            except TokenError as exc:
                access_error = exc
        refresh_claims = None
        if refresh_token:
            try:
                refresh_claims = self.signer.verify(refresh_token, REFRESH)
            except TokenError as exc:
                # Expired or forged refresh tokens need no revocation
                logger.info("logout_refresh_token_ignored", error_code=exc.error_code)
        if claims is not None and refresh_claims is not None:
            if refresh_claims.subject != claims.subject:
                logger.warning("logout_refresh_subject_mismatch", account_id=claims.subject)
                refresh_claims = None
        if claims is None and refresh_claims is None:
            raise access_error or TokenInvalidError("no valid token presented")

        with self._storage("logout"):
            if claims is not None:
                await self.ledger.record(access_token, claims.expires_at)
                self.store.set_refresh_token(claims.subject, None)
            if refresh_claims is not None:
                await self.ledger.record(refresh_token, refresh_claims.expires_at)
                if claims is None:
                    # Only the holder of the current token may clear it
                    self.store.compare_and_set_refresh_token(
                        refresh_claims.subject, refresh_token, None
                    )
        subject = claims.subject if claims is not None else refresh_claims.subject
        logger.info("logout", account_id=subject, access_token_valid=claims is not None)

    async def authenticate(self, access_token: str) -> AuthContext:
        claims = self.signer.verify(access_token, ACCESS)
        with self._storage("authenticate"):
            if await self.ledger.contains(access_token):
                raise TokenReplayedError("access token has been revoked")
            account = self.store.get_account(claims.subject)
        if account is None:
            raise TokenInvalidError("account no longer exists")
        if account.suspended:
            raise AccountSuspendedError("Account is suspended")
        if claims.role != account.role:
            # Role changed since issue; the client must refresh
            raise TokenInvalidError("token role is stale")
        return AuthContext(
            account_id=account.id,
            role=account.role,
            email=account.email,
            token_jti=claims.jti,
            expires_at=claims.expires_at,
        )

    # profile and password

    async def get_profile(self, account_id: str) -> Account:
        with self._storage("get_profile"):
            return self._require_account(account_id)

    async def update_profile(self, account_id: str, *, name: Optional[str]) -> Account:
        with self._storage("update_profile"):
            self._require_account(account_id)
            return self.store.update_profile(account_id, name=name)

    async def change_password(
        self, account_id: str, current_password: str, new_password: str
    ) -> Tuple[Account, TokenPair]:
        """Replace the password, end other sessions, and re-issue for this one."""
        validate_password(new_password)
        with self._storage("change_password"):
            account = self._require_account(account_id)
            if not self._password_matches(account, current_password):
                raise InvalidCredentialsError("Current password is incorrect")
            account = self.store.save_password(account.id, self._hash_password(new_password))
            pair = self._mint(account)
            self.store.set_refresh_token(account.id, pair.refresh_token)
        if self.email is not None:
            self._notify(self.email.send_password_changed, account.email)
        logger.info("password_changed", account_id=account.id)
        return account, pair

    async def forgot_password(self, email: str) -> Optional[str]:
        """Start a reset; returns the token, or ``None`` for unknown emails.

        Callers must answer identically in both cases.
        """
        with self._storage("forgot_password"):
            account = self.store.get_account_by_email(email)
            if account is None:
                logger.info("password_reset_unknown_email", email_hash=fingerprint(normalize_email(email)))
                return None
            token = secrets.token_urlsafe(32)
            ttl_minutes = self.settings.password_reset_ttl_minutes
            self.store.set_reset_token(
                account.id, _hash_token(token), self._clock() + timedelta(minutes=ttl_minutes)
            )
        if self.email is not None:
            self._notify(self.email.send_password_reset, account.email, token, ttl_minutes=ttl_minutes)
        logger.info("password_reset_requested", account_id=account.id)
        return token

    async def reset_password(self, token: str, new_password: str) -> Account:
        validate_password(new_password)
        with self._storage("reset_password"):
            account = self.store.get_account_by_reset_token(_hash_token(token))
            if (
                account is None
                or account.reset_expires_at is None
                or account.reset_expires_at <= self._clock()
            ):
                logger.warning("password_reset_invalid_token")
                raise ValidationError("invalid or expired reset token")
            account = self.store.save_password(account.id, self._hash_password(new_password))
            self.lockout.unlock(account.email)
        if self.email is not None:
            self._notify(self.email.send_password_changed, account.email)
        logger.info("password_reset_completed", account_id=account.id)
        return account

    # administration

    async def unlock_account(self, account_id: str) -> Account:
        with self._storage("unlock_account"):
            account = self._require_account(account_id)
            self.lockout.unlock(account.email)
        return account

    async def suspend_account(
        self, account_id: str, reason: Optional[str], *, actor_id: Optional[str] = None
    ) -> Account:
        if actor_id is not None and actor_id == account_id:
            raise ForbiddenError("administrators cannot suspend themselves")
        with self._storage("suspend_account"):
            self._require_account(account_id)
            account = self.store.set_suspension(account_id, reason)
        logger.warning("account_suspended", account_id=account_id, actor_id=actor_id)
        return account

    async def reinstate_account(self, account_id: str, *, actor_id: Optional[str] = None) -> Account:
        with self._storage("reinstate_account"):
            self._require_account(account_id)
            account = self.store.set_suspension(account_id, None, suspended=False)
        logger.info("account_reinstated", account_id=account_id, actor_id=actor_id)
        return account

    async def set_role(self, account_id: str, role: str) -> Account:
        if role not in ROLES:
            raise ValidationError(f"role must be one of {', '.join(ROLES)}", detail={"field": "role"})
        with self._storage("set_role"):
            self._require_account(account_id)
            return self.store.update_role(account_id, role)
