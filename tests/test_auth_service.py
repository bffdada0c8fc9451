"""Unit tests for the auth service: login, rotation, logout, account flows."""

import asyncio
import time
from datetime import timedelta

import pytest

from turnstile.config import Settings
from turnstile.service.auth import AuthService, role_allows
from turnstile.service.errors import (
    AccountLockedError,
    AccountSuspendedError,
    ConflictError,
    EmailUnverifiedError,
    ForbiddenError,
    InvalidCredentialsError,
    StorageConflictError,
    TokenExpiredError,
    TokenInvalidError,
    TokenReplayedError,
    TokenTypeMismatchError,
    TransientError,
    ValidationError,
)
from turnstile.service.ledger import RevocationLedger
from turnstile.service.lockout import LockoutGuard, LockoutPolicy
from turnstile.service.signer import ACCESS, TokenSigner
from turnstile.storage.errors import StorageUnavailable
from turnstile.storage.memory import MemoryStore

PASSWORD = "correct horse battery"
WRONG = "wrong password!!"


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
        lockout_threshold=5,
    )


@pytest.fixture
def store():
    return MemoryStore()


class MovableClock:
    def __init__(self):
        self.now = time.time()

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _build(store, settings, *, cache=None, email=None, clock=time.time):
    return AuthService(
        store,
        TokenSigner.from_settings(settings, clock=clock),
        LockoutGuard(store, LockoutPolicy.from_settings(settings)),
        RevocationLedger(store, cache),
        settings,
        email=email,
    )


@pytest.fixture
def auth(store, settings):
    return _build(store, settings)


async def _verified(auth, email="a@x.com", password=PASSWORD):
    result = await auth.signup(email, password)
    await auth.verify_email(result.verification_token)
    return result.account


class TestSignup:
    async def test_signup_creates_unverified_student(self, auth):
        result = await auth.signup("New@Example.edu", PASSWORD, name="Ada")
        assert result.account.email == "new@example.edu"
        assert result.account.role == "student"
        assert not result.account.email_verified
        assert result.verification_token

    async def test_duplicate_email_conflicts(self, auth):
        await auth.signup("a@x.com", PASSWORD)
        with pytest.raises(ConflictError):
            await auth.signup("A@X.com", PASSWORD)

    async def test_short_password_rejected(self, auth):
        with pytest.raises(ValidationError):
            await auth.signup("a@x.com", "short")

    async def test_unverified_account_cannot_log_in(self, auth):
        await auth.signup("a@x.com", PASSWORD)
        with pytest.raises(EmailUnverifiedError):
            await auth.login("a@x.com", PASSWORD)

    async def test_verification_token_single_use(self, auth):
        result = await auth.signup("a@x.com", PASSWORD)
        await auth.verify_email(result.verification_token)
        with pytest.raises(ValidationError):
            await auth.verify_email(result.verification_token)

    async def test_resend_only_for_unverified(self, auth):
        await auth.signup("a@x.com", PASSWORD)
        assert await auth.resend_verification("a@x.com")
        assert await auth.resend_verification("nobody@x.com") is None


class TestLogin:
    async def test_login_issues_pair_and_stores_refresh(self, auth, store):
        account = await _verified(auth)
        _, pair = await auth.login("a@x.com", PASSWORD)
        assert store.get_account(account.id).current_refresh_token == pair.refresh_token
        assert pair.token_type == "bearer"
        ctx = await auth.authenticate(pair.access_token)
        assert ctx.account_id == account.id

    async def test_unknown_email_and_wrong_password_look_alike(self, auth):
        await _verified(auth)
        with pytest.raises(InvalidCredentialsError) as unknown:
            await auth.login("nobody@x.com", WRONG)
        with pytest.raises(InvalidCredentialsError) as wrong:
            await auth.login("a@x.com", WRONG)
        assert unknown.value.message == wrong.value.message

    async def test_remaining_attempts_hint_near_threshold(self, auth):
        await _verified(auth)
        for _ in range(2):
            with pytest.raises(InvalidCredentialsError):
                await auth.login("a@x.com", WRONG)
        with pytest.raises(InvalidCredentialsError) as exc:
            await auth.login("a@x.com", WRONG)
        assert "2 attempts remaining" in exc.value.message
        assert exc.value.detail["remaining_attempts"] == 2

    async def test_new_login_supersedes_previous_refresh_token(self, auth):
        await _verified(auth)
        _, first = await auth.login("a@x.com", PASSWORD)
        await auth.login("a@x.com", PASSWORD)
        with pytest.raises(TokenReplayedError):
            await auth.refresh(first.refresh_token)

    async def test_suspended_account_refused_after_password_check(self, auth):
        account = await _verified(auth)
        await auth.suspend_account(account.id, "unpaid fees")
        with pytest.raises(AccountSuspendedError) as exc:
            await auth.login("a@x.com", PASSWORD)
        assert "unpaid fees" in exc.value.message
        with pytest.raises(InvalidCredentialsError):
            await auth.login("a@x.com", WRONG)


class TestLockoutScenario:
    async def test_four_failures_then_correct_password_succeeds(self, auth, store):
        """Below the threshold a correct login succeeds and resets the count."""
        await _verified(auth)
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                await auth.login("a@x.com", WRONG)
        await auth.login("a@x.com", PASSWORD)
        assert store.get_lockout_state("a@x.com") is None

    async def test_threshold_failures_lock_even_correct_password(self, auth):
        await _verified(auth)
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                await auth.login("a@x.com", WRONG)
        with pytest.raises(AccountLockedError) as locked:
            await auth.login("a@x.com", WRONG)
        assert locked.value.retry_after_seconds > 0
        with pytest.raises(AccountLockedError):
            await auth.login("a@x.com", PASSWORD)

    async def test_unknown_identifiers_lock_too(self, auth):
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                await auth.login("ghost@x.com", WRONG)
        with pytest.raises(AccountLockedError):
            await auth.login("ghost@x.com", WRONG)

    async def test_admin_unlock(self, auth):
        account = await _verified(auth)
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                await auth.login("a@x.com", WRONG)
        with pytest.raises(AccountLockedError):
            await auth.login("a@x.com", WRONG)
        await auth.unlock_account(account.id)
        await auth.login("a@x.com", PASSWORD)


class TestRefresh:
    async def test_rotation_issues_new_pair(self, auth, store):
        account = await _verified(auth)
        _, first = await auth.login("a@x.com", PASSWORD)
        _, second = await auth.refresh(first.refresh_token)
        assert second.refresh_token != first.refresh_token
        assert store.get_account(account.id).current_refresh_token == second.refresh_token

    async def test_used_refresh_token_is_replay(self, auth):
        await _verified(auth)
        _, first = await auth.login("a@x.com", PASSWORD)
        _, second = await auth.refresh(first.refresh_token)
        with pytest.raises(TokenReplayedError):
            await auth.refresh(first.refresh_token)
        # The legitimate holder is unaffected
        await auth.refresh(second.refresh_token)

    async def test_access_token_cannot_refresh(self, auth):
        await _verified(auth)
        _, pair = await auth.login("a@x.com", PASSWORD)
        with pytest.raises(TokenTypeMismatchError):
            await auth.refresh(pair.access_token)

    async def test_concurrent_refresh_exactly_one_wins(self, auth):
        await _verified(auth)
        _, pair = await auth.login("a@x.com", PASSWORD)
        results = await asyncio.gather(
            auth.refresh(pair.refresh_token),
            auth.refresh(pair.refresh_token),
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], TokenReplayedError)

    async def test_lost_compare_and_set_is_replay(self, auth, store, monkeypatch):
        """A rotation race lost at the store surfaces as a replay."""
        await _verified(auth)
        _, pair = await auth.login("a@x.com", PASSWORD)
        monkeypatch.setattr(store, "compare_and_set_refresh_token", lambda *a: False)
        with pytest.raises(StorageConflictError) as exc:
            await auth.refresh(pair.refresh_token)
        assert isinstance(exc.value, TokenReplayedError)
        assert exc.value.error_code == "token_replayed"

    async def test_suspension_ends_refresh(self, auth):
        account = await _verified(auth)
        _, pair = await auth.login("a@x.com", PASSWORD)
        await auth.suspend_account(account.id, None)
        with pytest.raises(TokenReplayedError):
            await auth.refresh(pair.refresh_token)

    async def test_ledger_outage_after_rotation_is_tolerated(self, store, settings):
        class RevokeFails:
            async def revoke_token(self, digest, expires_at):
                from redis.exceptions import ConnectionError as RedisConnectionError

                raise RedisConnectionError("down")

            async def is_token_revoked(self, digest):
                return False

        auth = _build(store, settings, cache=RevokeFails())
        await _verified(auth)
        _, pair = await auth.login("a@x.com", PASSWORD)
        _, rotated = await auth.refresh(pair.refresh_token)
        with pytest.raises(TokenReplayedError):
            await auth.refresh(pair.refresh_token)
        assert rotated.refresh_token


class TestLogout:
    async def test_logout_revokes_both_tokens(self, auth):
        await _verified(auth)
        _, pair = await auth.login("a@x.com", PASSWORD)
        await auth.logout(pair.access_token, pair.refresh_token)
        with pytest.raises(TokenReplayedError):
            await auth.authenticate(pair.access_token)
        with pytest.raises(TokenReplayedError):
            await auth.refresh(pair.refresh_token)

    async def test_logout_is_idempotent(self, auth):
        await _verified(auth)
        _, pair = await auth.login("a@x.com", PASSWORD)
        await auth.logout(pair.access_token, pair.refresh_token)
        await auth.logout(pair.access_token, pair.refresh_token)

    async def test_logout_ignores_foreign_refresh_token(self, auth, store):
        await _verified(auth, "a@x.com")
        other = await _verified(auth, "b@x.com")
        _, mine = await auth.login("a@x.com", PASSWORD)
        _, theirs = await auth.login("b@x.com", PASSWORD)
        await auth.logout(mine.access_token, theirs.refresh_token)
        assert store.get_account(other.id).current_refresh_token == theirs.refresh_token
        await auth.refresh(theirs.refresh_token)

    async def test_expired_access_token_still_retires_refresh_token(self, store, settings):
        """Logging out after the access token lapsed kills the refresh token."""
        clock = MovableClock()
        auth = _build(store, settings, clock=clock)
        account = await _verified(auth)
        _, pair = await auth.login("a@x.com", PASSWORD)
        clock.advance(16 * 60)
        await auth.logout(pair.access_token, pair.refresh_token)
        assert store.get_account(account.id).current_refresh_token is None
        with pytest.raises(TokenReplayedError):
            await auth.refresh(pair.refresh_token)

    async def test_refresh_token_alone_is_enough(self, auth, store):
        account = await _verified(auth)
        _, pair = await auth.login("a@x.com", PASSWORD)
        await auth.logout(None, pair.refresh_token)
        assert store.get_account(account.id).current_refresh_token is None
        with pytest.raises(TokenReplayedError):
            await auth.refresh(pair.refresh_token)

    async def test_superseded_refresh_token_leaves_current_session(self, auth, store):
        """Without a live access token only the current refresh token can clear it."""
        account = await _verified(auth)
        _, old = await auth.login("a@x.com", PASSWORD)
        _, current = await auth.refresh(old.refresh_token)
        await auth.logout(None, old.refresh_token)
        assert store.get_account(account.id).current_refresh_token == current.refresh_token

    async def test_no_valid_token_is_rejected(self, store, settings):
        clock = MovableClock()
        auth = _build(store, settings, clock=clock)
        await _verified(auth)
        _, pair = await auth.login("a@x.com", PASSWORD)
        clock.advance(16 * 60)
        with pytest.raises(TokenExpiredError):
            await auth.logout(pair.access_token, "not-a-token")
        with pytest.raises(TokenInvalidError):
            await auth.logout(None, None)


class TestAuthenticate:
    async def test_refresh_token_rejected_as_bearer(self, auth):
        await _verified(auth)
        _, pair = await auth.login("a@x.com", PASSWORD)
        with pytest.raises(TokenTypeMismatchError):
            await auth.authenticate(pair.refresh_token)

    async def test_role_change_invalidates_access_token(self, auth):
        account = await _verified(auth)
        _, pair = await auth.login("a@x.com", PASSWORD)
        await auth.set_role(account.id, "staff")
        with pytest.raises(TokenInvalidError):
            await auth.authenticate(pair.access_token)
        _, rotated = await auth.refresh(pair.refresh_token)
        assert (await auth.authenticate(rotated.access_token)).role == "staff"

    async def test_unknown_role_rejected(self, auth):
        account = await _verified(auth)
        with pytest.raises(ValidationError):
            await auth.set_role(account.id, "dean")

    def test_role_ordering(self):
        assert role_allows("admin", "staff")
        assert role_allows("staff", "student")
        assert not role_allows("student", "admin")
        assert not role_allows("unknown", "student")


class TestPasswordFlows:
    async def test_change_password_ends_other_sessions(self, auth):
        account = await _verified(auth)
        _, old = await auth.login("a@x.com", PASSWORD)
        _, fresh = await auth.change_password(account.id, PASSWORD, "a brand new secret")
        with pytest.raises(TokenReplayedError):
            await auth.refresh(old.refresh_token)
        await auth.refresh(fresh.refresh_token)
        await auth.login("a@x.com", "a brand new secret")

    async def test_change_password_checks_current(self, auth):
        account = await _verified(auth)
        with pytest.raises(InvalidCredentialsError):
            await auth.change_password(account.id, WRONG, "a brand new secret")

    async def test_reset_password_flow(self, auth, store):
        await _verified(auth)
        _, pair = await auth.login("a@x.com", PASSWORD)
        for _ in range(3):
            with pytest.raises(InvalidCredentialsError):
                await auth.login("a@x.com", WRONG)
        token = await auth.forgot_password("a@x.com")
        await auth.reset_password(token, "reset gives a new one")
        assert store.get_lockout_state("a@x.com") is None
        with pytest.raises(TokenReplayedError):
            await auth.refresh(pair.refresh_token)
        await auth.login("a@x.com", "reset gives a new one")
        with pytest.raises(ValidationError):
            await auth.reset_password(token, "cannot reuse the token")

    async def test_forgot_password_unknown_email(self, auth):
        assert await auth.forgot_password("nobody@x.com") is None


class TestAdministration:
    async def test_admin_cannot_suspend_self(self, auth):
        account = await _verified(auth)
        with pytest.raises(ForbiddenError):
            await auth.suspend_account(account.id, None, actor_id=account.id)

    async def test_reinstate_restores_login(self, auth):
        account = await _verified(auth)
        await auth.suspend_account(account.id, None)
        await auth.reinstate_account(account.id)
        await auth.login("a@x.com", PASSWORD)


class TestStorageOutage:
    async def test_store_outage_is_transient(self, auth, store, monkeypatch):
        await _verified(auth)

        def unavailable(*args, **kwargs):
            raise StorageUnavailable("connection refused")

        monkeypatch.setattr(store, "get_lockout_state", unavailable)
        with pytest.raises(TransientError) as exc:
            await auth.login("a@x.com", PASSWORD)
        assert exc.value.status_code == 503


class TestNotifications:
    async def test_signup_mails_verification_in_background(self, store, settings):
        sent = []

        class RecordingEmail:
            def send_email_verification(self, to_email, token, *, ttl_hours):
                sent.append((to_email, token, ttl_hours))
                return True

        auth = _build(store, settings, email=RecordingEmail())
        result = await auth.signup("a@x.com", PASSWORD)
        await asyncio.gather(*list(auth._background))
        assert sent == [("a@x.com", result.verification_token, 24)]


def test_access_ttl_from_settings(settings):
    signer = TokenSigner.from_settings(settings)
    _, claims = signer.issue("acct", "student", ACCESS, timedelta(minutes=settings.access_token_ttl_minutes))
    assert claims.lifetime == timedelta(minutes=15)
