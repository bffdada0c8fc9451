from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from turnstile.api.schemas import (
    AuthResponse,
    ChangePasswordRequest,
    EmailRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RefreshResponse,
    ResetPasswordRequest,
    RoleRequest,
    SignupRequest,
    SignupResponse,
    SuspendRequest,
    TokenResponse,
    UpdateProfileRequest,
    UserResponse,
    VerifyEmailRequest,
)
from turnstile.logging import get_logger
from turnstile.service.auth import AuthContext, role_allows
from turnstile.service.errors import RateLimitedError
from turnstile.service.runtime import Runtime, check_rate_limit, get_runtime
from turnstile.storage.models import TokenPair

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

REFRESH_COOKIE = "refresh_token"
# Scoped so the refresh token only travels to the auth endpoints
REFRESH_COOKIE_PATH = "/v1/auth"

_GENERIC_EMAIL_MESSAGE = "If that address belongs to an account, an email is on its way."


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Consume one unit from ``key``'s bucket; 429 with Retry-After when empty."""
    allowed, remaining, retry_after = await check_rate_limit(
        runtime, key, limit, window_seconds
    )
    info = RateLimitInfo(limit, remaining, window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, retry_after=retry_after)
        raise RateLimitedError("rate limit exceeded", retry_after_seconds=retry_after)
    return info


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _bearer_token(authorization: Optional[str]) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    return token.strip()


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(_bearer_token(authorization))


async def get_admin(principal: AuthContext = Depends(get_principal)) -> AuthContext:
    if not role_allows(principal.role, "admin"):
        raise _http_error("forbidden", "admin access required", status_code=403)
    return principal


def _set_refresh_cookie(response: Response, pair: TokenPair, runtime: Runtime) -> None:
    response.set_cookie(
        REFRESH_COOKIE,
        pair.refresh_token,
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="strict",
        max_age=runtime.settings.refresh_token_ttl_minutes * 60,
        path=REFRESH_COOKIE_PATH,
    )


def _clear_refresh_cookie(response: Response) -> None:
    response.delete_cookie(REFRESH_COOKIE, path=REFRESH_COOKIE_PATH)


# auth


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request, response: Response):
    """Create an unverified student account and mail a verification link."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"signup:{_client_ip(request)}",
        runtime.settings.auth_rate_limit,
        runtime.settings.auth_rate_limit_window_seconds,
        response=response,
    )
    result = await runtime.auth.signup(body.email, body.password, name=body.name)
    payload = SignupResponse(
        user=UserResponse.from_account(result.account),
        verification_token=result.verification_token if runtime.settings.test_mode else None,
    )
    return Envelope(status="ok", data=payload)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Exchange email and password for a token pair.

    Raises:
        401: invalid_credentials
        403: account_suspended or email_unverified
        423: account_locked, with Retry-After
        429: rate limit exceeded for this client
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{_client_ip(request)}",
        runtime.settings.auth_rate_limit,
        runtime.settings.auth_rate_limit_window_seconds,
        response=response,
    )
    account, pair = await runtime.auth.login(
        body.email,
        body.password,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    _set_refresh_cookie(response, pair, runtime)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=UserResponse.from_account(account), tokens=TokenResponse.from_pair(pair)
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request, response: Response, body: Optional[RefreshRequest] = None
):
    """Rotate a refresh token; the presented token is retired either way."""
    runtime = get_runtime()
    presented = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    if not presented:
        raise _http_error("token_invalid", "refresh token required", status_code=401)
    await _enforce_rate_limit(
        runtime,
        f"refresh:{_client_ip(request)}",
        runtime.settings.auth_rate_limit,
        runtime.settings.auth_rate_limit_window_seconds,
    )
    account, pair = await runtime.auth.refresh(presented)
    _set_refresh_cookie(response, pair, runtime)
    data = TokenResponse.from_pair(pair).model_dump()
    return Envelope(
        status="ok",
        data=RefreshResponse(user=UserResponse.from_account(account), **data),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
):
    """Revoke the presented tokens. Safe to repeat.

    The bearer header may carry an expired access token, or be absent, as
    long as a refresh token is presented in the body or cookie.
    """
    runtime = get_runtime()
    refresh = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    access = _bearer_token(authorization) if authorization or not refresh else None
    await runtime.auth.logout(access, refresh)
    _clear_refresh_cookie(response)
    return Envelope(status="ok", data={"logged_out": True})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_me(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    account = await runtime.auth.get_profile(principal.account_id)
    return Envelope(status="ok", data={"user": UserResponse.from_account(account)})


@router.patch("/auth/me", response_model=Envelope, tags=["auth"])
async def update_me(
    body: UpdateProfileRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    account = await runtime.auth.update_profile(principal.account_id, name=body.name)
    return Envelope(status="ok", data={"user": UserResponse.from_account(account)})


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest):
    runtime = get_runtime()
    await runtime.auth.verify_email(body.token)
    return Envelope(status="ok", data={"verified": True})


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: EmailRequest, request: Request):
    """Always answers the same way, whether or not the address is registered."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"resend_verification:{_client_ip(request)}",
        runtime.settings.sensitive_rate_limit,
        runtime.settings.sensitive_rate_limit_window_seconds,
    )
    await runtime.auth.resend_verification(body.email)
    return Envelope(status="ok", data=MessageResponse(message=_GENERIC_EMAIL_MESSAGE))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: EmailRequest, request: Request):
    """Always answers the same way, whether or not the address is registered."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"forgot_password:{_client_ip(request)}",
        runtime.settings.sensitive_rate_limit,
        runtime.settings.sensitive_rate_limit_window_seconds,
    )
    await runtime.auth.forgot_password(body.email)
    return Envelope(status="ok", data=MessageResponse(message=_GENERIC_EMAIL_MESSAGE))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset_password:{_client_ip(request)}",
        runtime.settings.sensitive_rate_limit,
        runtime.settings.sensitive_rate_limit_window_seconds,
    )
    await runtime.auth.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data={"reset": True})


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    response: Response,
    principal: AuthContext = Depends(get_principal),
):
    """Other sessions end; this one gets a fresh pair."""
    runtime = get_runtime()
    account, pair = await runtime.auth.change_password(
        principal.account_id, body.current_password, body.new_password
    )
    _set_refresh_cookie(response, pair, runtime)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=UserResponse.from_account(account), tokens=TokenResponse.from_pair(pair)
        ),
    )


# admin


@router.post("/admin/accounts/{account_id}/unlock", response_model=Envelope, tags=["admin"])
async def admin_unlock(account_id: str, admin: AuthContext = Depends(get_admin)):
    runtime = get_runtime()
    account = await runtime.auth.unlock_account(account_id)
    logger.info("admin_unlock", account_id=account_id, actor_id=admin.account_id)
    return Envelope(status="ok", data={"user": UserResponse.from_account(account)})


@router.post("/admin/accounts/{account_id}/suspend", response_model=Envelope, tags=["admin"])
async def admin_suspend(
    account_id: str,
    body: Optional[SuspendRequest] = None,
    admin: AuthContext = Depends(get_admin),
):
    runtime = get_runtime()
    account = await runtime.auth.suspend_account(
        account_id, body.reason if body else None, actor_id=admin.account_id
    )
    return Envelope(status="ok", data={"user": UserResponse.from_account(account)})


@router.post("/admin/accounts/{account_id}/reinstate", response_model=Envelope, tags=["admin"])
async def admin_reinstate(account_id: str, admin: AuthContext = Depends(get_admin)):
    runtime = get_runtime()
    account = await runtime.auth.reinstate_account(account_id, actor_id=admin.account_id)
    return Envelope(status="ok", data={"user": UserResponse.from_account(account)})


@router.post("/admin/accounts/{account_id}/role", response_model=Envelope, tags=["admin"])
async def admin_set_role(
    account_id: str, body: RoleRequest, admin: AuthContext = Depends(get_admin)
):
    """Takes effect at the account's next refresh; older access tokens stop working."""
    runtime = get_runtime()
    account = await runtime.auth.set_role(account_id, body.role)
    logger.info("admin_set_role", account_id=account_id, role=body.role, actor_id=admin.account_id)
    return Envelope(status="ok", data={"user": UserResponse.from_account(account)})
