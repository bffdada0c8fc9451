"""HS256 token signing and verification.

Tokens are compact JWS strings. Access and refresh tokens are signed with
different keys and carry a ``token_type`` claim, so one can never be
accepted where the other is required.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Tuple

from turnstile.config import Settings
from turnstile.logging import get_logger
from turnstile.service.errors import (
    TokenExpiredError,
    TokenInvalidError,
    TokenTypeMismatchError,
)

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
TOKEN_TYPES = (ACCESS, REFRESH)


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    role: str
    token_type: str
    jti: str
    issued_at: datetime
    expires_at: datetime

    @property
    def lifetime(self) -> timedelta:
        return self.expires_at - self.issued_at


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _from_ts(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


def peek_claims(token: str) -> Optional[dict[str, Any]]:
    """Read a token's payload WITHOUT checking its signature.

    Only for a client scheduling its own refresh from ``iat``/``exp``; never
    use the result for an authorization decision.
    """
    try:
        _, payload_b64, _ = token.split(".")
        payload = json.loads(_decode_segment(payload_b64))
    except (ValueError, TypeError):
        return None
    return payload if isinstance(payload, dict) else None


class TokenSigner:
    """Stateless signer/verifier; safe to share across threads and tasks."""

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        issuer: str,
        audience: str,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("access and refresh tokens need distinct secrets")
        self._keys = {
            ACCESS: access_secret.encode(),
            REFRESH: refresh_secret.encode(),
        }
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "TokenSigner":
        return cls(
            access_secret=settings.jwt_secret,
            refresh_secret=settings.jwt_refresh_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway_seconds=settings.jwt_leeway_seconds,
            **kwargs,
        )

    def issue(
        self, subject: str, role: str, token_type: str, ttl: timedelta
    ) -> Tuple[str, TokenClaims]:
        """Sign a new token and return it with the claims it carries."""
        if token_type not in TOKEN_TYPES:
            raise ValueError(f"unknown token type: {token_type}")
        now = self._clock()
        claims = TokenClaims(
            subject=subject,
            role=role,
            token_type=token_type,
            # Unique per token so two pairs minted in the same second differ
            jti=str(uuid.uuid4()),
            issued_at=_from_ts(int(now)),
            expires_at=_from_ts(int(now + ttl.total_seconds())),
        )
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject,
            "role": role,
            "token_type": token_type,
            "jti": claims.jti,
            "iat": int(claims.issued_at.timestamp()),
            "exp": int(claims.expires_at.timestamp()),
        }
        header_enc = _encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = self._signature(token_type, signing_input).decode("ascii")
        return f"{signing_input}.{signature}", claims

    def sign(self, subject: str, role: str, token_type: str, ttl: timedelta) -> str:
        return self.issue(subject, role, token_type, ttl)[0]

    def _signature(self, token_type: str, signing_input: str) -> bytes:
        return _encode_segment(
            hmac.new(self._keys[token_type], signing_input.encode(), hashlib.sha256).digest()
        ).encode()

    def verify(self, token: str, expected_type: str) -> TokenClaims:
        """Validate ``token`` as ``expected_type`` and return its claims.

        Raises TokenTypeMismatchError, TokenExpiredError or TokenInvalidError.
        """
        if expected_type not in TOKEN_TYPES:
            raise ValueError(f"unknown token type: {expected_type}")
        try:
            header_b64, payload_b64, sig_b64 = (token or "").split(".")
            header = json.loads(_decode_segment(header_b64))
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise TokenInvalidError("malformed token")
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            # Rejects alg=none and algorithm-confusion attempts
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise TokenInvalidError("unsupported token algorithm")
        if not isinstance(payload, dict):
            raise TokenInvalidError("malformed token")

        signing_input = f"{header_b64}.{payload_b64}"
        presented = sig_b64.encode("utf-8")
        if not hmac.compare_digest(self._signature(expected_type, signing_input), presented):
            # A valid token of the other type is a type mismatch, not a forgery
            other = REFRESH if expected_type == ACCESS else ACCESS
            if hmac.compare_digest(self._signature(other, signing_input), presented):
                raise TokenTypeMismatchError(
                    f"expected {expected_type} token, got {other} token"
                )
            raise TokenInvalidError("invalid token signature")
        if payload.get("token_type") != expected_type:
            raise TokenTypeMismatchError(f"expected {expected_type} token")

        if payload.get("iss") != self.issuer:
            raise TokenInvalidError("invalid token issuer")
        aud = payload.get("aud")
        if not (aud == self.audience or (isinstance(aud, list) and self.audience in aud)):
            raise TokenInvalidError("invalid token audience")

        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload.get("iat", exp_ts))
        except (KeyError, TypeError, ValueError):
            raise TokenInvalidError("token has no valid expiry")
        if exp_ts <= self._clock() - self.leeway_seconds:
            raise TokenExpiredError("token has expired")

        subject = payload.get("sub")
        jti = payload.get("jti")
        if not subject or not jti:
            raise TokenInvalidError("token is missing required claims")
        return TokenClaims(
            subject=str(subject),
            role=str(payload.get("role") or ""),
            token_type=expected_type,
            jti=str(jti),
            issued_at=_from_ts(iat_ts),
            expires_at=_from_ts(exp_ts),
        )
