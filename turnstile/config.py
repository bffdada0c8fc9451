from __future__ import annotations

import hashlib
import hmac
import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from turnstile.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication service and its clients."""

    database_url: str = env_field(
        "postgresql://localhost:5432/turnstile", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    data_root: str = env_field("/srv/turnstile", "DATA_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviors for CI; enables runtime reset helpers.",
    )

    # Token signing
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str | None = env_field(
        None,
        "JWT_REFRESH_SECRET",
        description="Refresh-token key; derived from JWT_SECRET when unset.",
    )
    jwt_issuer: str = env_field("turnstile", "JWT_ISSUER")
    jwt_audience: str = env_field("turnstile-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(0, "JWT_LEEWAY_SECONDS", ge=0, le=300)
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )

    # Lockout
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD", ge=1)
    lockout_window_minutes: int = env_field(15, "LOCKOUT_WINDOW_MINUTES", gt=0)
    lockout_duration_minutes: int = env_field(15, "LOCKOUT_DURATION_MINUTES", gt=0)

    # Client refresh coordination
    refresh_max_retries: int = env_field(3, "REFRESH_MAX_RETRIES", ge=1)
    refresh_retry_backoff_seconds: float = env_field(
        5.0, "REFRESH_RETRY_BACKOFF_SECONDS", ge=0
    )
    refresh_backoff_multiplier: float = env_field(
        2.0, "REFRESH_BACKOFF_MULTIPLIER", ge=1.0
    )
    refresh_lead_fraction: float = env_field(
        0.85, "REFRESH_LEAD_FRACTION", gt=0, lt=1
    )
    client_request_timeout_seconds: float = env_field(
        30.0, "CLIENT_REQUEST_TIMEOUT_SECONDS", gt=0
    )

    ledger_sweep_interval_seconds: int = env_field(
        300, "LEDGER_SWEEP_INTERVAL_SECONDS", gt=0
    )
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES", gt=0)
    email_verification_ttl_hours: int = env_field(
        24, "EMAIL_VERIFICATION_TTL_HOURS", gt=0
    )

    # Rate limits
    auth_rate_limit: int = env_field(10, "AUTH_RATE_LIMIT", ge=1)
    auth_rate_limit_window_seconds: int = env_field(
        15 * 60, "AUTH_RATE_LIMIT_WINDOW_SECONDS", gt=0
    )
    sensitive_rate_limit: int = env_field(5, "SENSITIVE_RATE_LIMIT", ge=1)
    sensitive_rate_limit_window_seconds: int = env_field(
        60 * 60, "SENSITIVE_RATE_LIMIT_WINDOW_SECONDS", gt=0
    )

    # HTTP surface
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cors_allow_origins: str = env_field("", "CORS_ALLOW_ORIGINS")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM")
    email_from_name: str = env_field("Turnstile", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < _MIN_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {_MIN_SECRET_LENGTH} characters"
                )
            return value
        # Persist a generated secret so tokens stay valid across restarts
        root = Path(os.getenv("DATA_ROOT", "/srv/turnstile"))
        secret_path = root / ".jwt_secret"

        try:
            root.mkdir(parents=True, exist_ok=True)
            os.chmod(root, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership (containers)
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= _MIN_SECRET_LENGTH:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make DATA_ROOT writable"
            ) from exc
        return generated

    @model_validator(mode="after")
    def _derive_refresh_secret(self) -> "Settings":
        if not self.jwt_refresh_secret:
            # Distinct key per token type: an access token never verifies as refresh
            self.jwt_refresh_secret = hmac.new(
                self.jwt_secret.encode(), b"refresh-token-key", hashlib.sha256
            ).hexdigest()
        elif self.jwt_refresh_secret == self.jwt_secret:
            raise ValueError("JWT_REFRESH_SECRET must differ from JWT_SECRET")
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
