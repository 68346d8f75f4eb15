from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from keyward.logging import get_logger
from keyward.storage.models import ProjectPolicy

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide settings. Signing secrets are read-only after startup."""

    database_url: str = env_field(
        "postgresql://localhost:5432/keyward", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_path: str | None = env_field(
        None,
        "MEMORY_STORE_PATH",
        description="Directory where the in-memory store snapshots its state (dev only)",
    )
    storage_timeout_seconds: float = env_field(
        5.0,
        "STORAGE_TIMEOUT_SECONDS",
        description="Connect/acquire timeout for the backing store",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; generates throwaway signing secrets",
    )

    # Token signing. Access and refresh tokens use distinct keys.
    jwt_access_secret: str | None = env_field(None, "JWT_ACCESS_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("keyward", "JWT_ISSUER")
    jwt_audience: str = env_field("keyward-users", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(30, "JWT_LEEWAY_SECONDS", ge=0, le=300)
    access_token_ttl_minutes: int = env_field(
        15,
        "ACCESS_TOKEN_TTL_MINUTES",
        ge=1,
        description="Access token TTL for platform principals",
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", ge=5
    )
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES", ge=5)
    verification_token_ttl_minutes: int = env_field(
        24 * 60, "VERIFICATION_TOKEN_TTL_MINUTES", ge=5
    )
    login_history_limit: int = env_field(10, "LOGIN_HISTORY_LIMIT", ge=1, le=100)

    # argon2id cost parameters
    password_time_cost: int = env_field(3, "PASSWORD_TIME_COST", ge=1)
    password_memory_cost_kib: int = env_field(65536, "PASSWORD_MEMORY_COST_KIB", ge=8192)

    # Platform principals follow a fixed policy rather than a project's.
    allow_platform_signup: bool = env_field(True, "ALLOW_PLATFORM_SIGNUP")
    platform_require_email_verification: bool = env_field(
        False, "PLATFORM_REQUIRE_EMAIL_VERIFICATION"
    )
    platform_min_password_length: int = env_field(
        6, "PLATFORM_MIN_PASSWORD_LENGTH", ge=4, le=128
    )
    platform_max_login_attempts: int = env_field(
        5, "PLATFORM_MAX_LOGIN_ATTEMPTS", ge=3, le=10
    )
    platform_lockout_minutes: int = env_field(
        120, "PLATFORM_LOCKOUT_MINUTES", ge=5, le=1440
    )
    platform_max_sessions: int = env_field(5, "PLATFORM_MAX_SESSIONS", ge=1, le=20)

    # Rate limits (requests per window, keyed by identifier)
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE", ge=1)
    signup_rate_limit_per_minute: int = env_field(5, "SIGNUP_RATE_LIMIT_PER_MINUTE", ge=1)
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE", ge=1)

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Keyward", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cors_allow_origins: str = env_field(
        "",
        "CORS_ALLOW_ORIGINS",
        description="Comma separated origins allowed by CORS; empty disables CORS",
    )

    model_config = ConfigDict(extra="ignore", frozen=True)

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

    @field_validator("jwt_access_secret", "jwt_refresh_secret")
    @classmethod
    def _check_secret_length(cls, value: str | None) -> str | None:
        if value is not None and len(value) < 32:
            raise ValueError("signing secrets must be at least 32 characters")
        return value

    @model_validator(mode="after")
    def _ensure_signing_secrets(self) -> "Settings":
        if not self.jwt_access_secret or not self.jwt_refresh_secret:
            if not self.test_mode:
                raise ValueError(
                    "JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must be set outside TEST_MODE"
                )
            # Throwaway keys: tokens die with the process. Frozen model, so
            # write through object.__setattr__.
            if not self.jwt_access_secret:
                object.__setattr__(self, "jwt_access_secret", secrets.token_urlsafe(48))
            if not self.jwt_refresh_secret:
                object.__setattr__(self, "jwt_refresh_secret", secrets.token_urlsafe(48))
            logger.warning("jwt_secrets_generated", test_mode=True)
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("access and refresh tokens must use different secrets")
        return self

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]

    def platform_policy(self) -> ProjectPolicy:
        return ProjectPolicy(
            allow_signup=self.allow_platform_signup,
            require_email_verification=self.platform_require_email_verification,
            min_password_length=self.platform_min_password_length,
            session_timeout_minutes=self.access_token_ttl_minutes,
            max_sessions=self.platform_max_sessions,
            enable_account_locking=True,
            max_login_attempts=self.platform_max_login_attempts,
            lockout_duration_minutes=self.platform_lockout_minutes,
        )


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
