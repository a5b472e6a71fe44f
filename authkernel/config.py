from __future__ import annotations

import os
import secrets
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authkernel.logging import get_logger

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity and session kernel."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authkernel", "DATABASE_URL"
    )
    redis_url: Optional[str] = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allows in-memory fallbacks and ephemeral secrets",
    )

    # Token signing
    jwt_secret: Optional[str] = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("authkernel", "JWT_ISSUER")
    jwt_audience: str = env_field("authkernel-clients", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(900, "ACCESS_TOKEN_TTL_SECONDS", ge=60)
    refresh_token_ttl_seconds: int = env_field(
        60 * 60 * 24 * 30, "REFRESH_TOKEN_TTL_SECONDS", ge=60
    )
    token_clock_skew_seconds: int = env_field(30, "TOKEN_CLOCK_SKEW_SECONDS", ge=0)
    fingerprint_secret: Optional[str] = env_field(None, "FINGERPRINT_SECRET")

    # Single-use tokens
    email_verification_ttl_seconds: int = env_field(
        60 * 60 * 24, "EMAIL_VERIFICATION_TTL_SECONDS", ge=300
    )
    password_reset_ttl_seconds: int = env_field(
        60 * 60, "PASSWORD_RESET_TTL_SECONDS", ge=300
    )

    # Account lockout
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", ge=1)
    lockout_duration_seconds: int = env_field(900, "LOCKOUT_DURATION_SECONDS", ge=1)

    # Brute-force throttling, independent of the persisted lockout counter
    brute_force_enabled: bool = env_field(True, "BRUTE_FORCE_ENABLED")
    brute_force_window_seconds: int = env_field(
        900, "BRUTE_FORCE_WINDOW_SECONDS", ge=1
    )
    brute_force_base_delay_ms: int = env_field(0, "BRUTE_FORCE_BASE_DELAY_MS", ge=0)
    brute_force_step_delay_ms: int = env_field(250, "BRUTE_FORCE_STEP_DELAY_MS", ge=0)
    brute_force_max_delay_ms: int = env_field(3000, "BRUTE_FORCE_MAX_DELAY_MS", ge=0)
    brute_force_captcha_threshold: int = env_field(
        3, "BRUTE_FORCE_CAPTCHA_THRESHOLD", ge=1
    )

    # RBAC and maintenance
    permission_cache_ttl_seconds: int = env_field(
        300, "PERMISSION_CACHE_TTL_SECONDS", ge=1
    )
    maintenance_interval_seconds: int = env_field(
        300, "MAINTENANCE_INTERVAL_SECONDS", ge=1
    )
    default_role: Optional[str] = env_field("customer", "DEFAULT_ROLE")

    # Password hashing cost (argon2id)
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_cost: int = env_field(
        65536, "PASSWORD_HASH_MEMORY_COST", ge=8, description="KiB"
    )
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM", ge=1)

    # SMTP / Email
    smtp_host: Optional[str] = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: Optional[str] = env_field(None, "SMTP_USER")
    smtp_password: Optional[str] = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: Optional[str] = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Storefront", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

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

    @field_validator("jwt_secret")
    @classmethod
    def _validate_jwt_secret(cls, value: Optional[str]) -> str:
        if value:
            if len(value) < MIN_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {MIN_SECRET_LENGTH} characters"
                )
            return value
        logger.warning(
            "jwt_secret_generated",
            detail="JWT_SECRET not set; tokens will not survive a restart",
        )
        return secrets.token_urlsafe(64)

    @field_validator("fingerprint_secret")
    @classmethod
    def _validate_fingerprint_secret(cls, value: Optional[str]) -> Optional[str]:
        if value and len(value) < MIN_SECRET_LENGTH:
            raise ValueError(
                f"FINGERPRINT_SECRET must be at least {MIN_SECRET_LENGTH} characters"
            )
        return value or None

    @field_validator("redis_url", "default_role")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @model_validator(mode="after")
    def _validate_brute_force_delays(self) -> "Settings":
        if self.brute_force_max_delay_ms < self.brute_force_base_delay_ms:
            raise ValueError(
                "BRUTE_FORCE_MAX_DELAY_MS must be >= BRUTE_FORCE_BASE_DELAY_MS"
            )
        return self

    @property
    def effective_fingerprint_secret(self) -> str:
        return self.fingerprint_secret or self.jwt_secret


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
