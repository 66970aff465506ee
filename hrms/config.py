from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from hrms.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Immutable runtime settings, built once at process start."""

    database_url: str = env_field("postgresql://localhost:5432/hrms", "DATABASE_URL")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors (sync redis client, memory fallbacks).",
    )

    # Credential hashing (argon2id)
    password_hash_cost: int = env_field(
        3, "PASSWORD_HASH_COST", ge=1, description="argon2 time cost (iterations)"
    )
    password_hash_memory_kib: int = env_field(
        65536, "PASSWORD_HASH_MEMORY_KIB", ge=32, description="argon2 memory cost in KiB"
    )

    # One-time passwords
    otp_length: int = env_field(6, "OTP_LENGTH", ge=4, le=10)
    otp_ttl_seconds: int = env_field(
        600, "OTP_TTL_SECONDS", ge=1, description="Registration and password-reset OTP window"
    )
    login_otp_ttl_seconds: int = env_field(300, "LOGIN_OTP_TTL_SECONDS", ge=1)

    # Sessions and refresh records
    session_ttl_seconds: int = env_field(30 * 24 * 3600, "SESSION_TTL_SECONDS", ge=1)
    refresh_token_ttl_seconds: int = env_field(
        30 * 24 * 3600, "REFRESH_TOKEN_TTL_SECONDS", ge=1
    )
    invitation_ttl_seconds: int = env_field(3 * 24 * 3600, "INVITATION_TTL_SECONDS", ge=1)

    # Signed bearer credentials
    jwt_access_secret: str | None = env_field(None, "JWT_ACCESS_SECRET", validate_default=True)
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET", validate_default=True)
    jwt_access_ttl_seconds: int = env_field(15 * 60, "JWT_ACCESS_TTL_SECONDS", ge=1)
    jwt_refresh_ttl_seconds: int = env_field(7 * 24 * 3600, "JWT_REFRESH_TTL_SECONDS", ge=1)

    # OTP delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("HRMS Support", "EMAIL_FROM_NAME")
    twilio_account_sid: str | None = env_field(None, "TWILIO_ACCOUNT_SID")
    twilio_auth_token: str | None = env_field(None, "TWILIO_AUTH_TOKEN")
    twilio_from_number: str | None = env_field(None, "TWILIO_FROM_NUMBER")

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
    def _require_secret(cls, value: str | None, info) -> str:
        if not value or not value.strip():
            env_name = info.field_name.upper()
            logger.error("jwt_secret_missing", setting=env_name)
            raise ValueError(f"{env_name} must be configured")
        return value

    @model_validator(mode="after")
    def _secrets_differ(self) -> "Settings":
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ")
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
