from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from fleetauth.logging import get_logger

logger = get_logger(__name__)

MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service, read from the environment and `.env`."""

    database_url: str = env_field(
        "postgresql://localhost:5432/fleetauth", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviours; allows an ephemeral JWT secret.",
    )

    # token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("fleetauth", "JWT_ISSUER")
    jwt_audience: str = env_field("fleet-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        30, "JWT_LEEWAY_SECONDS", description="Clock skew tolerated when checking exp/iat"
    )
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    refresh_token_rotation: bool = env_field(
        False,
        "REFRESH_TOKEN_ROTATION",
        description="Issue a new refresh token on every refresh and mark the old one rotated",
    )
    device_fingerprint_salt: str = env_field(
        "fleetauth-device", "DEVICE_FINGERPRINT_SALT"
    )

    # brute-force protection
    login_max_failed_attempts: int = env_field(5, "LOGIN_MAX_FAILED_ATTEMPTS")
    login_attempt_window_minutes: int = env_field(15, "LOGIN_ATTEMPT_WINDOW_MINUTES")
    login_attempt_retention_days: int = env_field(90, "LOGIN_ATTEMPT_RETENTION_DAYS")

    # one-time codes
    verification_code_ttl_hours: int = env_field(24, "VERIFICATION_CODE_TTL_HOURS")
    reset_code_ttl_hours: int = env_field(24, "RESET_CODE_TTL_HOURS")

    # password policy
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH")
    password_require_uppercase: bool = env_field(True, "PASSWORD_REQUIRE_UPPERCASE")
    password_require_lowercase: bool = env_field(True, "PASSWORD_REQUIRE_LOWERCASE")
    password_require_digit: bool = env_field(True, "PASSWORD_REQUIRE_DIGIT")
    password_require_special: bool = env_field(True, "PASSWORD_REQUIRE_SPECIAL")

    # email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Fleet Management", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    cleanup_interval_seconds: int = env_field(
        3600,
        "CLEANUP_INTERVAL_SECONDS",
        description="Period of the retention sweep; 0 disables the background task",
    )

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
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < MIN_JWT_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
                )
            return value
        if info.data.get("test_mode"):
            logger.warning("jwt_secret_ephemeral", reason="test_mode without JWT_SECRET")
            return secrets.token_urlsafe(48)
        raise ValueError("JWT_SECRET is required outside test mode")

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_days",
        "login_max_failed_attempts",
        "login_attempt_window_minutes",
        "verification_code_ttl_hours",
        "reset_code_ttl_hours",
        "password_min_length",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    def password_policy(self):
        from fleetauth.service.password_policy import PasswordPolicy

        return PasswordPolicy.from_settings(self)


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
