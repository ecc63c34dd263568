from __future__ import annotations

import json
import os
import secrets
from dataclasses import dataclass
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from merchantauth.logging import get_logger

logger = get_logger(__name__)

# Hard ceiling for access tokens regardless of configuration
MAX_ACCESS_TOKEN_TTL_MINUTES = 60


@dataclass(frozen=True)
class RateLimitConfig:
    """Per-IP request ceilings for one endpoint.

    A window set to ``None`` is not enforced.
    """

    per_second: int | None = None
    per_minute: int | None = None
    per_hour: int | None = None
    per_day: int | None = None

    def windows(self) -> list[tuple[str, int, int]]:
        """Return ``(name, limit, seconds)`` for every configured window, shortest first."""
        out: list[tuple[str, int, int]] = []
        for name, limit, seconds in (
            ("second", self.per_second, 1),
            ("minute", self.per_minute, 60),
            ("hour", self.per_hour, 3600),
            ("day", self.per_day, 86400),
        ):
            if limit is not None:
                out.append((name, int(limit), seconds))
        return out


# Built-in per-IP limits keyed by path prefix
DEFAULT_RATE_LIMITS: dict[str, RateLimitConfig] = {
    "/api/auth/signup": RateLimitConfig(2, 5, 10, 20),
    "/api/auth/signin": RateLimitConfig(3, 10, 30, 100),
    "/api/auth/send-otp": RateLimitConfig(3, 10, 20, 50),
    "/api/auth/verify-otp": RateLimitConfig(2, 10, 50, 200),
    "/api/auth/password-reset/request": RateLimitConfig(3, 10, 20, 50),
    "/api/auth/password-reset/verify": RateLimitConfig(5, 20, 100, 500),
    "/api/admin/signin": RateLimitConfig(2, 5, 20, 50),
    # Prefix also covers /api/admin/merchants/{merchant_id}/...
    "/api/admin/merchants": RateLimitConfig(5, 30, 200, 1000),
    "/api/admin/password-reset/request": RateLimitConfig(3, 10, 20, 50),
    "/api/admin/password-reset/verify": RateLimitConfig(2, 10, 50, 200),
}

DEFAULT_SENSITIVE_FIELDS = "password,token,otp,pin,secret,apiKey,authorization"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the merchant authentication service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/merchant_auth", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and in-process fallbacks.",
    )

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("merchant-auth", "JWT_ISSUER")
    jwt_audience: str = env_field("merchant-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        10,
        "ACCESS_TOKEN_TTL_MINUTES",
        description=f"Access token TTL in minutes, capped at {MAX_ACCESS_TOKEN_TTL_MINUTES}",
    )
    token_refresh_threshold_seconds: int = env_field(
        120,
        "TOKEN_REFRESH_THRESHOLD_SECONDS",
        description="Reissue a token in X-New-Token when fewer seconds than this remain",
    )
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST")

    otp_ttl_seconds: int = env_field(600, "OTP_TTL_SECONDS")
    otp_resend_cooldown_seconds: int = env_field(60, "OTP_RESEND_COOLDOWN_SECONDS")
    mfa_session_ttl_seconds: int = env_field(600, "MFA_SESSION_TTL_SECONDS")
    mfa_max_attempts: int = env_field(3, "MFA_MAX_ATTEMPTS")

    audit_batch_size: int = env_field(100, "AUDIT_BATCH_SIZE")
    sensitive_fields: list[str] = env_field(
        DEFAULT_SENSITIVE_FIELDS.split(","),
        "SENSITIVE_FIELDS",
        description="Comma separated body keys replaced before audit persistence",
    )
    rate_limits: dict[str, RateLimitConfig] = env_field(
        None,
        "RATE_LIMITS",
        description="JSON object of path -> {per_second, per_minute, per_hour, per_day}",
        validate_default=True,
    )

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Merchant Support", "EMAIL_FROM_NAME")
    brand_name: str = env_field(
        "Merchant Support", "BRAND_NAME", description="Product name used in SMS text"
    )

    sms_api_url: str | None = env_field(None, "SMS_API_URL")
    sms_api_key: str | None = env_field(None, "SMS_API_KEY")
    sms_sender: str | None = env_field(None, "SMS_SENDER")
    sms_route: str | None = env_field(None, "SMS_ROUTE")
    sms_type: str | None = env_field(None, "SMS_TYPE")
    sms_template_id: str | None = env_field(None, "SMS_TEMPLATE_ID")
    sms_timeout_seconds: float = env_field(10.0, "SMS_TIMEOUT_SECONDS")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore", arbitrary_types_allowed=True)

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

    @field_validator("redis_url", "jwt_secret", "smtp_host", "sms_api_url", "sms_api_key")
    @classmethod
    def _blank_is_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("sensitive_fields", "cors_allow_origins", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return list(value)

    @field_validator("rate_limits", mode="before")
    @classmethod
    def _merge_rate_limits(cls, value: Any) -> dict[str, RateLimitConfig]:
        merged = dict(DEFAULT_RATE_LIMITS)
        if value in (None, ""):
            return merged
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError(f"RATE_LIMITS must be a JSON object: {exc}") from exc
        if not isinstance(value, dict):
            raise ValueError("RATE_LIMITS must be a JSON object")
        for path, entry in value.items():
            if isinstance(entry, RateLimitConfig):
                merged[path] = entry
                continue
            if not isinstance(entry, dict):
                raise ValueError(f"rate limit for {path} must be an object")
            merged[path] = RateLimitConfig(
                per_second=entry.get("per_second"),
                per_minute=entry.get("per_minute"),
                per_hour=entry.get("per_hour"),
                per_day=entry.get("per_day"),
            )
        return merged

    @field_validator("access_token_ttl_minutes")
    @classmethod
    def _cap_token_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("ACCESS_TOKEN_TTL_MINUTES must be positive")
        if value > MAX_ACCESS_TOKEN_TTL_MINUTES:
            logger.warning(
                "token_ttl_capped",
                requested=value,
                applied=MAX_ACCESS_TOKEN_TTL_MINUTES,
            )
            return MAX_ACCESS_TOKEN_TTL_MINUTES
        return value

    @field_validator("mfa_max_attempts", "otp_ttl_seconds", "mfa_session_ttl_seconds", "audit_batch_size")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET must be set outside test mode")
        # Ephemeral secret; tokens do not survive a restart in test mode
        self.jwt_secret = secrets.token_urlsafe(64)
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
