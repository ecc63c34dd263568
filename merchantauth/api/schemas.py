from __future__ import annotations

import re
import unicodedata
from typing import Any, Dict, Literal, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

# Opaque profile documents are bounded in depth and width
MAX_JSON_DEPTH = 20
MAX_ARRAY_ITEMS = 1000

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "unprocessable_state",
    "service_unavailable",
    "server_error",
})


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping zero-width and bidi override characters."""
    zero_width = "​‌‍﻿"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error payload with a stable machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_MOBILE_PATTERN = re.compile(r"^\+?[0-9]{10,19}$")
_OTP_PATTERN = re.compile(r"^[0-9]{6}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("Password must be at least 8 characters long")
    if len(value) > 128:
        raise ValueError("Password must be at most 128 characters long")
    return value


def _validate_otp(value: str) -> str:
    value = value.strip()
    if not _OTP_PATTERN.match(value):
        raise ValueError("OTP must be a 6 digit code")
    return value


class _Request(BaseModel):
    # Clients send either snake_case or camelCase keys
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class SignupRequest(_Request):
    name: str = Field(..., min_length=1, max_length=2048)
    email: str
    mobile: str
    password: str
    state: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("mobile")
    @classmethod
    def _validate_mobile(cls, value: str) -> str:
        compact = re.sub(r"[\s-]", "", value)
        if not _MOBILE_PATTERN.match(compact):
            raise ValueError("mobile must contain 10 to 19 digits")
        return compact

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class SigninRequest(_Request):
    email: str
    password: str = Field(..., min_length=1, max_length=128)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    location: str = Field(..., min_length=1, max_length=512)

    @field_validator("email")
    @classmethod
    def _validate_signin_email(cls, value: str) -> str:
        return _validate_email(value)


class SendOtpRequest(_Request):
    email: str
    otp_type: Literal["email", "mobile", "sms"] = Field(
        ..., validation_alias=AliasChoices("otp_type", "otpType")
    )

    @field_validator("email")
    @classmethod
    def _validate_send_email(cls, value: str) -> str:
        return _validate_email(value)


class VerifyOtpRequest(_Request):
    email: Optional[str] = None
    mfa_session_token: Optional[str] = Field(
        default=None,
        max_length=256,
        validation_alias=AliasChoices("mfa_session_token", "mfaSessionToken"),
    )
    otp: str
    otp_type: Literal["email", "mobile", "sms"] = Field(
        ..., validation_alias=AliasChoices("otp_type", "otpType")
    )

    @field_validator("email")
    @classmethod
    def _validate_verify_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value else None

    @field_validator("otp")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        return _validate_otp(value)

    @model_validator(mode="after")
    def _require_subject(self):
        if not self.email and not self.mfa_session_token:
            raise ValueError("Either email or mfaSessionToken is required")
        return self


class PasswordResetRequest(_Request):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetVerify(_Request):
    email: str
    otp: str
    new_password: str = Field(..., validation_alias=AliasChoices("new_password", "newPassword"))

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("otp")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        return _validate_otp(value)

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class AdminSigninRequest(_Request):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_admin_email(cls, value: str) -> str:
        return _validate_email(value)


class MerchantProfileUpdate(BaseModel):
    """Free-form business profile; scalar fields are stored as-is."""

    model_config = ConfigDict(extra="allow")

    @model_validator(mode="after")
    def _check_document(self):
        document = self.document()
        if not document:
            raise ValueError("profile update must contain at least one field")
        _validate_json_depth(document)
        return self

    def document(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})
