from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

OTP_CHANNEL_EMAIL = "email"
OTP_CHANNEL_SMS = "sms"

ADMIN_ROLES = frozenset({"admin", "super_admin", "support"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class MerchantAccount:
    id: int
    merchant_id: str
    name: str
    email: str
    mobile: str
    password_hash: str
    state: Optional[str] = None
    is_active: bool = False
    is_email_verified: bool = False
    is_mobile_verified: bool = False
    is_2fa_enabled: bool = False
    kyc_verified: bool = False
    role: str = "merchant"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def fully_verified(self) -> bool:
        return self.is_email_verified and self.is_mobile_verified

    def summary(self) -> Dict[str, Any]:
        """Public view returned to merchants and admins; never includes the hash."""
        return {
            "id": self.id,
            "merchant_id": self.merchant_id,
            "email": self.email,
            "mobile": self.mobile,
            "name": self.name,
            "state": self.state,
            "kyc_verified": self.kyc_verified,
            "is_active": self.is_active,
            "is_mobile_verified": self.is_mobile_verified,
            "is_email_verified": self.is_email_verified,
            "is_2fa_enabled": self.is_2fa_enabled,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class AdminAccount:
    id: int
    email: str
    name: str
    password_hash: str
    mobile: Optional[str] = None
    role: str = "admin"
    is_active: bool = True
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "is_active": self.is_active,
        }


@dataclass
class MerchantProfile:
    """Opaque business document attached to a merchant (directors, shareholding, ...)."""

    merchant_id: int
    document: Dict[str, Any] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class OneTimeCode:
    id: int
    email: str
    otp: str
    otp_type: str
    expires_at: datetime
    is_used: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class MfaSession:
    """Ephemeral verification progress, serialized into the session cache as JSON."""

    token: str
    account_id: int
    email: str
    mobile: str
    email_otp_verified: bool
    sms_otp_verified: bool
    is_mfa_only: bool
    expires_at: float
    attempts: int = 0

    @classmethod
    def new(
        cls,
        token: str,
        account: MerchantAccount,
        *,
        ttl_seconds: int,
        is_mfa_only: bool,
    ) -> "MfaSession":
        if is_mfa_only:
            email_done, sms_done = True, False
        else:
            email_done, sms_done = account.is_email_verified, account.is_mobile_verified
        return cls(
            token=token,
            account_id=account.id,
            email=account.email,
            mobile=account.mobile,
            email_otp_verified=email_done,
            sms_otp_verified=sms_done,
            is_mfa_only=is_mfa_only,
            expires_at=(utcnow() + timedelta(seconds=ttl_seconds)).timestamp(),
        )

    def remaining_seconds(self, now: Optional[float] = None) -> int:
        current = now if now is not None else utcnow().timestamp()
        return int(self.expires_at - current)

    def is_expired(self, now: Optional[float] = None) -> bool:
        return self.remaining_seconds(now) <= 0

    @property
    def complete(self) -> bool:
        return self.email_otp_verified and self.sms_otp_verified

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MfaSession":
        return cls(
            token=data["token"],
            account_id=int(data["account_id"]),
            email=data["email"],
            mobile=data.get("mobile") or "",
            email_otp_verified=bool(data.get("email_otp_verified")),
            sms_otp_verified=bool(data.get("sms_otp_verified")),
            is_mfa_only=bool(data.get("is_mfa_only")),
            expires_at=float(data["expires_at"]),
            attempts=int(data.get("attempts", 0)),
        )


@dataclass
class AuditLogEntry:
    session_id: str
    request_method: str
    request_path: str
    response_status: int
    response_time_ms: int
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    user_id: Optional[int] = None
    merchant_id: Optional[str] = None
    email: Optional[str] = None
    request_query: Optional[Dict[str, Any]] = None
    request_body: Any = None
    route_name: Optional[str] = None
    action_type: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
