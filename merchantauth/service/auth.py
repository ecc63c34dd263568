from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import math
import secrets
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from merchantauth.config import Settings
from merchantauth.logging import get_logger, mask_mobile, redact_email
from merchantauth.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ServerError,
    ServiceUnavailableError,
    UnprocessableStateError,
    ValidationError,
)
from merchantauth.service.notifications import CodeChannel, NotificationError
from merchantauth.storage.errors import ConstraintViolation
from merchantauth.storage.models import (
    ADMIN_ROLES,
    OTP_CHANNEL_EMAIL,
    OTP_CHANNEL_SMS,
    MerchantAccount,
    MerchantProfile,
    MfaSession,
    OneTimeCode,
)

logger = get_logger(__name__)

MERCHANT_ID_ATTEMPTS = 10
SMS_UNAVAILABLE_MESSAGE = (
    "SMS service temporarily unavailable. Please try again later or contact support."
)
EMAIL_UNAVAILABLE_MESSAGE = (
    "Email service temporarily unavailable. Please try again later or contact support."
)
INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"
RESET_GENERIC_MESSAGE = (
    "If the email exists, a password reset OTP has been sent to your registered mobile number."
)


class AuthStore(Protocol):
    def create_merchant(
        self,
        *,
        merchant_id: str,
        name: str,
        email: str,
        mobile: str,
        password_hash: str,
        state: Optional[str] = None,
    ) -> MerchantAccount: ...

    def get_merchant(self, account_id: int) -> Optional[MerchantAccount]: ...

    def get_merchant_by_email(self, email: str) -> Optional[MerchantAccount]: ...

    def get_merchant_by_mobile(self, mobile: str) -> Optional[MerchantAccount]: ...

    def merchant_public_id_exists(self, merchant_id: str) -> bool: ...

    def update_merchant(self, account_id: int, **fields: Any) -> Optional[MerchantAccount]: ...

    def get_merchant_profile(self, account_id: int) -> Optional[MerchantProfile]: ...

    def create_otp(
        self, *, email: str, otp: str, otp_type: str, expires_at: datetime
    ) -> OneTimeCode: ...

    def find_latest_otp(
        self,
        *,
        email: str,
        otp_type: str,
        otp: Optional[str] = None,
        include_expired: bool = False,
    ) -> Optional[OneTimeCode]: ...

    def mark_otp_used(self, otp_id: int) -> bool: ...

    def create_admin_otp(self, *, email: str, otp: str, expires_at: datetime) -> OneTimeCode: ...

    def find_latest_admin_otp(self, *, email: str, otp: str) -> Optional[OneTimeCode]: ...

    def mark_admin_otp_used(self, otp_id: int) -> bool: ...


@dataclass
class AuthContext:
    """Identity carried by a verified access token."""

    user_id: int
    merchant_id: str
    role: str
    email: str
    kyc_verified: bool
    is_active: bool
    expires_at: int

    def claims(self) -> Dict[str, Any]:
        return {
            "sub": str(self.user_id),
            "merchant_id": self.merchant_id,
            "role": self.role,
            "email": self.email,
            "kyc_verified": self.kyc_verified,
            "is_active": self.is_active,
        }

    def audit_principal(self) -> Dict[str, Any]:
        return {"user_id": self.user_id, "merchant_id": self.merchant_id, "email": self.email}


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_channel(otp_type: str) -> str:
    """``mobile`` and ``sms`` name the same channel."""
    value = (otp_type or "").strip().lower()
    if value in {"sms", "mobile"}:
        return OTP_CHANNEL_SMS
    if value == OTP_CHANNEL_EMAIL:
        return OTP_CHANNEL_EMAIL
    raise ValidationError("otp_type must be one of: email, mobile, sms")


def generate_otp() -> str:
    return str(100000 + secrets.randbelow(900000))


def generate_merchant_id() -> str:
    return str(10000000 + secrets.randbelow(90000000))


class AuthService:
    """Merchant sign-up, MFA sign-in, OTP issuance/verification and tokens.

    MFA sessions live in the session cache under ``mfa:session:<token>``.
    Without a cache (test mode or ``ALLOW_REDIS_FALLBACK_DEV``) they are kept
    in an in-process dict guarded by a thread lock.
    """

    def __init__(
        self,
        store: AuthStore,
        cache,
        settings: Settings,
        *,
        email_channel: CodeChannel,
        sms_channel: CodeChannel,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.email_channel = email_channel
        self.sms_channel = sms_channel
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            type=Type.ID,
        )
        self._dummy_hash: Optional[str] = None
        self._state_lock = threading.Lock()
        self._mfa_sessions: Dict[str, Dict[str, Any]] = {}
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # -- passwords ---------------------------------------------------------

    async def hash_password(self, password: str) -> str:
        return await asyncio.to_thread(self._pwd_hasher.hash, password)

    async def verify_password(self, stored_hash: Optional[str], password: str) -> bool:
        """Constant-effort check; a missing hash still pays for one verification."""
        if not stored_hash:
            if self._dummy_hash is None:
                self._dummy_hash = await self.hash_password(secrets.token_hex(16))
            stored_hash = self._dummy_hash
            await asyncio.to_thread(self._safe_verify, stored_hash, password)
            return False
        return await asyncio.to_thread(self._safe_verify, stored_hash, password)

    def _safe_verify(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    # -- tokens ------------------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None
        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time():
            return None
        return payload

    def issue_token(self, claims: Dict[str, Any]) -> str:
        now = int(time.time())
        ttl = self.settings.access_token_ttl_minutes * 60
        payload = {
            **claims,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": now,
            "exp": now + ttl,
        }
        return self._encode_jwt(payload)

    def issue_merchant_token(self, merchant: MerchantAccount) -> str:
        return self.issue_token(
            {
                "sub": str(merchant.id),
                "merchant_id": merchant.merchant_id or "",
                "role": "merchant",
                "email": merchant.email,
                "kyc_verified": merchant.kyc_verified,
                "is_active": merchant.is_active,
            }
        )

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header or not header.startswith("Bearer "):
            return None
        token = header[len("Bearer ") :].strip()
        return token or None

    def authenticate(self, authorization: Optional[str]) -> Tuple[AuthContext, Optional[str]]:
        """Validate a bearer header; returns the context and a renewed token when close to expiry."""
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("Authorization token required")
        payload = self._decode_jwt(token)
        if not payload:
            raise AuthenticationError("Invalid or expired token")
        try:
            ctx = AuthContext(
                user_id=int(payload["sub"]),
                merchant_id=str(payload.get("merchant_id") or ""),
                role=str(payload.get("role") or ""),
                email=str(payload.get("email") or ""),
                kyc_verified=bool(payload.get("kyc_verified")),
                is_active=bool(payload.get("is_active")),
                expires_at=int(payload["exp"]),
            )
        except (KeyError, TypeError, ValueError):
            raise AuthenticationError("Invalid or expired token")

        renewed = None
        if ctx.expires_at - time.time() < self.settings.token_refresh_threshold_seconds:
            renewed = self.issue_token(ctx.claims())
            logger.debug("token_renewed", user_id=ctx.user_id, role=ctx.role)
        return ctx, renewed

    def authenticate_merchant(self, authorization: Optional[str]) -> Tuple[AuthContext, Optional[str]]:
        ctx, renewed = self.authenticate(authorization)
        if ctx.role != "merchant":
            raise ForbiddenError("Merchant access required")
        if not ctx.is_active:
            raise AuthenticationError("Merchant account is inactive")
        return ctx, renewed

    def authenticate_admin(self, authorization: Optional[str]) -> Tuple[AuthContext, Optional[str]]:
        ctx, renewed = self.authenticate(authorization)
        if ctx.role not in ADMIN_ROLES:
            raise ForbiddenError("Admin access required")
        if not ctx.is_active:
            raise ForbiddenError("Admin account is inactive")
        return ctx, renewed

    # -- MFA session storage -----------------------------------------------

    async def _save_session(self, session: MfaSession) -> None:
        ttl = max(1, session.remaining_seconds())
        if self.cache:
            await self.cache.set_mfa_session(session.token, session.to_dict(), ttl)
            return
        with self._state_lock:
            self._mfa_sessions[session.token] = session.to_dict()

    async def _load_session(self, token: str) -> Optional[MfaSession]:
        if self.cache:
            data = await self.cache.get_mfa_session(token)
        else:
            with self._state_lock:
                data = self._mfa_sessions.get(token)
                if data and float(data.get("expires_at", 0)) <= time.time():
                    # Local stand-in for the cache TTL
                    self._mfa_sessions.pop(token, None)
                    data = None
                data = dict(data) if data else None
        return self._parse_session(data)

    @staticmethod
    def _parse_session(data: Optional[Dict[str, Any]]) -> Optional[MfaSession]:
        if not data:
            return None
        try:
            return MfaSession.from_dict(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("mfa_session_corrupt")
            return None

    async def _mark_channel_verified(self, token: str, channel: str) -> Optional[MfaSession]:
        """Set one channel flag in place, leaving the attempt counter untouched."""
        flag = "email_otp_verified" if channel == OTP_CHANNEL_EMAIL else "sms_otp_verified"
        if self.cache:
            return self._parse_session(await self.cache.mark_mfa_channel_verified(token, flag))
        with self._state_lock:
            data = self._mfa_sessions.get(token)
            if not data:
                return None
            data[flag] = True
            return self._parse_session(dict(data))

    async def _delete_session(self, token: str) -> None:
        if self.cache:
            await self.cache.delete_mfa_session(token)
            return
        with self._state_lock:
            self._mfa_sessions.pop(token, None)

    async def _record_failed_attempt(self, token: str) -> Optional[int]:
        if self.cache:
            return await self.cache.increment_mfa_attempts(token)
        with self._state_lock:
            data = self._mfa_sessions.get(token)
            if not data:
                return None
            data["attempts"] = int(data.get("attempts", 0)) + 1
            return data["attempts"]

    # -- one-time codes ----------------------------------------------------

    def _create_code(self, email: str, channel: str) -> OneTimeCode:
        expires_at = self._now() + timedelta(seconds=self.settings.otp_ttl_seconds)
        return self.store.create_otp(
            email=email, otp=generate_otp(), otp_type=channel, expires_at=expires_at
        )

    def _create_admin_code(self, email: str) -> OneTimeCode:
        expires_at = self._now() + timedelta(seconds=self.settings.otp_ttl_seconds)
        return self.store.create_admin_otp(email=email, otp=generate_otp(), expires_at=expires_at)

    async def dispatch_code(
        self, channel: str, destination: str, code: str, display_name: Optional[str]
    ) -> None:
        sender = self.sms_channel if channel == OTP_CHANNEL_SMS else self.email_channel
        await sender.send_code(destination, code, display_name)

    async def send_sms_code_or_503(
        self,
        email: str,
        mobile: str,
        name: Optional[str],
        *,
        purpose: str,
        admin: bool = False,
    ) -> OneTimeCode:
        """Issue and send an SMS code; admin codes live apart from merchant codes."""
        record = self._create_admin_code(email) if admin else self._create_code(email, OTP_CHANNEL_SMS)
        try:
            await self.dispatch_code(OTP_CHANNEL_SMS, mobile, record.otp, name)
        except NotificationError as exc:
            logger.error(
                "otp_dispatch_failed",
                channel=OTP_CHANNEL_SMS,
                purpose=purpose,
                mobile=mask_mobile(mobile),
                error=str(exc),
            )
            raise ServiceUnavailableError(SMS_UNAVAILABLE_MESSAGE) from exc
        return record

    # -- sign-up / sign-in -------------------------------------------------

    async def signup(
        self,
        *,
        name: str,
        email: str,
        mobile: str,
        password: str,
        state: Optional[str] = None,
    ) -> Dict[str, Any]:
        email = normalize_email(email)
        mobile = mobile.strip()
        if len(password) < 8:
            raise ValidationError("Password must be at least 8 characters long")
        if self.store.get_merchant_by_email(email):
            raise ConflictError("Email already registered")
        if self.store.get_merchant_by_mobile(mobile):
            raise ConflictError("Mobile number already registered")

        password_hash = await self.hash_password(password)
        merchant: Optional[MerchantAccount] = None
        for _ in range(MERCHANT_ID_ATTEMPTS):
            candidate = generate_merchant_id()
            if self.store.merchant_public_id_exists(candidate):
                continue
            try:
                merchant = self.store.create_merchant(
                    merchant_id=candidate,
                    name=name.strip(),
                    email=email,
                    mobile=mobile,
                    password_hash=password_hash,
                    state=state,
                )
                break
            except ConstraintViolation as exc:
                # A concurrent sign-up may win the race on any unique column
                if exc.field == "email":
                    raise ConflictError("Email already registered")
                if exc.field == "mobile":
                    raise ConflictError("Mobile number already registered")
                continue
        if merchant is None:
            logger.error("merchant_id_allocation_failed", attempts=MERCHANT_ID_ATTEMPTS)
            raise ServerError("Failed to generate unique merchant ID after multiple attempts")

        logger.info("merchant_signed_up", account_id=merchant.id, email=redact_email(email))
        return {
            "merchant": {
                "id": merchant.id,
                "merchant_id": merchant.merchant_id,
                "email": merchant.email,
                "name": merchant.name,
                "kyc_verified": merchant.kyc_verified,
            }
        }

    async def signin(self, *, email: str, password: str) -> Dict[str, Any]:
        email = normalize_email(email)
        merchant = self.store.get_merchant_by_email(email)
        password_ok = await self.verify_password(
            merchant.password_hash if merchant else None, password
        )
        if not merchant:
            logger.warning("signin_unknown_email", email=redact_email(email))
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)
        if not password_ok:
            logger.warning("signin_bad_password", account_id=merchant.id)
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)

        if not merchant.is_active or not merchant.fully_verified:
            return await self._begin_first_activation(merchant)
        if merchant.is_2fa_enabled:
            return await self._begin_routine_mfa(merchant)

        logger.error(
            "signin_invalid_account_state",
            account_id=merchant.id,
            is_active=merchant.is_active,
            is_2fa_enabled=merchant.is_2fa_enabled,
            is_email_verified=merchant.is_email_verified,
            is_mobile_verified=merchant.is_mobile_verified,
        )
        raise UnprocessableStateError(
            "Account is in an invalid state. Please contact support for assistance."
        )

    async def _begin_first_activation(self, merchant: MerchantAccount) -> Dict[str, Any]:
        session = MfaSession.new(
            secrets.token_hex(32),
            merchant,
            ttl_seconds=self.settings.mfa_session_ttl_seconds,
            is_mfa_only=False,
        )
        await self._save_session(session)
        logger.info(
            "signin_first_activation",
            account_id=merchant.id,
            is_active=merchant.is_active,
            is_email_verified=merchant.is_email_verified,
            is_mobile_verified=merchant.is_mobile_verified,
        )

        if not merchant.is_email_verified:
            record = self._create_code(merchant.email, OTP_CHANNEL_EMAIL)
            try:
                await self.dispatch_code(
                    OTP_CHANNEL_EMAIL, merchant.email, record.otp, merchant.name
                )
            except NotificationError as exc:
                logger.error(
                    "otp_dispatch_failed",
                    channel=OTP_CHANNEL_EMAIL,
                    purpose="first_activation",
                    email=redact_email(merchant.email),
                    error=str(exc),
                )
                raise ServiceUnavailableError(EMAIL_UNAVAILABLE_MESSAGE) from exc
        if not merchant.is_mobile_verified:
            await self.send_sms_code_or_503(
                merchant.email, merchant.mobile, merchant.name, purpose="first_activation"
            )

        return {
            "requires_otp": True,
            "message": "Please verify both your email and mobile number to activate your account.",
            "mfa_session_token": session.token,
            "masked_mobile": mask_mobile(merchant.mobile),
            "needs_email_verification": not merchant.is_email_verified,
            "needs_mobile_verification": not merchant.is_mobile_verified,
            "is_mobile_verified": merchant.is_mobile_verified,
            "is_email_verified": merchant.is_email_verified,
        }

    async def _begin_routine_mfa(self, merchant: MerchantAccount) -> Dict[str, Any]:
        session = MfaSession.new(
            secrets.token_hex(32),
            merchant,
            ttl_seconds=self.settings.mfa_session_ttl_seconds,
            is_mfa_only=True,
        )
        await self._save_session(session)
        logger.info("signin_routine_mfa", account_id=merchant.id)
        await self.send_sms_code_or_503(
            merchant.email, merchant.mobile, merchant.name, purpose="routine_mfa"
        )
        return {
            "requires_otp": True,
            "message": "OTP verification required. OTP sent to your registered mobile number.",
            "mfa_session_token": session.token,
            "masked_mobile": mask_mobile(merchant.mobile),
            "needs_email_verification": False,
            "needs_mobile_verification": True,
            "is_mobile_verified": True,
            "is_email_verified": True,
        }

    # -- stand-alone OTP issuance ------------------------------------------

    async def send_otp(self, *, email: str, otp_type: str) -> Dict[str, Any]:
        email = normalize_email(email)
        channel = normalize_channel(otp_type)
        merchant = self.store.get_merchant_by_email(email)
        if not merchant:
            raise NotFoundError.for_resource("Merchant")

        cooldown = self.settings.otp_resend_cooldown_seconds
        recent = self.store.find_latest_otp(email=email, otp_type=channel)
        if recent:
            elapsed = (self._now() - recent.created_at).total_seconds()
            if elapsed < cooldown:
                wait = math.ceil(cooldown - elapsed)
                raise ValidationError(
                    f"Please wait {wait} seconds before requesting a new OTP",
                    detail={"retry_after": wait},
                )

        record = self._create_code(email, channel)
        destination = merchant.mobile if channel == OTP_CHANNEL_SMS else merchant.email
        try:
            await self.dispatch_code(channel, destination, record.otp, merchant.name)
        except NotificationError as exc:
            logger.error(
                "otp_dispatch_failed",
                channel=channel,
                purpose="send_otp",
                account_id=merchant.id,
                error=str(exc),
            )
            message = (
                SMS_UNAVAILABLE_MESSAGE if channel == OTP_CHANNEL_SMS else EMAIL_UNAVAILABLE_MESSAGE
            )
            raise ServiceUnavailableError(message) from exc

        logger.info("otp_sent", channel=channel, account_id=merchant.id)
        return {"message": f"OTP sent to {otp_type}", "expires_in": self.settings.otp_ttl_seconds}

    # -- OTP verification --------------------------------------------------

    async def verify_otp(
        self,
        *,
        otp: str,
        otp_type: str,
        email: Optional[str] = None,
        mfa_session_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        channel = normalize_channel(otp_type)
        session: Optional[MfaSession] = None

        if mfa_session_token:
            session = await self._load_session(mfa_session_token)
            if session is None:
                raise AuthenticationError("Invalid or expired MFA session")
            if session.is_expired():
                await self._delete_session(mfa_session_token)
                raise AuthenticationError("MFA session has expired. Please sign in again.")
            if session.attempts >= self.settings.mfa_max_attempts:
                await self._delete_session(mfa_session_token)
                logger.warning("mfa_attempts_exhausted", account_id=session.account_id)
                raise AuthenticationError("Too many failed attempts. Please sign in again.")
            if session.is_mfa_only and channel != OTP_CHANNEL_SMS:
                raise ValidationError(
                    'MFA verification only accepts SMS OTP. Please use otpType: "sms" or "mobile".'
                )
            lookup_email = session.email
        elif email:
            lookup_email = normalize_email(email)
        else:
            raise ValidationError("Either email or mfaSessionToken is required")

        record = self.store.find_latest_otp(
            email=lookup_email, otp_type=channel, otp=otp, include_expired=True
        )
        if record is None:
            if session is not None:
                attempts = await self._record_failed_attempt(session.token)
                logger.warning(
                    "mfa_otp_mismatch", account_id=session.account_id, attempts=attempts
                )
            raise AuthenticationError("Invalid OTP")
        if record.is_expired(self._now()):
            raise AuthenticationError("OTP has expired")
        if not self.store.mark_otp_used(record.id):
            # Lost a race with a concurrent verification of the same code
            raise AuthenticationError("Invalid OTP")

        merchant = (
            self.store.get_merchant(session.account_id)
            if session is not None
            else self.store.get_merchant_by_email(lookup_email)
        )
        if not merchant:
            raise NotFoundError.for_resource("Merchant")

        if session is None:
            return self._complete_legacy(merchant, channel)
        if session.is_mfa_only:
            await self._delete_session(session.token)
            logger.info("mfa_signin_verified", account_id=merchant.id)
            return self._token_response(merchant)
        return await self._advance_activation(session, merchant, channel)

    async def _advance_activation(
        self, session: MfaSession, merchant: MerchantAccount, channel: str
    ) -> Dict[str, Any]:
        progressed = await self._mark_channel_verified(session.token, channel)
        if progressed is None:
            raise AuthenticationError("MFA session has expired. Please sign in again.")
        # Flags set by concurrent verifications are visible here
        session = progressed

        if session.complete:
            updated = self.store.update_merchant(
                merchant.id,
                is_active=True,
                is_2fa_enabled=True,
                is_email_verified=True,
                is_mobile_verified=True,
            )
            await self._delete_session(session.token)
            if not updated:
                raise NotFoundError.for_resource("Merchant")
            logger.info("merchant_activated", account_id=updated.id)
            return self._token_response(updated)

        flag = "is_email_verified" if channel == OTP_CHANNEL_EMAIL else "is_mobile_verified"
        self.store.update_merchant(merchant.id, **{flag: True})
        needs_email = not session.email_otp_verified
        needs_sms = not session.sms_otp_verified
        if needs_email and needs_sms:
            message = "Please verify both email and mobile OTP to activate your account."
        elif needs_email:
            message = "Mobile OTP verified. Please verify email OTP to activate your account."
        else:
            message = "Email OTP verified. Please verify mobile OTP to activate your account."
        logger.info("activation_progress", account_id=merchant.id, channel=channel)
        return {
            "requires_otp": True,
            "message": message,
            "mfa_session_token": session.token,
            "email_otp_verified": session.email_otp_verified,
            "sms_otp_verified": session.sms_otp_verified,
            "needs_email_verification": needs_email,
            "needs_mobile_verification": needs_sms,
        }

    def _complete_legacy(self, merchant: MerchantAccount, channel: str) -> Dict[str, Any]:
        email_done = channel == OTP_CHANNEL_EMAIL or merchant.is_email_verified
        mobile_done = channel == OTP_CHANNEL_SMS or merchant.is_mobile_verified
        updates: Dict[str, Any] = {
            "is_email_verified" if channel == OTP_CHANNEL_EMAIL else "is_mobile_verified": True
        }
        if email_done and mobile_done:
            updates.update(is_active=True, is_2fa_enabled=True)
        updated = self.store.update_merchant(merchant.id, **updates)
        if not updated:
            raise NotFoundError.for_resource("Merchant")
        if email_done and mobile_done:
            logger.info("merchant_activated", account_id=updated.id, legacy=True)
            return self._token_response(updated)
        message = (
            "Email OTP verified. Please verify mobile OTP to complete verification."
            if channel == OTP_CHANNEL_EMAIL
            else "Mobile OTP verified. Please verify email OTP to complete verification."
        )
        return {"requires_otp": True, "message": message}

    def _token_response(self, merchant: MerchantAccount) -> Dict[str, Any]:
        return {
            "token": self.issue_merchant_token(merchant),
            "merchant": {
                "id": merchant.id,
                "merchant_id": merchant.merchant_id,
                "email": merchant.email,
                "mobile": merchant.mobile,
                "name": merchant.name,
                "kyc_verified": merchant.kyc_verified,
                "is_active": merchant.is_active,
                "is_mobile_verified": merchant.is_mobile_verified,
                "is_email_verified": merchant.is_email_verified,
            },
        }

    # -- password reset ----------------------------------------------------

    async def request_password_reset(self, *, email: str) -> Dict[str, Any]:
        email = normalize_email(email)
        merchant = self.store.get_merchant_by_email(email)
        if not merchant:
            logger.warning("password_reset_unknown_email", email=redact_email(email))
            return {"message": RESET_GENERIC_MESSAGE}
        if not merchant.is_active:
            logger.warning("password_reset_inactive_account", account_id=merchant.id)
            return {"message": RESET_GENERIC_MESSAGE}

        await self.send_sms_code_or_503(
            merchant.email, merchant.mobile, merchant.name, purpose="password_reset"
        )
        logger.info("password_reset_requested", account_id=merchant.id)
        return {
            "message": RESET_GENERIC_MESSAGE,
            "masked_mobile": mask_mobile(merchant.mobile),
            "expires_in": self.settings.otp_ttl_seconds,
        }

    async def verify_password_reset(
        self, *, email: str, otp: str, new_password: str
    ) -> Dict[str, Any]:
        if len(new_password) < 8:
            raise ValidationError("Password must be at least 8 characters long")
        email = normalize_email(email)
        merchant = self.store.get_merchant_by_email(email)
        if not merchant:
            raise NotFoundError.for_resource("Merchant")
        await self.consume_reset_code(email, otp)
        password_hash = await self.hash_password(new_password)
        self.store.update_merchant(merchant.id, password_hash=password_hash)
        logger.info("password_reset_completed", account_id=merchant.id)
        return {
            "message": "Password has been reset successfully. Please sign in with your new password."
        }

    async def consume_reset_code(self, email: str, otp: str, *, admin: bool = False) -> None:
        if admin:
            record = self.store.find_latest_admin_otp(email=email, otp=otp)
            consumed = record is not None and self.store.mark_admin_otp_used(record.id)
        else:
            record = self.store.find_latest_otp(email=email, otp_type=OTP_CHANNEL_SMS, otp=otp)
            consumed = record is not None and self.store.mark_otp_used(record.id)
        if not consumed:
            raise AuthenticationError(
                "Invalid or expired OTP. Please request a new password reset."
            )

    # -- authenticated merchant operations ---------------------------------

    async def logout(self, ctx: AuthContext) -> Dict[str, Any]:
        merchant = self.store.get_merchant_by_email(ctx.email)
        if not merchant or merchant.id != ctx.user_id:
            raise AuthenticationError("Invalid user session")
        # Tokens are stateless; they stay valid until they expire
        logger.info("merchant_logged_out", account_id=merchant.id)
        return {"message": "Logged out successfully"}

    def get_profile(self, ctx: AuthContext) -> Dict[str, Any]:
        merchant = self.store.get_merchant(ctx.user_id)
        if not merchant:
            raise NotFoundError.for_resource("Merchant")
        profile = self.store.get_merchant_profile(merchant.id)
        return {
            "merchant": merchant.summary(),
            "profile": profile.document if profile else None,
        }

    def pending_sessions(self) -> List[str]:
        """Tokens of in-process MFA sessions; empty when the cache holds them."""
        with self._state_lock:
            return list(self._mfa_sessions)
