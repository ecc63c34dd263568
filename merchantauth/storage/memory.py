from __future__ import annotations

import copy
import threading
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from merchantauth.logging import get_logger
from merchantauth.storage.errors import ConstraintViolation
from merchantauth.storage.models import (
    OTP_CHANNEL_SMS,
    AdminAccount,
    AuditLogEntry,
    MerchantAccount,
    MerchantProfile,
    OneTimeCode,
    utcnow,
)

_MERCHANT_MUTABLE_FIELDS = {
    "name",
    "mobile",
    "password_hash",
    "state",
    "is_active",
    "is_email_verified",
    "is_mobile_verified",
    "is_2fa_enabled",
    "kyc_verified",
}
_ADMIN_MUTABLE_FIELDS = {"name", "mobile", "password_hash", "role", "is_active", "last_login_at"}


class MemoryStore:
    """In-process credential store used for tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.merchants: Dict[int, MerchantAccount] = {}
        self.admins: Dict[int, AdminAccount] = {}
        self.profiles: Dict[int, MerchantProfile] = {}
        self.otps: List[OneTimeCode] = []
        self.admin_otps: List[OneTimeCode] = []
        self.audit_logs: List[AuditLogEntry] = []
        self._merchant_seq = 1
        self._admin_seq = 1
        self._otp_seq = 1
        self._admin_otp_seq = 1
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None

    # -- merchants ---------------------------------------------------------

    def create_merchant(
        self,
        *,
        merchant_id: str,
        name: str,
        email: str,
        mobile: str,
        password_hash: str,
        state: Optional[str] = None,
    ) -> MerchantAccount:
        with self._data_lock:
            for existing in self.merchants.values():
                if existing.email == email:
                    raise ConstraintViolation("email already exists", field="email")
                if existing.mobile == mobile:
                    raise ConstraintViolation("mobile already exists", field="mobile")
                if existing.merchant_id == merchant_id:
                    raise ConstraintViolation(
                        "merchant_id already exists", field="merchant_id"
                    )
            merchant = MerchantAccount(
                id=self._merchant_seq,
                merchant_id=merchant_id,
                name=name,
                email=email,
                mobile=mobile,
                password_hash=password_hash,
                state=state,
            )
            self._merchant_seq += 1
            self.merchants[merchant.id] = merchant
            return copy.copy(merchant)

    def get_merchant(self, account_id: int) -> Optional[MerchantAccount]:
        with self._data_lock:
            merchant = self.merchants.get(account_id)
            return copy.copy(merchant) if merchant else None

    def get_merchant_by_email(self, email: str) -> Optional[MerchantAccount]:
        with self._data_lock:
            found = next((m for m in self.merchants.values() if m.email == email), None)
            return copy.copy(found) if found else None

    def get_merchant_by_mobile(self, mobile: str) -> Optional[MerchantAccount]:
        with self._data_lock:
            found = next((m for m in self.merchants.values() if m.mobile == mobile), None)
            return copy.copy(found) if found else None

    def get_merchant_by_public_id(self, merchant_id: str) -> Optional[MerchantAccount]:
        with self._data_lock:
            found = next(
                (m for m in self.merchants.values() if m.merchant_id == merchant_id), None
            )
            return copy.copy(found) if found else None

    def merchant_public_id_exists(self, merchant_id: str) -> bool:
        with self._data_lock:
            return any(m.merchant_id == merchant_id for m in self.merchants.values())

    def update_merchant(self, account_id: int, **fields: Any) -> Optional[MerchantAccount]:
        unknown = set(fields) - _MERCHANT_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported merchant fields: {sorted(unknown)}")
        with self._data_lock:
            merchant = self.merchants.get(account_id)
            if not merchant:
                return None
            for key, value in fields.items():
                setattr(merchant, key, value)
            merchant.updated_at = utcnow()
            return copy.copy(merchant)

    def list_merchants(
        self, *, page: int = 1, limit: int = 20, search: Optional[str] = None
    ) -> tuple[List[MerchantAccount], int]:
        with self._data_lock:
            rows = list(self.merchants.values())
            if search:
                needle = search.lower()
                rows = [
                    m
                    for m in rows
                    if needle in m.email.lower()
                    or needle in m.name.lower()
                    or needle in m.merchant_id.lower()
                    or needle in m.mobile.lower()
                ]
            rows.sort(key=lambda m: (m.created_at, m.id), reverse=True)
            offset = (page - 1) * limit
            return [copy.copy(m) for m in rows[offset : offset + limit]], len(rows)

    def get_merchant_profile(self, account_id: int) -> Optional[MerchantProfile]:
        with self._data_lock:
            profile = self.profiles.get(account_id)
            return copy.deepcopy(profile) if profile else None

    def upsert_merchant_profile(
        self, account_id: int, document: Dict[str, Any]
    ) -> MerchantProfile:
        with self._data_lock:
            if account_id not in self.merchants:
                raise ConstraintViolation(
                    "merchant not found for profile", {"merchant_id": account_id}
                )
            existing = self.profiles.get(account_id)
            merged = dict(existing.document) if existing else {}
            merged.update(document)
            profile = MerchantProfile(merchant_id=account_id, document=merged)
            self.profiles[account_id] = profile
            return copy.deepcopy(profile)

    # -- admins ------------------------------------------------------------

    def create_admin(
        self,
        *,
        email: str,
        name: str,
        password_hash: str,
        mobile: Optional[str] = None,
        role: str = "admin",
        is_active: bool = True,
    ) -> AdminAccount:
        with self._data_lock:
            if any(a.email == email for a in self.admins.values()):
                raise ConstraintViolation("email already exists", field="email")
            admin = AdminAccount(
                id=self._admin_seq,
                email=email,
                name=name,
                password_hash=password_hash,
                mobile=mobile,
                role=role,
                is_active=is_active,
            )
            self._admin_seq += 1
            self.admins[admin.id] = admin
            return copy.copy(admin)

    def get_admin(self, admin_id: int) -> Optional[AdminAccount]:
        with self._data_lock:
            admin = self.admins.get(admin_id)
            return copy.copy(admin) if admin else None

    def get_admin_by_email(self, email: str) -> Optional[AdminAccount]:
        with self._data_lock:
            found = next((a for a in self.admins.values() if a.email == email), None)
            return copy.copy(found) if found else None

    def update_admin(self, admin_id: int, **fields: Any) -> Optional[AdminAccount]:
        unknown = set(fields) - _ADMIN_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported admin fields: {sorted(unknown)}")
        with self._data_lock:
            admin = self.admins.get(admin_id)
            if not admin:
                return None
            for key, value in fields.items():
                setattr(admin, key, value)
            return copy.copy(admin)

    # -- one-time codes ----------------------------------------------------

    def create_otp(
        self, *, email: str, otp: str, otp_type: str, expires_at: datetime
    ) -> OneTimeCode:
        with self._data_lock:
            record = OneTimeCode(
                id=self._otp_seq,
                email=email,
                otp=otp,
                otp_type=otp_type,
                expires_at=expires_at,
            )
            self._otp_seq += 1
            self.otps.append(record)
            return copy.copy(record)

    def find_latest_otp(
        self,
        *,
        email: str,
        otp_type: str,
        otp: Optional[str] = None,
        include_expired: bool = False,
    ) -> Optional[OneTimeCode]:
        """Most recently created unused code for ``(email, otp_type)``."""
        now = utcnow()
        with self._data_lock:
            candidates = [
                rec
                for rec in self.otps
                if rec.email == email
                and rec.otp_type == otp_type
                and not rec.is_used
                and (otp is None or rec.otp == otp)
                and (include_expired or not rec.is_expired(now))
            ]
            if not candidates:
                return None
            latest = max(candidates, key=lambda rec: (rec.created_at, rec.id))
            return copy.copy(latest)

    def mark_otp_used(self, otp_id: int) -> bool:
        """Flip ``is_used`` once; returns False if the code was already consumed."""
        with self._data_lock:
            for rec in self.otps:
                if rec.id == otp_id:
                    if rec.is_used:
                        return False
                    rec.is_used = True
                    return True
            return False

    # -- admin reset codes (kept apart from merchant codes) ---------------

    def create_admin_otp(self, *, email: str, otp: str, expires_at: datetime) -> OneTimeCode:
        with self._data_lock:
            record = OneTimeCode(
                id=self._admin_otp_seq,
                email=email,
                otp=otp,
                otp_type=OTP_CHANNEL_SMS,
                expires_at=expires_at,
            )
            self._admin_otp_seq += 1
            self.admin_otps.append(record)
            return copy.copy(record)

    def find_latest_admin_otp(self, *, email: str, otp: str) -> Optional[OneTimeCode]:
        now = utcnow()
        with self._data_lock:
            candidates = [
                rec
                for rec in self.admin_otps
                if rec.email == email
                and rec.otp == otp
                and not rec.is_used
                and not rec.is_expired(now)
            ]
            if not candidates:
                return None
            return copy.copy(max(candidates, key=lambda rec: (rec.created_at, rec.id)))

    def mark_admin_otp_used(self, otp_id: int) -> bool:
        with self._data_lock:
            for rec in self.admin_otps:
                if rec.id == otp_id and not rec.is_used:
                    rec.is_used = True
                    return True
            return False

    # -- audit -------------------------------------------------------------

    def insert_audit_logs(self, entries: Iterable[AuditLogEntry]) -> int:
        batch = [copy.deepcopy(entry) for entry in entries]
        with self._data_lock:
            self.audit_logs.extend(batch)
        return len(batch)
