from __future__ import annotations

import math
from typing import Any, Dict, Optional

from merchantauth.logging import get_logger, mask_mobile, redact_email
from merchantauth.service.auth import (
    INVALID_CREDENTIALS_MESSAGE,
    RESET_GENERIC_MESSAGE,
    AuthContext,
    AuthService,
    normalize_email,
)
from merchantauth.service.errors import (
    AuthenticationError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from merchantauth.storage.errors import ConstraintViolation
from merchantauth.storage.models import MerchantAccount, utcnow

logger = get_logger(__name__)

MAX_PAGE_SIZE = 100


class AdminService:
    """Administrator sign-in, merchant oversight and admin password recovery.

    Shares password hashing, token issuance and code dispatch with
    :class:`AuthService`; admins never go through the MFA state machine.
    """

    def __init__(self, store, auth: AuthService) -> None:
        self.store = store
        self.auth = auth

    async def signin(self, *, email: str, password: str) -> Dict[str, Any]:
        email = normalize_email(email)
        admin = self.store.get_admin_by_email(email)
        password_ok = await self.auth.verify_password(
            admin.password_hash if admin else None, password
        )
        if not admin or not password_ok:
            logger.warning("admin_signin_failed", email=redact_email(email))
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)
        if not admin.is_active:
            logger.warning("admin_signin_disabled", admin_id=admin.id)
            raise ForbiddenError("Admin account is disabled. Please contact support.")

        updated = self.store.update_admin(admin.id, last_login_at=utcnow()) or admin
        token = self.auth.issue_token(
            {
                "sub": str(updated.id),
                "merchant_id": "",
                "role": updated.role,
                "email": updated.email,
                "kyc_verified": True,
                "is_active": updated.is_active,
            }
        )
        logger.info("admin_signed_in", admin_id=updated.id, role=updated.role)
        return {"token": token, "admin": updated.summary()}

    def list_merchants(
        self, *, page: int = 1, limit: int = 20, search: Optional[str] = None
    ) -> Dict[str, Any]:
        page = max(1, page)
        limit = min(max(1, limit), MAX_PAGE_SIZE)
        search = search.strip() if search else None
        rows, total = self.store.list_merchants(page=page, limit=limit, search=search or None)
        return {
            "merchants": [m.summary() for m in rows],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": math.ceil(total / limit) if total else 0,
            },
        }

    def _require_merchant(self, merchant_id: str) -> MerchantAccount:
        merchant = self.store.get_merchant_by_public_id(merchant_id)
        if not merchant:
            raise NotFoundError.for_resource("Merchant")
        return merchant

    def get_merchant(self, merchant_id: str) -> Dict[str, Any]:
        merchant = self._require_merchant(merchant_id)
        profile = self.store.get_merchant_profile(merchant.id)
        return {
            "merchant": merchant.summary(),
            "profile": profile.document if profile else None,
        }

    def update_merchant_profile(
        self, merchant_id: str, document: Dict[str, Any], *, actor: AuthContext
    ) -> Dict[str, Any]:
        merchant = self._require_merchant(merchant_id)
        try:
            profile = self.store.upsert_merchant_profile(merchant.id, document)
        except ConstraintViolation:
            # Merchant vanished between lookup and write
            raise NotFoundError.for_resource("Merchant")
        logger.info(
            "merchant_profile_updated",
            merchant_id=merchant.merchant_id,
            admin_id=actor.user_id,
            fields=sorted(document),
        )
        return {"message": "Merchant profile updated successfully", "profile": profile.document}

    def set_merchant_active(
        self, merchant_id: str, active: bool, *, actor: AuthContext
    ) -> Dict[str, Any]:
        merchant = self._require_merchant(merchant_id)
        verb = "enabled" if active else "disabled"
        if merchant.is_active == active:
            return {"message": f"Merchant account is already {verb}", "merchant": merchant.summary()}
        updated = self.store.update_merchant(merchant.id, is_active=active)
        if not updated:
            raise NotFoundError.for_resource("Merchant")
        logger.info(
            f"merchant_{verb}",
            merchant_id=updated.merchant_id,
            admin_id=actor.user_id,
        )
        return {"message": f"Merchant account {verb} successfully", "merchant": updated.summary()}

    async def request_password_reset(self, *, email: str) -> Dict[str, Any]:
        email = normalize_email(email)
        admin = self.store.get_admin_by_email(email)
        if not admin or not admin.is_active:
            logger.warning("admin_password_reset_ignored", email=redact_email(email))
            return {"message": RESET_GENERIC_MESSAGE}
        if not admin.mobile:
            raise ValidationError(
                "Mobile number not registered. Please contact support to reset your password."
            )
        await self.auth.send_sms_code_or_503(
            admin.email, admin.mobile, admin.name, purpose="admin_password_reset", admin=True
        )
        logger.info("admin_password_reset_requested", admin_id=admin.id)
        return {
            "message": RESET_GENERIC_MESSAGE,
            "masked_mobile": mask_mobile(admin.mobile),
            "expires_in": self.auth.settings.otp_ttl_seconds,
        }

    async def verify_password_reset(
        self, *, email: str, otp: str, new_password: str
    ) -> Dict[str, Any]:
        if len(new_password) < 8:
            raise ValidationError("Password must be at least 8 characters long")
        email = normalize_email(email)
        admin = self.store.get_admin_by_email(email)
        if not admin:
            raise NotFoundError.for_resource("Admin")
        await self.auth.consume_reset_code(email, otp, admin=True)
        password_hash = await self.auth.hash_password(new_password)
        self.store.update_admin(admin.id, password_hash=password_hash)
        logger.info("admin_password_reset_completed", admin_id=admin.id)
        return {
            "message": "Password has been reset successfully. Please sign in with your new password."
        }
