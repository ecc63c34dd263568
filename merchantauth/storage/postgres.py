from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from merchantauth.logging import get_logger
from merchantauth.storage.errors import ConstraintViolation
from merchantauth.storage.models import (
    OTP_CHANNEL_SMS,
    AdminAccount,
    AuditLogEntry,
    MerchantAccount,
    MerchantProfile,
    OneTimeCode,
)

_MERCHANT_MUTABLE_FIELDS = (
    "name",
    "mobile",
    "password_hash",
    "state",
    "is_active",
    "is_email_verified",
    "is_mobile_verified",
    "is_2fa_enabled",
    "kyc_verified",
)
_ADMIN_MUTABLE_FIELDS = ("name", "mobile", "password_hash", "role", "is_active", "last_login_at")

# Unique index name -> logical field, used to classify UniqueViolation
_CONSTRAINT_FIELDS = {
    "merchant_email_key": "email",
    "merchant_mobile_key": "mobile",
    "merchant_merchant_id_key": "merchant_id",
    "admin_user_email_key": "email",
}


def _constraint_field(exc: errors.UniqueViolation) -> Optional[str]:
    diag = getattr(exc, "diag", None)
    name = getattr(diag, "constraint_name", None) if diag else None
    return _CONSTRAINT_FIELDS.get(name or "")


class PostgresStore:
    """Postgres-backed credential store for accounts, one-time codes and audit rows."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure the tables this service writes to exist before serving requests."""

        required_tables = [
            "merchant",
            "merchant_profile",
            "admin_user",
            "otp_code",
            "admin_otp",
            "audit_log",
        ]

        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _merchant_from_row(row: Dict[str, Any]) -> MerchantAccount:
        return MerchantAccount(
            id=int(row["id"]),
            merchant_id=row["merchant_id"],
            name=row["name"],
            email=row["email"],
            mobile=row["mobile"],
            password_hash=row["password_hash"],
            state=row.get("state"),
            is_active=bool(row.get("is_active")),
            is_email_verified=bool(row.get("is_email_verified")),
            is_mobile_verified=bool(row.get("is_mobile_verified")),
            is_2fa_enabled=bool(row.get("is_2fa_enabled")),
            kyc_verified=bool(row.get("kyc_verified")),
            created_at=row["created_at"],
            updated_at=row.get("updated_at") or row["created_at"],
        )

    @staticmethod
    def _admin_from_row(row: Dict[str, Any]) -> AdminAccount:
        return AdminAccount(
            id=int(row["id"]),
            email=row["email"],
            name=row["name"],
            password_hash=row["password_hash"],
            mobile=row.get("mobile"),
            role=row.get("role", "admin"),
            is_active=bool(row.get("is_active")),
            last_login_at=row.get("last_login_at"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _admin_otp_from_row(row: Dict[str, Any]) -> OneTimeCode:
        return OneTimeCode(
            id=int(row["id"]),
            email=row["email"],
            otp=row["otp"],
            otp_type=OTP_CHANNEL_SMS,
            expires_at=row["expires_at"],
            is_used=bool(row.get("is_used")),
            created_at=row["created_at"],
        )

    @staticmethod
    def _otp_from_row(row: Dict[str, Any]) -> OneTimeCode:
        return OneTimeCode(
            id=int(row["id"]),
            email=row["email"],
            otp=row["otp"],
            otp_type=row["otp_type"],
            expires_at=row["expires_at"],
            is_used=bool(row.get("is_used")),
            created_at=row["created_at"],
        )

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO merchant (merchant_id, name, email, mobile, password_hash, state)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (merchant_id, name, email, mobile, password_hash, state),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc)
            raise ConstraintViolation(f"{field or 'value'} already exists", field=field)
        return self._merchant_from_row(row)

    def get_merchant(self, account_id: int) -> Optional[MerchantAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM merchant WHERE id = %s", (account_id,)
            ).fetchone()
        return self._merchant_from_row(row) if row else None

    def get_merchant_by_email(self, email: str) -> Optional[MerchantAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM merchant WHERE email = %s", (email,)
            ).fetchone()
        return self._merchant_from_row(row) if row else None

    def get_merchant_by_mobile(self, mobile: str) -> Optional[MerchantAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM merchant WHERE mobile = %s", (mobile,)
            ).fetchone()
        return self._merchant_from_row(row) if row else None

    def get_merchant_by_public_id(self, merchant_id: str) -> Optional[MerchantAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM merchant WHERE merchant_id = %s", (merchant_id,)
            ).fetchone()
        return self._merchant_from_row(row) if row else None

    def merchant_public_id_exists(self, merchant_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS found FROM merchant WHERE merchant_id = %s", (merchant_id,)
            ).fetchone()
        return row is not None

    def update_merchant(self, account_id: int, **fields: Any) -> Optional[MerchantAccount]:
        unknown = set(fields) - set(_MERCHANT_MUTABLE_FIELDS)
        if unknown:
            raise ValueError(f"unsupported merchant fields: {sorted(unknown)}")
        if not fields:
            return self.get_merchant(account_id)
        # Column names come from the allow-list above, never from callers
        assignments = ", ".join(f"{name} = %s" for name in fields)
        params = [*fields.values(), account_id]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE merchant SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc)
            raise ConstraintViolation(f"{field or 'value'} already exists", field=field)
        return self._merchant_from_row(row) if row else None

    def list_merchants(
        self, *, page: int = 1, limit: int = 20, search: Optional[str] = None
    ) -> tuple[List[MerchantAccount], int]:
        where = ""
        params: list[Any] = []
        if search:
            pattern = f"%{search}%"
            where = (
                "WHERE email ILIKE %s OR name ILIKE %s OR merchant_id ILIKE %s OR mobile ILIKE %s"
            )
            params = [pattern, pattern, pattern, pattern]
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM merchant {where}", params
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM merchant {where} ORDER BY created_at DESC, id DESC LIMIT %s OFFSET %s",
                [*params, limit, (page - 1) * limit],
            ).fetchall()
        total = int(total_row["total"]) if total_row else 0
        return [self._merchant_from_row(row) for row in rows], total

    def get_merchant_profile(self, account_id: int) -> Optional[MerchantProfile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM merchant_profile WHERE merchant_id = %s", (account_id,)
            ).fetchone()
        if not row:
            return None
        return MerchantProfile(
            merchant_id=int(row["merchant_id"]),
            document=row.get("document") or {},
            updated_at=row["updated_at"],
        )

    def upsert_merchant_profile(
        self, account_id: int, document: Dict[str, Any]
    ) -> MerchantProfile:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO merchant_profile (merchant_id, document)
                    VALUES (%s, %s::jsonb)
                    ON CONFLICT (merchant_id) DO UPDATE
                    SET document = merchant_profile.document || EXCLUDED.document,
                        updated_at = now()
                    RETURNING *
                    """,
                    (account_id, json.dumps(document)),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "merchant not found for profile", {"merchant_id": account_id}
            )
        return MerchantProfile(
            merchant_id=int(row["merchant_id"]),
            document=row.get("document") or {},
            updated_at=row["updated_at"],
        )

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO admin_user (email, name, password_hash, mobile, role, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (email, name, password_hash, mobile, role, is_active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", field="email")
        return self._admin_from_row(row)

    def get_admin(self, admin_id: int) -> Optional[AdminAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_user WHERE id = %s", (admin_id,)
            ).fetchone()
        return self._admin_from_row(row) if row else None

    def get_admin_by_email(self, email: str) -> Optional[AdminAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_user WHERE email = %s", (email,)
            ).fetchone()
        return self._admin_from_row(row) if row else None

    def update_admin(self, admin_id: int, **fields: Any) -> Optional[AdminAccount]:
        unknown = set(fields) - set(_ADMIN_MUTABLE_FIELDS)
        if unknown:
            raise ValueError(f"unsupported admin fields: {sorted(unknown)}")
        if not fields:
            return self.get_admin(admin_id)
        assignments = ", ".join(f"{name} = %s" for name in fields)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE admin_user SET {assignments} WHERE id = %s RETURNING *",
                [*fields.values(), admin_id],
            ).fetchone()
        return self._admin_from_row(row) if row else None

    # -- one-time codes ----------------------------------------------------

    def create_otp(
        self, *, email: str, otp: str, otp_type: str, expires_at: datetime
    ) -> OneTimeCode:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO otp_code (email, otp, otp_type, expires_at)
                VALUES (%s, %s, %s, %s)
                RETURNING *
                """,
                (email, otp, otp_type, expires_at),
            ).fetchone()
        return self._otp_from_row(row)

    def find_latest_otp(
        self,
        *,
        email: str,
        otp_type: str,
        otp: Optional[str] = None,
        include_expired: bool = False,
    ) -> Optional[OneTimeCode]:
        clauses = ["email = %s", "otp_type = %s", "is_used = FALSE"]
        params: list[Any] = [email, otp_type]
        if otp is not None:
            clauses.append("otp = %s")
            params.append(otp)
        if not include_expired:
            clauses.append("expires_at > now()")
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM otp_code WHERE {} ORDER BY created_at DESC, id DESC LIMIT 1".format(
                    " AND ".join(clauses)
                ),
                params,
            ).fetchone()
        return self._otp_from_row(row) if row else None

    def mark_otp_used(self, otp_id: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE otp_code SET is_used = TRUE WHERE id = %s AND is_used = FALSE RETURNING id",
                (otp_id,),
            ).fetchone()
        return row is not None

    # -- admin reset codes (kept apart from merchant codes) ---------------

    def create_admin_otp(self, *, email: str, otp: str, expires_at: datetime) -> OneTimeCode:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO admin_otp (email, otp, expires_at)
                VALUES (%s, %s, %s)
                RETURNING *
                """,
                (email, otp, expires_at),
            ).fetchone()
        return self._admin_otp_from_row(row)

    def find_latest_admin_otp(self, *, email: str, otp: str) -> Optional[OneTimeCode]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM admin_otp
                WHERE email = %s AND otp = %s AND is_used = FALSE AND expires_at > now()
                ORDER BY created_at DESC, id DESC LIMIT 1
                """,
                (email, otp),
            ).fetchone()
        return self._admin_otp_from_row(row) if row else None

    def mark_admin_otp_used(self, otp_id: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE admin_otp SET is_used = TRUE WHERE id = %s AND is_used = FALSE RETURNING id",
                (otp_id,),
            ).fetchone()
        return row is not None

    # -- audit) -------------------------------------------------------------

    def insert_audit_logs(self, entries: Iterable[AuditLogEntry]) -> int:
        rows = [
            (
                e.session_id,
                e.user_id,
                e.merchant_id,
                e.email,
                e.ip_address,
                e.user_agent,
                e.request_method,
                e.request_path,
                json.dumps(e.request_query) if e.request_query is not None else None,
                json.dumps(e.request_body) if e.request_body is not None else None,
                e.response_status,
                e.response_time_ms,
                e.route_name,
                e.action_type,
                json.dumps(e.metadata or {}),
                e.created_at,
            )
            for e in entries
        ]
        if not rows:
            return 0
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.executemany(
                    """
                    INSERT INTO audit_log (
                        session_id, user_id, merchant_id, email, ip_address, user_agent,
                        request_method, request_path, request_query, request_body,
                        response_status, response_time_ms, route_name, action_type,
                        metadata, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s::jsonb, %s, %s, %s, %s, %s::jsonb, %s)
                    """,
                    rows,
                )
        return len(rows)
