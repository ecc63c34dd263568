#!/usr/bin/env python3
"""Create an administrator account. Admins have no self-signup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='SecurePassword123!' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password 'SecurePassword123!' \
        --name "Ops Admin" --mobile 9876543210 --role super_admin

Environment Variables:
    ADMIN_EMAIL: Email for the admin
    ADMIN_PASSWORD: Password for the admin (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

ROLES = ("admin", "super_admin", "support")


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from 3+ character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(
    email: str,
    password: str,
    *,
    name: str,
    mobile: str | None = None,
    role: str = "admin",
    dry_run: bool = False,
) -> dict:
    """Create the admin unless one with ``email`` already exists."""
    # Import here to avoid loading config before env vars are set
    from merchantauth.service.auth import normalize_email
    from merchantauth.service.runtime import get_runtime

    runtime = get_runtime()
    email = normalize_email(email)

    existing = runtime.store.get_admin_by_email(email)
    if existing:
        print(f"Admin {email} already exists (id: {existing.id}, role: {existing.role})")
        return {"admin_id": existing.id, "email": email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create {role} account: {email}")
        return {"admin_id": None, "email": email, "status": "dry_run"}

    password_hash = await runtime.auth.hash_password(password)
    admin = runtime.store.create_admin(
        email=email,
        name=name,
        password_hash=password_hash,
        mobile=mobile,
        role=role,
    )
    print(f"Created {role} account: {email} (id: {admin.id})")
    return {"admin_id": admin.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Create an administrator for the merchant auth service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument("--name", default="Administrator", help="Display name")
    parser.add_argument(
        "--mobile",
        default=None,
        help="Mobile number used for password reset codes",
    )
    parser.add_argument("--role", choices=ROLES, default="admin")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        # Tokens are not issued here; any secret satisfies settings validation
        import secrets
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email,
                args.password,
                name=args.name,
                mobile=args.mobile,
                role=args.role,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Admin ID: {result['admin_id']}")
    elif result["status"] == "exists":
        print("\nNo changes needed - admin already exists.")


if __name__ == "__main__":
    main()
