#!/usr/bin/env python3
"""Bootstrap a SUPER_ADMIN identity for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the super admin
    ADMIN_PASSWORD: Password for the super admin (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import sys
import uuid
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

LOOPBACK_IPS = ["::1", "127.0.0.1"]


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
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
    first_name: str = "Super",
    last_name: str = "Admin",
    dry_run: bool = False,
) -> dict:
    """Create a SUPER_ADMIN identity, or promote an existing one.

    Returns:
        dict with identity_id, email, and status ('created', 'promoted',
        'already_super_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from hrms.service.runtime import get_runtime
    from hrms.storage.models import (
        AccountStatus,
        Identity,
        LoginMethod,
        Role,
        utcnow,
    )

    runtime = get_runtime()
    store = runtime.store
    existing = store.find_identity_by_email(email)

    if existing:
        if existing.role == Role.SUPER_ADMIN:
            print(f"Identity {email} is already a super admin (id: {existing.id})")
            return {"identity_id": existing.id, "email": email, "status": "already_super_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing identity {email} to SUPER_ADMIN")
            return {"identity_id": existing.id, "email": email, "status": "dry_run"}
        store.update_identity(
            existing.id,
            role=Role.SUPER_ADMIN,
            status=AccountStatus.ACTIVE,
            is_email_verified=True,
            deleted_at=None,
        )
        print(f"Promoted existing identity {email} to SUPER_ADMIN (id: {existing.id})")
        return {"identity_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create super admin: {email}")
        return {"identity_id": None, "email": email, "status": "dry_run"}

    identity = store.create_identity(
        Identity(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=runtime.auth.verifier.hash(password),
            role=Role.SUPER_ADMIN,
            status=AccountStatus.ACTIVE,
            login_method=LoginMethod.GENERAL,
            allowed_ips=list(LOOPBACK_IPS),
            team_name=f"{first_name} {last_name}",
            first_name=first_name,
            last_name=last_name,
            is_email_verified=True,
            role_name=Role.SUPER_ADMIN.value,
            password_changed_at=utcnow(),
        )
    )
    print(f"Created super admin: {email} (id: {identity.id})")
    return {"identity_id": identity.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a SUPER_ADMIN identity for the HRMS backend",
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
    parser.add_argument("--first-name", default="Super")
    parser.add_argument("--last-name", default="Admin")
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

    # Signing secrets are required by Settings even though no tokens are minted here
    if not os.environ.get("JWT_ACCESS_SECRET"):
        os.environ["JWT_ACCESS_SECRET"] = secrets.token_urlsafe(48)
    if not os.environ.get("JWT_REFRESH_SECRET"):
        os.environ["JWT_REFRESH_SECRET"] = secrets.token_urlsafe(48)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email.strip().lower(),
                args.password,
                first_name=args.first_name,
                last_name=args.last_name,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nSuper admin created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Identity ID: {result['identity_id']}")
    elif result["status"] == "promoted":
        print("\nExisting identity promoted to SUPER_ADMIN!")
    elif result["status"] == "already_super_admin":
        print("\nNo changes needed - identity is already a super admin.")


if __name__ == "__main__":
    main()
