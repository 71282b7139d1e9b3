#!/usr/bin/env python3
"""Create an admin identity, or promote an existing one.

Admins are the only identities allowed into ``/dashboard``.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Str0ng-Passw0rd' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Str0ng-Passw0rd' --name Admin

Environment Variables:
    ADMIN_EMAIL: Email for the admin identity
    ADMIN_PASSWORD: Password for a newly created admin (12+ chars, 3+ character classes)
    DATABASE_URL: PostgreSQL connection string (memory store is used when unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(
    email: str,
    password: str | None,
    *,
    name: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Create or promote an admin.

    Returns:
        dict with user_id, email and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Imported late so the environment prepared by main() is what config reads
    from filehaven.service.auth import normalize_email
    from filehaven.service.runtime import get_runtime

    runtime = get_runtime()
    email = normalize_email(email)
    existing = runtime.store.get_user_by_email(email)

    if existing:
        if existing.role == "admin":
            print(f"{email} is already an admin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote {email} to admin")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.update_user(existing.id, role="admin")
        print(f"Promoted {email} to admin (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if not password:
        raise ValueError("a password is required to create a new admin")
    if dry_run:
        print(f"[DRY RUN] Would create admin {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = await runtime.auth.register(email, password, name=name)
    runtime.store.update_user(user.id, role="admin")
    print(f"Created admin {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin identity for filehaven",
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
    parser.add_argument("--name", default=None, help="Display name for a new admin")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if args.password and not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/filehaven-bootstrap"

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email, args.password, name=args.name, dry_run=args.dry_run
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin created.")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting identity promoted to admin.")
    elif result["status"] == "already_admin":
        print("\nNo changes needed.")


if __name__ == "__main__":
    main()
