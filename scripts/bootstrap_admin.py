#!/usr/bin/env python3
"""Bootstrap a super_admin account for initial setup.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=root ADMIN_EMAIL=root@school.example ADMIN_PASSWORD='Str0ng!Passw0rd' \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username root --email root@school.example \
        --password 'Str0ng!Passw0rd'

Environment Variables:
    ADMIN_USERNAME: Username for the super_admin account
    ADMIN_EMAIL: Email for the super_admin account
    ADMIN_PASSWORD: Password (validated against the default password policy)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(
    username: str, email: str, password: str, dry_run: bool = False
) -> dict:
    """Create a super_admin, or report the existing one.

    Returns:
        dict with user_id, username, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from schoolauth.service.runtime import get_runtime

    runtime = get_runtime()

    existing = runtime.store.get_user_by_username(username)
    if existing:
        print(f"User {username} already exists with role {existing.role} (id: {existing.id})")
        return {"user_id": existing.id, "username": username, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create super_admin: {username} <{email}>")
        return {"user_id": None, "username": username, "status": "dry_run"}

    user = await runtime.auth.create_account(username, email, password, role="super_admin")
    runtime.audit.log(
        "USER_CREATE",
        "USER",
        user_id=user.id,
        resource_id=user.id,
        details={"username": user.username, "role": user.role, "source": "bootstrap"},
        department=user.department,
        role=user.role,
    )
    print(f"Created super_admin: {username} (id: {user.id})")
    return {"user_id": user.id, "username": username, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a super_admin account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME"),
        help="Admin username (or set ADMIN_USERNAME env var)",
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
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    for name in ("username", "email", "password"):
        if not getattr(args, name):
            print(f"Error: --{name} or ADMIN_{name.upper()} environment variable required")
            sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/schoolauth-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    # Rate limits are irrelevant for a one-shot script
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
    os.environ.setdefault("REDIS_URL", "")

    try:
        result = asyncio.run(
            bootstrap_admin(args.username, args.email, args.password, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nsuper_admin created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "exists":
        print("\nNo changes made.")


if __name__ == "__main__":
    main()
