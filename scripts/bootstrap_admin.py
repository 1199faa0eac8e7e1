#!/usr/bin/env python3
"""Create an admin account, or promote an existing one.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=correct-horse-battery python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password correct-horse-battery

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (at least 12 characters)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote an admin.

    Returns:
        dict with user_id, email, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Imported late so env overrides from main() apply to settings
    from xmatches.service.auth import normalize_email
    from xmatches.service.runtime import get_runtime

    runtime = get_runtime()
    normalized = normalize_email(email)
    existing = runtime.store.get_user_by_email(normalized)

    if existing:
        if existing.is_admin:
            print(f"User {normalized} already exists as admin (id: {existing.id})")
            return {"user_id": existing.id, "email": normalized, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {normalized} to admin")
            return {"user_id": existing.id, "email": normalized, "status": "dry_run"}
        runtime.store.set_admin(existing.id, True)
        print(f"Promoted existing user {normalized} to admin (id: {existing.id})")
        return {"user_id": existing.id, "email": normalized, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {normalized}")
        return {"user_id": None, "email": normalized, "status": "dry_run"}

    user = await runtime.auth.register(normalized, password)
    if not user.is_admin:
        runtime.store.set_admin(user.id, True)
    print(f"Created admin user: {user.email} (id: {user.id})")
    return {"user_id": user.id, "email": user.email, "status": "created"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for xmatches",
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
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        return 1
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        return 1

    if not os.environ.get("DATABASE_URL"):
        os.environ.setdefault("USE_MEMORY_STORE", "true")
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/xmatches-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from xmatches.service.errors import ServiceError

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        return 1

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
