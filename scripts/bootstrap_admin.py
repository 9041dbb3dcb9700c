#!/usr/bin/env python3
"""Create the first admin account, or promote an existing one.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Str0ng-Passw0rd' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Str0ng-Passw0rd' --name Admin

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password (length >= 8 and 3 of lower/upper/digit/symbol)
    DATABASE_URL: PostgreSQL connection string (memory store if not set)
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
    email: str, password: str, name: str | None = None, dry_run: bool = False
) -> dict:
    """Create or promote an admin account.

    Returns:
        dict with account_id, email, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here so the environment is settled before settings load
    from authcore.service.runtime import get_runtime
    from authcore.storage.models import AccountRole

    runtime = get_runtime()
    existing = runtime.store.get_account_by_email(email)

    if existing:
        if existing.role == AccountRole.ADMIN:
            print(f"Account {existing.email} is already an admin (id: {existing.id})")
            return {"account_id": existing.id, "email": existing.email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing account {existing.email} to admin")
            return {"account_id": existing.id, "email": existing.email, "status": "dry_run"}
        runtime.store.update_account_role(existing.id, AccountRole.ADMIN)
        print(f"Promoted existing account {existing.email} to admin (id: {existing.id})")
        return {"account_id": existing.id, "email": existing.email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    result = await runtime.auth.register(email, password, name, role=AccountRole.ADMIN)
    print(f"Created admin account: {result.account.email} (id: {result.account.id})")
    return {
        "account_id": result.account.id,
        "email": result.account.email,
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for authcore",
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
    parser.add_argument("--name", default=None, help="Display name")
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

    from authcore.service.passwords import password_strength

    strength = password_strength(args.password)
    if not strength.valid:
        print("Error: password must contain " + ", ".join(strength.unmet))
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/authcore-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from authcore.service.errors import ServiceError

    try:
        result = asyncio.run(
            bootstrap_admin(args.email, args.password, args.name, args.dry_run)
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        if isinstance(exc.detail, list):
            for issue in exc.detail:
                print(f"  {issue.get('field')}: {issue.get('message')}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin account created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "promoted":
        print("\nExisting account promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - account is already an admin.")


if __name__ == "__main__":
    main()
