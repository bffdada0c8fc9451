#!/usr/bin/env python3
"""Create the first admin account, or promote an existing one.

Usage:
    ADMIN_EMAIL=registrar@example.edu ADMIN_PASSWORD='long passphrase' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email registrar@example.edu --password 'long passphrase'

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for a newly created admin
    DATABASE_URL: PostgreSQL connection string (in-memory store when unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Returns account_id, email and status (created, promoted, already_admin, dry_run)."""
    # Imported late so the environment below is in place before settings load
    from turnstile.service.runtime import get_runtime
    from turnstile.storage.common import normalize_email

    runtime = get_runtime()
    email = normalize_email(email)
    existing = runtime.store.get_account_by_email(email)

    if existing:
        if existing.role == "admin":
            print(f"Account {email} is already an admin (id: {existing.id})")
            return {"account_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote {email} to admin")
            return {"account_id": existing.id, "email": email, "status": "dry_run"}
        await runtime.auth.set_role(existing.id, "admin")
        print(f"Promoted {email} to admin (id: {existing.id})")
        return {"account_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    result = await runtime.auth.signup(email, password, name="Administrator")
    # An operator-created admin needs no mailbox round trip
    await runtime.auth.verify_email(result.verification_token)
    await runtime.auth.set_role(result.account.id, "admin")
    print(f"Created admin account: {email} (id: {result.account.id})")
    return {"account_id": result.account.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for Turnstile",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument(
        "--dry-run", action="store_true", help="Show what would be done without making changes"
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("DATA_ROOT", "/tmp/turnstile-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from turnstile.service.errors import ServiceError

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin account created.")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "promoted":
        print("\nExisting account promoted to admin.")
    elif result["status"] == "already_admin":
        print("\nNo changes needed.")


if __name__ == "__main__":
    main()
