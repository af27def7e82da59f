#!/usr/bin/env python3
"""Create or promote an administrator account.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Str0ng!Passw0rd' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Str0ng!Passw0rd'

The account is created with a verified email so it can log in right away.
Without DATABASE_URL the in-memory store under SHARED_FS_ROOT is used.
"""
from __future__ import annotations

import argparse
import os
import sys


def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create the admin account, or promote and verify an existing one.

    Returns:
        dict with account_id, email and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # imported late so the environment defaults below apply to Settings
    from storefront.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_account_by_email(email)

    if existing and existing.role == "admin":
        print(f"{existing.email} is already an admin (id: {existing.id})")
        return {"account_id": existing.id, "email": existing.email, "status": "already_admin"}

    if dry_run:
        action = "promote" if existing else "create"
        print(f"[DRY RUN] Would {action} admin account {email}")
        return {"account_id": existing.id if existing else None, "email": email, "status": "dry_run"}

    if existing:
        runtime.store.update_role(existing.id, "admin")
        runtime.store.update_account(existing.id, lambda acc: setattr(acc, "email_verified", True))
        print(f"Promoted {existing.email} to admin (id: {existing.id})")
        return {"account_id": existing.id, "email": existing.email, "status": "promoted"}

    account = runtime.store.create_account(
        email,
        runtime.auth.credentials.hash(password),
        role="admin",
        email_verified=True,
    )
    print(f"Created admin account {account.email} (id: {account.id})")
    return {"account_id": account.id, "email": account.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for the storefront",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/storefront-bootstrap")
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: using the in-memory store (set DATABASE_URL for Postgres)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from storefront.config import get_settings
    from storefront.service.password_lifecycle import PasswordLifecycle
    from storefront.service.credentials import CredentialStore

    settings = get_settings()
    errors = PasswordLifecycle(
        CredentialStore(), min_length=settings.password_min_length
    ).complexity_errors(args.password)
    if errors:
        print("Error: password does not meet the complexity rules:")
        for error in errors:
            print(f"  - {error}")
        sys.exit(1)

    try:
        result = bootstrap_admin(args.email, args.password, args.dry_run)
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)
    print(f"\nDone: {result['status']}")


if __name__ == "__main__":
    main()
