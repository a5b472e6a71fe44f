#!/usr/bin/env python3
"""Bootstrap an administrator account.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure-Passw0rd!' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure-Passw0rd!'

Environment Variables:
    ADMIN_EMAIL: Email of the account to create or promote
    ADMIN_PASSWORD: Password used when the account is created (must meet the password policy)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

ADMIN_ROLE = "admin"


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create the admin role (granted ``*``) and attach it to ``email``.

    Returns:
        dict with user_id, email, and status
    """
    # Imported late so the environment defaults below are in place first.
    from authkernel.runtime import Runtime
    from authkernel.service.auth import normalize_email
    from authkernel.storage.models import utcnow

    runtime = Runtime()
    try:
        email = normalize_email(email)
        existing = runtime.store.get_user_by_email(email)
        if existing is not None and await runtime.rbac.has_role(existing.id, [ADMIN_ROLE]):
            print(f"User {email} already exists as admin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}

        if dry_run:
            action = "promote existing user" if existing else "create admin user"
            print(f"[DRY RUN] Would {action}: {email}")
            return {"user_id": existing.id if existing else None, "email": email, "status": "dry_run"}

        role = await runtime.rbac.ensure_role(ADMIN_ROLE, "Full administrative access")
        await runtime.rbac.grant_role_permission(ADMIN_ROLE, "*")
        if runtime.settings.default_role:
            await runtime.rbac.ensure_role(runtime.settings.default_role, "Default storefront role")

        status = "promoted"
        user_id = existing.id if existing else None
        if existing is None:
            registered = await runtime.auth.register(email, password)
            user_id = registered.user.id
            runtime.store.mark_email_verified(user_id, utcnow())
            status = "created"
        await runtime.rbac.assign_role(user_id, role.id)
        print(f"{status.capitalize()} admin user {email} (id: {user_id})")
        return {"user_id": user_id, "email": email, "status": status}
    finally:
        await runtime.close()


_STATUS_MESSAGES = {
    "created": "Admin account created and verified.",
    "promoted": "Existing account granted the admin role.",
    "already_admin": "Account already holds the admin role; nothing to do.",
    "dry_run": "Dry run finished; no changes written.",
}


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Create or promote a storefront administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Administrator email (defaults to ADMIN_EMAIL)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Administrator password (defaults to ADMIN_PASSWORD)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report the planned change without writing it",
    )
    args = parser.parse_args(argv)

    missing = [flag for flag, value in (("--email", args.email), ("--password", args.password)) if not value]
    if missing:
        parser.error(f"{' and '.join(missing)} required (or ADMIN_EMAIL / ADMIN_PASSWORD)")

    from authkernel.service.passwords import validate_password_strength

    issues = validate_password_strength(args.password)
    if issues:
        parser.error("password does not meet policy: " + "; ".join(issues))

    os.environ.setdefault("JWT_SECRET", secrets.token_urlsafe(48))
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("DATABASE_URL not set; changes go to a throwaway in-memory store")

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except Exception as exc:
        print(f"bootstrap failed: {type(exc).__name__}: {exc}", file=sys.stderr)
        return 1

    print(_STATUS_MESSAGES[result["status"]])
    if result["user_id"]:
        print(f"  account: {result['email']} ({result['user_id']})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
