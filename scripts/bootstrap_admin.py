#!/usr/bin/env python3
"""Create an admin account, or promote an existing user to admin.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure-Passw0rd!' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure-Passw0rd!'

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (same strength rules as registration)
    DATABASE_URL: PostgreSQL connection string (uses the in-memory store if not set)
    JWT_SECRET: Required by the service settings; generated for this run if unset
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import sys
from typing import Optional


def password_problems(password: str) -> Optional[str]:
    """Return the strength violation, or None when the password is acceptable."""
    from usersvc.api.schemas import _validate_password_strength

    try:
        _validate_password_strength(password)
    except ValueError as exc:
        return str(exc)
    return None


async def bootstrap_admin(
    email: str,
    password: str,
    *,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    """Create or promote an admin user.

    Returns:
        dict with user_id, email and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Import here so settings read the environment prepared by main()
    from usersvc.config import Settings
    from usersvc.service.runtime import Runtime

    runtime = Runtime(Settings.from_env())
    try:
        existing = await runtime.auth._store_call(
            "find_by_email", runtime.store.find_by_email, email
        )
        if existing and existing.role == "admin" and existing.is_active:
            print(f"User {email} already exists as admin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            action = "promote existing user" if existing else "create admin user"
            print(f"[DRY RUN] Would {action}: {email}")
            return {"user_id": existing.id if existing else None, "email": email, "status": "dry_run"}

        user, created = await runtime.auth.ensure_admin(
            email, password, first_name=first_name, last_name=last_name
        )
        status = "created" if created else "promoted"
        print(f"{'Created' if created else 'Promoted'} admin user: {email} (id: {user.id})")
        return {"user_id": user.id, "email": email, "status": status}
    finally:
        await runtime.close()


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for the user service",
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
    parser.add_argument("--first-name", default=None)
    parser.add_argument("--last-name", default=None)
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args(argv)

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        return 1
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        return 1
    problem = password_problems(args.password)
    if problem:
        print(f"Error: {problem}")
        return 1

    if not os.environ.get("JWT_SECRET"):
        # No tokens are issued here; the secret only satisfies settings validation
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
                first_name=args.first_name,
                last_name=args.last_name,
                dry_run=args.dry_run,
            )
        )
    except Exception as exc:
        print(f"Error: {exc}")
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
