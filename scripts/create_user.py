#!/usr/bin/env python3
"""Create an active, email-verified user.

Usage:
    python scripts/create_user.py --email ops@example.com --password 'Str0ng!Passphrase' \
        --first-name Ops --last-name Team

    # Or with environment variables:
    USER_EMAIL=ops@example.com USER_PASSWORD='Str0ng!Passphrase' python scripts/create_user.py

Environment Variables:
    USER_EMAIL: Email for the new user
    USER_PASSWORD: Password for the new user (must satisfy the password policy)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
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


async def create_user(
    email: str, password: str, first_name: str, last_name: str, dry_run: bool = False
) -> dict:
    """Create the user, or report what would happen under ``dry_run``.

    Returns:
        dict with user_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from vaultauth.service.passwords import validate_password_strength
    from vaultauth.service.runtime import get_runtime
    from vaultauth.storage.common import normalize_email
    from vaultauth.storage.models import UserStatus

    email = normalize_email(email)
    validate_password_strength(password, email)

    runtime = get_runtime()
    existing = runtime.store.get_user_by_email(email)
    if existing:
        print(f"User {email} already exists (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    password_hash, algo = await runtime.passwords.hash(password)
    user = runtime.store.create_user(
        email, first_name=first_name, last_name=last_name, status=UserStatus.ACTIVE
    )
    runtime.store.save_password(user.id, password_hash, algo)
    runtime.store.update_user(user.id, email_verified=True)
    print(f"Created user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Create a VaultAuth user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("USER_EMAIL"), help="User email")
    parser.add_argument("--password", default=os.environ.get("USER_PASSWORD"), help="User password")
    parser.add_argument("--first-name", default="", help="Given name")
    parser.add_argument("--last-name", default="", help="Family name")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate input and show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or USER_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or USER_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        import secrets

        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from vaultauth.service.errors import ServiceError

    try:
        result = asyncio.run(
            create_user(args.email, args.password, args.first_name, args.last_name, args.dry_run)
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        for requirement in exc.detail.get("requirements", []):
            print(f"  - {requirement}")
        sys.exit(1)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "exists":
        sys.exit(2)


if __name__ == "__main__":
    main()
