#!/usr/bin/env python3
"""Create a pre-verified account for local testing and initial setup.

Usage:
    # Using environment variables:
    BOOTSTRAP_EMAIL=seller@example.com BOOTSTRAP_PASSWORD=SecurePassword123! python scripts/bootstrap_user.py --seller

    # Or with command line args:
    python scripts/bootstrap_user.py --email user@example.com --password SecurePassword123!

Environment Variables:
    BOOTSTRAP_EMAIL: Email for the account
    BOOTSTRAP_PASSWORD: Password for the account (8 to 128 characters)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_user(
    email: str, password: str, *, seller: bool = False, dry_run: bool = False
) -> dict:
    """Create the account, or mark an existing one as verified.

    Returns:
        dict with user_id, email, and status ('created', 'verified' or 'unchanged')
    """
    # Import here so the env defaults below are in place before config loads
    from authcore.service.credentials import normalize_email
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    email = normalize_email(email)
    existing = runtime.store.get_user_by_email(email)

    if existing:
        if existing.email_verified:
            print(f"User {email} already exists and is verified (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "unchanged"}
        if dry_run:
            print(f"[DRY RUN] Would mark existing user {email} as verified")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.mark_email_verified(existing.id)
        print(f"Marked existing user {email} as verified (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "verified"}

    if dry_run:
        print(f"[DRY RUN] Would create verified user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.store.create_user(
        email,
        runtime.auth.credentials.hash_password(password),
        is_seller=seller,
        verified=True,
    )
    print(f"Created verified user: {email} (id: {user.id}, role: {user.role})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Create a verified authcore account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("BOOTSTRAP_EMAIL"),
        help="Account email (or set BOOTSTRAP_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("BOOTSTRAP_PASSWORD"),
        help="Account password (or set BOOTSTRAP_PASSWORD env var)",
    )
    parser.add_argument(
        "--seller",
        action="store_true",
        help="Create the account with the seller role",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or BOOTSTRAP_EMAIL environment variable required")
        sys.exit(1)

    if not args.password or not 8 <= len(args.password) <= 128:
        print("Error: password must be 8 to 128 characters")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        import secrets
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_user(
            args.email, args.password, seller=args.seller, dry_run=args.dry_run
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAccount created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")


if __name__ == "__main__":
    main()
