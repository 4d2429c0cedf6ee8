#!/usr/bin/env python3
"""Bootstrap the first admin account across both user stores.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args, enrolling an authenticator app as well:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123! --enable-2fa

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must meet complexity requirements)
    PRIMARY_DATABASE_URL / SECONDARY_DATABASE_URL: Postgres DSNs (memory stores are
        used when neither is set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

TOTP_ISSUER = "chatbridge"


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(
    email: str, password: str, *, enable_2fa: bool = False, dry_run: bool = False
) -> dict:
    """Register ``email`` as the first admin, optionally enrolling TOTP.

    Returns:
        dict with user_id, email and status ('created', 'exists' or 'dry_run'),
        plus totp_secret/provisioning_uri when 2FA was enrolled.
    """
    # Imported late so the env defaults set in main() are seen by Settings
    from chatbridge.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.secondary_store.find_user_by_email(email)
    if existing:
        print(f"User {email} already exists with role {existing.role} (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "exists"}

    if runtime.secondary_store.count_users() > 0:
        print("Warning: users already exist; the new account will not be admin")

    if dry_run:
        print(f"[DRY RUN] Would register {email}" + (" with 2FA" if enable_2fa else ""))
        return {"user_id": None, "email": email, "status": "dry_run"}

    if not runtime.primary_store.is_multi_user_mode():
        runtime.primary_store.set_multi_user_mode(True)
        print("Enabled multi-user mode on the primary store")

    user = await runtime.auth.register(email, password)
    result = {"user_id": user.id, "email": email, "role": user.role, "status": "created"}

    if enable_2fa:
        secret = runtime.totp.generate_secret()
        runtime.secondary_store.enable_two_factor(user.id, secret)
        result["totp_secret"] = secret
        result["provisioning_uri"] = runtime.totp.provisioning_uri(secret, email, TOTP_ISSUER)
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the first chatbridge admin",
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
        "--enable-2fa",
        action="store_true",
        help="Enroll a TOTP secret and print it for an authenticator app",
    )
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

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        print("Error: JWT_SECRET must be set so the stored TOTP secret can be decrypted later")
        sys.exit(1)

    if not os.environ.get("PRIMARY_DATABASE_URL") and not os.environ.get("SECONDARY_DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory stores (set *_DATABASE_URL for persistence)")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email, args.password, enable_2fa=args.enable_2fa, dry_run=args.dry_run
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAccount registered successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Role: {result['role']}")
        if result.get("totp_secret"):
            print(f"  TOTP secret: {result['totp_secret']}")
            print(f"  Provisioning URI: {result['provisioning_uri']}")


if __name__ == "__main__":
    main()
