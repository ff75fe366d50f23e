#!/usr/bin/env python3
"""Bootstrap a company, a factory and an ADMIN employee for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123! \
        --company "Acme Steel" --factory "Plant 1"

Environment Variables:
    ADMIN_EMAIL: Email for the admin employee
    ADMIN_PASSWORD: Password for the admin employee (must meet complexity requirements)
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


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12 or len(password) > 128:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(
    email: str,
    password: str,
    *,
    name: str = "Administrator",
    company_name: str = "eGuard",
    factory_name: str = "Main Factory",
    dry_run: bool = False,
) -> dict:
    """Create the tenant skeleton and an ADMIN employee, or promote an existing one.

    Returns:
        dict with employee_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from eguard.service.runtime import get_runtime
    from eguard.storage.models import Role

    runtime = get_runtime()

    existing = runtime.store.get_principal_by_email(email)
    if existing:
        if existing.role is Role.ADMIN:
            print(f"Employee {email} already exists as admin (id: {existing.id})")
            return {"employee_id": existing.id, "email": email, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing employee {email} to admin")
            return {"employee_id": existing.id, "email": email, "status": "dry_run"}

        runtime.store.update_principal_role(existing.id, Role.ADMIN)
        print(f"Promoted existing employee {email} to admin (id: {existing.id})")
        return {"employee_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create company {company_name!r}, factory {factory_name!r} and admin {email}")
        return {"employee_id": None, "email": email, "status": "dry_run"}

    company = runtime.store.create_company(company_name)
    factory = runtime.store.create_factory(company.id, factory_name)
    runtime.store.upsert_tenant_setting(company.id, two_factor_enabled=False)
    principal = runtime.store.create_principal(
        email,
        name,
        factory.id,
        role=Role.ADMIN,
        password_hash=runtime.auth.hash_password(password),
    )
    pair = runtime.tokens.issue_session(principal)

    print(f"Created admin employee: {email} (id: {principal.id})")
    return {
        "employee_id": principal.id,
        "company_id": company.id,
        "factory_id": factory.id,
        "email": email,
        "status": "created",
        "access_token": pair.access_token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin employee for eGuard",
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
    parser.add_argument("--name", default="Administrator", help="Admin display name")
    parser.add_argument("--company", default="eGuard", help="Company to create")
    parser.add_argument("--factory", default="Main Factory", help="Factory to create")
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
        print("Error: Password must be 12-128 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/eguard-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email.strip().lower(),
                args.password,
                name=args.name,
                company_name=args.company,
                factory_name=args.factory,
                dry_run=args.dry_run,
            )
        )

        if result["status"] == "created":
            print("\nAdmin employee created successfully!")
            print(f"  Email: {result['email']}")
            print(f"  Employee ID: {result['employee_id']}")
            print(f"  Company ID: {result['company_id']}  Factory ID: {result['factory_id']}")
            if result.get("access_token"):
                print(f"  Access Token: {result['access_token'][:50]}...")
        elif result["status"] == "promoted":
            print("\nExisting employee promoted to admin!")
        elif result["status"] == "already_admin":
            print("\nNo changes needed - employee is already an admin.")

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
