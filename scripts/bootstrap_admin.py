#!/usr/bin/env python3
"""Bootstrap a superadmin, and optionally a first company, for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=root@example.com ADMIN_PASSWORD=SecurePassword123 python scripts/bootstrap_admin.py

    # Or with command line args, creating a company at the same time:
    python scripts/bootstrap_admin.py --email root@example.com --password SecurePassword123 \
        --company-name "Acme" --company-slug acme

Environment Variables:
    ADMIN_EMAIL: Email for the superadmin
    ADMIN_PASSWORD: Password for the superadmin (must meet the password policy)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(
    email: str,
    password: str,
    *,
    company_name: Optional[str] = None,
    company_slug: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    """Create the superadmin and optional company.

    Returns:
        dict with user_id, email, company_id and status
    """
    # Import here to avoid loading config before env vars are set
    from authplane.service.runtime import get_runtime

    runtime = get_runtime()
    runtime.auth.check_password_policy(password)

    company_id = None
    if company_slug:
        company = runtime.store.get_company_by_slug(company_slug)
        if company is None and not dry_run:
            company = runtime.store.create_company(company_name or company_slug, company_slug)
            print(f"Created company {company.slug} (id: {company.id})")
        company_id = company.id if company else None

    existing = runtime.store.get_user_by_email(email)
    if existing:
        if existing.system_role == "SUPERADMIN":
            print(f"User {email} already exists as superadmin (id: {existing.id})")
            return {
                "user_id": existing.id,
                "email": email,
                "company_id": company_id,
                "status": "already_superadmin",
            }
        raise RuntimeError(f"user {email} exists with role {existing.system_role}")

    if dry_run:
        print(f"[DRY RUN] Would create superadmin: {email}")
        return {"user_id": None, "email": email, "company_id": company_id, "status": "dry_run"}

    user = runtime.store.create_user(
        email,
        runtime.auth.hash_password(password),
        company_id=None,
        system_role="SUPERADMIN",
    )
    print(f"Created superadmin: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "company_id": company_id, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a superadmin for authplane",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Superadmin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Superadmin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument("--company-name", help="Display name of a company to create")
    parser.add_argument("--company-slug", help="Slug of a company to create if missing")
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

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/authplane-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(
            args.email,
            args.password,
            company_name=args.company_name,
            company_slug=args.company_slug,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nSuperadmin created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "already_superadmin":
        print("\nNo changes needed - user is already a superadmin.")


if __name__ == "__main__":
    main()
