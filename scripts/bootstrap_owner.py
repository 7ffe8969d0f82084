#!/usr/bin/env python3
"""Seed the initial company and its OWNER account.

Usage:
    OWNER_EMAIL=owner@acme.test OWNER_PASSWORD='CorrectPass1!' \
        python scripts/bootstrap_owner.py --company "Acme Logistics" --name "Acme Owner"

Environment Variables:
    OWNER_EMAIL: Email for the owner account
    OWNER_PASSWORD: Password for the owner account (must satisfy the password policy)
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_owner(
    email: str, password: str, company: str, full_name: str, dry_run: bool = False
) -> dict:
    # Import here to avoid loading config before env vars are set
    from fleetauth.service.rbac import Role
    from fleetauth.service.runtime import get_runtime

    runtime = get_runtime()
    existing_owners = runtime.store.count_identities_by_role(Role.OWNER)

    if dry_run:
        violations = runtime.policy.validate(password)
        return {
            "status": "dry_run",
            "email": email,
            "existing_owners": existing_owners,
            "password_violations": violations,
        }

    result = runtime.accounts.bootstrap_owner(
        company_name=company, email=email, password=password, full_name=full_name
    )
    return {
        "status": "created" if result.created else "already_owner",
        "email": result.owner.email,
        "user_id": result.owner.id,
        "company_id": result.company.id,
        "existing_owners": existing_owners,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the owner account for the fleet auth service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("OWNER_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("OWNER_PASSWORD"))
    parser.add_argument("--company", default=os.environ.get("OWNER_COMPANY", "Default Company"))
    parser.add_argument("--name", default=os.environ.get("OWNER_NAME", "Company Owner"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or OWNER_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or OWNER_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        # bootstrap signs nothing, any strong value will do
        import secrets

        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from fleetauth.service.errors import ServiceError

    try:
        result = bootstrap_owner(args.email, args.password, args.company, args.name, args.dry_run)
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        for violation in exc.detail.get("violations", []):
            print(f"  - {violation}")
        sys.exit(1)

    if result["status"] == "created":
        print(f"Created owner {result['email']} (id: {result['user_id']}) in company {result['company_id']}")
    elif result["status"] == "already_owner":
        print(f"No changes needed - {result['email']} is already an owner.")
    else:
        print(f"[DRY RUN] Would create owner {result['email']}; existing owners: {result['existing_owners']}")
        for violation in result["password_violations"]:
            print(f"  password: {violation}")


if __name__ == "__main__":
    main()
