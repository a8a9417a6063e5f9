#!/usr/bin/env python3
"""Seed the default permission/role catalogue and optionally grant admin.

Usage:
    # Create default permissions and roles only:
    python scripts/seed_roles.py

    # Also grant the admin role to an existing account:
    python scripts/seed_roles.py --admin-email admin@example.com

    # Or via environment:
    ADMIN_EMAIL=admin@example.com python scripts/seed_roles.py

Seeding is idempotent; existing permissions and roles are left untouched.
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


async def seed(admin_email: str | None, dry_run: bool = False) -> dict:
    # Import here to avoid loading config before env vars are set
    from iamcore.service.runtime import get_runtime

    runtime = get_runtime()
    if dry_run:
        existing = {role.name for role in runtime.rbac.list_roles()}
        print(f"[DRY RUN] Existing roles: {', '.join(sorted(existing)) or 'none'}")
        return {"status": "dry_run"}

    created = runtime.rbac.seed_defaults()
    result = {"status": "seeded", **created}
    if not admin_email:
        return result

    user = runtime.store.find_user_by_email(admin_email)
    if not user:
        raise SystemExit(f"Error: no account registered for {admin_email}")
    await runtime.rbac.grant_role_by_name(user.id, "admin")
    result["admin_user_id"] = user.id
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Seed default roles and permissions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--admin-email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Grant the admin role to this account (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what exists without making changes",
    )
    args = parser.parse_args()

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
    # The explicit run below reports what it created
    os.environ.setdefault("SEED_DEFAULT_ROLES", "false")

    try:
        result = asyncio.run(seed(args.admin_email, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "seeded":
        print(f"Permissions created: {', '.join(result['permissions']) or 'none'}")
        print(f"Roles created: {', '.join(result['roles']) or 'none'}")
        if result.get("admin_user_id"):
            print(f"Granted admin to {args.admin_email} (id: {result['admin_user_id']})")


if __name__ == "__main__":
    main()
