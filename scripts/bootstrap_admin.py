#!/usr/bin/env python3
"""Seed the master realm with a client and an administrator.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123! \
        --realm-name master --client-name console

The administrator's default resource group carries ``role=admin``, which the
HTTP layer accepts as realm administrator access. Set ``MASTER_REALM_ID`` to
the printed realm id so that admin may administer every realm.

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import re
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    if len(password) < 12:
        return False
    classes = [
        any(c.isupper() for c in password),
        any(c.islower() for c in password),
        any(c.isdigit() for c in password),
        any(not c.isalnum() for c in password),
    ]
    return sum(classes) >= 3


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-") or "realm"


async def bootstrap(
    email: str,
    password: str,
    realm_name: str,
    client_name: str,
    dry_run: bool = False,
) -> dict:
    # Imported late so the environment is settled before settings load
    from realmgate.service.runtime import get_runtime
    from realmgate.storage.models import Client, Realm, new_id

    runtime = get_runtime()
    settings = runtime.settings

    realm = Realm(
        id=new_id(),
        name=realm_name,
        slug=slugify(realm_name),
        session_lifetime=settings.default_session_lifetime,
        refresh_token_lifetime=settings.default_refresh_token_lifetime,
        refresh_token_reuse_limit=settings.default_refresh_token_reuse_limit,
        max_concurrent_sessions=settings.default_max_concurrent_sessions,
    )
    client = Client(
        id=new_id(),
        realm_id=realm.id,
        name=client_name,
        max_concurrent_sessions=settings.default_max_concurrent_sessions,
        session_lifetime=settings.default_session_lifetime,
    )
    if dry_run:
        print(f"[DRY RUN] Would create realm '{realm_name}', client '{client_name}' and admin {email}")
        return {"status": "dry_run", "email": email}

    # realm, client and admin commit together
    with runtime.store.transaction() as tx:
        tx.create_realm(realm)
        tx.create_client(client)
        user, group = await runtime.auth.register_user(
            realm.id,
            client.id,
            email=email,
            password=password,
            first_name="Admin",
            group_name="admin",
            identifiers={"role": "admin"},
        )
    return {
        "status": "created",
        "email": email,
        "realm_id": realm.id,
        "client_id": client.id,
        "user_id": user.id,
        "group_key": group.group_key,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the realmgate master realm and administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--realm-name", default="master")
    parser.add_argument("--client-name", default="console")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)
    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/realmgate-bootstrap")

    try:
        result = asyncio.run(
            bootstrap(
                args.email.strip().lower(),
                args.password,
                args.realm_name,
                args.client_name,
                args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nMaster realm bootstrapped:")
        print(f"  Realm ID:   {result['realm_id']}")
        print(f"  Client ID:  {result['client_id']}")
        print(f"  User ID:    {result['user_id']}")
        print(f"  Group key:  {result['group_key']}")
        print(f"  Email:      {result['email']}")
        print(f"\nSet MASTER_REALM_ID={result['realm_id']} to grant cross-realm administration.")


if __name__ == "__main__":
    main()
