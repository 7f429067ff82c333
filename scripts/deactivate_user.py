#!/usr/bin/env python3
"""Deactivate an account and revoke its refresh tokens.

Deactivation is an operator action and is not exposed over HTTP.

Usage:
    python scripts/deactivate_user.py --email user@example.com
    python scripts/deactivate_user.py --email user@example.com --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    REDIS_URL: Redis URL; the cached profile is dropped when reachable
    ACCESS_TOKEN_SECRET / REFRESH_TOKEN_SECRET: same values as the server
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def deactivate_account(runtime, email: str, dry_run: bool = False) -> dict:
    """Deactivate the account registered under ``email``.

    Returns:
        dict with user_id, email, status and the number of revoked tokens
    """
    from tokenward.result import Failure
    from tokenward.service.sessions import normalize_email

    email = normalize_email(email)
    user = runtime.store.get_user_by_email(email)
    if user is None:
        return {"user_id": None, "email": email, "status": "not_found", "revoked": 0}
    if not user.is_active:
        return {"user_id": user.id, "email": email, "status": "already_inactive", "revoked": 0}
    if dry_run:
        return {"user_id": user.id, "email": email, "status": "dry_run", "revoked": 0}

    outcome = await runtime.sessions.deactivate_user(user.id)
    if isinstance(outcome, Failure):
        return {"user_id": user.id, "email": email, "status": outcome.error.kind.value, "revoked": 0}
    return {"user_id": user.id, "email": email, "status": "deactivated", "revoked": outcome.value}


async def _run(email: str, dry_run: bool) -> dict:
    # Import here so env vars set by the caller are read first
    from tokenward.service.runtime import Runtime

    runtime = await Runtime.create()
    try:
        return await deactivate_account(runtime, email, dry_run)
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Deactivate a tokenward account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", required=True, help="Email of the account to deactivate")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    try:
        result = asyncio.run(_run(args.email, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    status = result["status"]
    if status == "deactivated":
        print(f"Deactivated {result['email']} (id: {result['user_id']}); revoked {result['revoked']} refresh tokens")
    elif status == "dry_run":
        print(f"[DRY RUN] Would deactivate {result['email']} (id: {result['user_id']})")
    elif status == "already_inactive":
        print(f"No changes needed - {result['email']} is already inactive.")
    else:
        print(f"Error: no active account for {result['email']} ({status})")
        sys.exit(1)


if __name__ == "__main__":
    main()
