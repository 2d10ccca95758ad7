#!/usr/bin/env python3
"""Housekeeping for the credential store.

Usage:
    # Delete expired sessions, one-time codes and OAuth states:
    python scripts/prune_sessions.py prune

    # Sign a user out everywhere (e.g. after a reported compromise):
    python scripts/prune_sessions.py revoke --email user@example.com

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: use the in-memory store (only useful with SHARED_FS_ROOT persistence)
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def prune() -> dict:
    from authkernel.service.runtime import get_runtime

    runtime = get_runtime()
    return await runtime.auth.cleanup_expired()


async def revoke(email: str, dry_run: bool = False) -> dict:
    from authkernel.service.runtime import get_runtime

    runtime = get_runtime()
    user = runtime.store.get_user_by_email(email)
    if user is None:
        return {"email": email, "status": "not_found"}
    if dry_run:
        active = await runtime.auth.list_sessions(user.id)
        return {"user_id": user.id, "status": "dry_run", "active_sessions": len(active)}
    count = await runtime.auth.revoke_all_sessions(user.id)
    return {"user_id": user.id, "status": "revoked", "revoked_sessions": count}


def main():
    parser = argparse.ArgumentParser(
        description="Prune expired auth rows or revoke a user's sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("prune", help="Delete expired sessions, codes and OAuth states")
    revoke_parser = sub.add_parser("revoke", help="Revoke every active session of a user")
    revoke_parser.add_argument("--email", required=True, help="Account email")
    revoke_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    from authkernel.service.errors import ServiceError

    try:
        if args.command == "prune":
            counts = asyncio.run(prune())
            print(
                "Pruned {otps} codes, {sessions} sessions, {oauth_states} OAuth states".format(
                    **counts
                )
            )
        else:
            result = asyncio.run(revoke(args.email, args.dry_run))
            if result["status"] == "not_found":
                print(f"No account found for {args.email}")
                sys.exit(1)
            elif result["status"] == "dry_run":
                print(f"[DRY RUN] Would revoke {result['active_sessions']} session(s)")
            else:
                print(f"Revoked {result['revoked_sessions']} session(s) for user {result['user_id']}")
    except ServiceError as e:
        print(f"Error: {e.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
