#!/usr/bin/env python3
"""Activate a pending account out-of-band.

Useful when the activation email never arrived and the user cannot request a
new one.

Usage:
    python scripts/activate_account.py --email user@example.com
    python scripts/activate_account.py --email user@example.com --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: set to true to operate on the JSON-backed dev store
    SHARED_FS_ROOT: root of the dev store
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _open_directory():
    # Import here so env vars set by the caller are read first
    from authcore.config import get_settings
    from authcore.storage.memory import MemoryStore
    from authcore.storage.postgres import PostgresStore

    settings = get_settings()
    if settings.use_memory_store:
        return MemoryStore(fs_root=settings.shared_fs_root)
    return PostgresStore(settings.database_url, min_size=1, max_size=1)


def activate(email: str, *, dry_run: bool = False) -> dict:
    """Activate the account for ``email``.

    Returns:
        dict with account_id, email and status ('activated', 'already_active',
        'federated', 'not_found' or 'dry_run')
    """
    directory = _open_directory()
    account = directory.get_account_by_email(email)
    if account is None:
        return {"account_id": None, "email": email, "status": "not_found"}
    if account.is_federated:
        return {"account_id": account.id, "email": account.email, "status": "federated"}
    if account.is_active:
        return {"account_id": account.id, "email": account.email, "status": "already_active"}
    if dry_run:
        return {"account_id": account.id, "email": account.email, "status": "dry_run"}
    directory.activate_account(account.id)
    return {"account_id": account.id, "email": account.email, "status": "activated"}


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Activate a pending authcore account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", required=True, help="Email of the account to activate")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    try:
        result = activate(args.email.strip().lower(), dry_run=args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    messages = {
        "activated": f"Activated {result['email']} (id: {result['account_id']})",
        "already_active": f"No changes needed - {result['email']} is already active.",
        "federated": f"{result['email']} signs in through an identity provider; nothing to activate.",
        "not_found": f"No account found for {result['email']}",
        "dry_run": f"[DRY RUN] Would activate {result['email']} (id: {result['account_id']})",
    }
    print(messages[result["status"]])
    if result["status"] == "not_found":
        sys.exit(1)


if __name__ == "__main__":
    main()
