#!/usr/bin/env python3
"""Delete expired sessions and password reset tokens once.

The server already sweeps periodically; this is for cron jobs and for
reclaiming space after a long outage.

Usage:
    STORE_BACKEND=postgres DATABASE_URL=postgresql://... python scripts/cleanup_expired.py

    # Only show which backend would be swept:
    python scripts/cleanup_expired.py --dry-run

Environment Variables:
    STORE_BACKEND: memory, postgres or redis
    DATABASE_URL / REDIS_URL: connection string for the chosen backend
    SHARED_FS_ROOT: snapshot directory when STORE_BACKEND=memory
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from sumpauth.storage.errors import StorageError  # noqa: E402


async def run_cleanup(dry_run: bool = False) -> dict:
    """Run both sweeps and return their counts."""
    # Import here so settings are read after argument parsing
    from sumpauth.config import get_settings
    from sumpauth.service.runtime import _mask_url_password

    settings = get_settings()
    backend = settings.store_backend.value
    if dry_run:
        target = {
            "postgres": _mask_url_password(settings.database_url),
            "redis": _mask_url_password(settings.redis_url),
        }.get(backend, settings.shared_fs_root or "(in-process)")
        print(f"[DRY RUN] Would sweep {backend} store at {target}")
        return {"backend": backend, "status": "dry_run"}

    from sumpauth.service.runtime import Runtime

    runtime = Runtime(settings)
    try:
        counts = await runtime.cleanup_expired()
    finally:
        runtime.close()
    return {"backend": backend, "status": "done", **counts}


def main():
    parser = argparse.ArgumentParser(
        description="Sweep expired sessions and reset tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report the configured store without deleting anything",
    )
    args = parser.parse_args()

    try:
        result = asyncio.run(run_cleanup(args.dry_run))
    except StorageError as e:
        print(f"Error: {e.message}")
        sys.exit(1)

    if result["status"] == "done":
        print(f"Swept {result['backend']} store:")
        print(f"  Sessions deleted: {result['sessions']}")
        print(f"  Reset tokens deleted: {result['reset_tokens']}")


if __name__ == "__main__":
    main()
