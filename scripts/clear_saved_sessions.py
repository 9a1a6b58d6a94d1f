#!/usr/bin/env python3
"""Delete saved sessions from the configured backing store.

Usage:
    # Using environment variables:
    SESSION_STORE=redis REDIS_URL=redis://localhost:6379/0 python scripts/clear_saved_sessions.py

    # Or with command line args:
    python scripts/clear_saved_sessions.py --redis-url redis://localhost:6379/0 --prefix sessionflow

Environment Variables:
    SESSION_STORE: memory or redis
    REDIS_URL: Redis connection string
    SESSION_KEY_PREFIX: Key namespace the sessions were saved under
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


async def clear_saved_sessions(dry_run: bool = False) -> dict:
    """Clear every saved session.

    Returns:
        dict with store type and number of sessions removed
    """
    # Import here to avoid loading config before env vars are set
    from sessionflow.service.runtime import get_runtime

    runtime = get_runtime()
    store_type = type(runtime.store).__name__

    if dry_run:
        print(f"[DRY RUN] Would clear saved sessions in {store_type}")
        return {"store": store_type, "cleared": 0, "status": "dry_run"}

    try:
        cleared = await runtime.sessions.clear_all_saved_sessions()
    finally:
        await runtime.close()
    print(f"Cleared {cleared} saved session(s) from {store_type}")
    return {"store": store_type, "cleared": cleared, "status": "cleared"}


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Delete saved sessions from the session backing store"
    )
    parser.add_argument(
        "--redis-url",
        default=None,
        help="Redis URL (or set REDIS_URL env var); implies SESSION_STORE=redis",
    )
    parser.add_argument(
        "--prefix",
        default=None,
        help="Key prefix sessions were saved under (or set SESSION_KEY_PREFIX env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if args.redis_url:
        os.environ["SESSION_STORE"] = "redis"
        os.environ["REDIS_URL"] = args.redis_url
    if args.prefix:
        os.environ["SESSION_KEY_PREFIX"] = args.prefix

    try:
        asyncio.run(clear_saved_sessions(dry_run=args.dry_run))
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
