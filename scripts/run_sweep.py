#!/usr/bin/env python3
"""Run one maintenance sweep against the configured credential store.

Usage:
    # Expire and purge sessions/tokens, clean stale rate-limit counters:
    python scripts/run_sweep.py

    # Only verify that the credential store is reachable:
    python scripts/run_sweep.py --check

    # Override the retention window for this run:
    python scripts/run_sweep.py --retention-days 7

Environment Variables:
    STORE_BACKEND: sqlite (default) or memory
    SQLITE_PATH: SQLite database file
    REDIS_URL: Redis URL for rate-limit counters (optional)
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def run_sweep(*, check_only: bool = False, retention_days: int | None = None) -> dict:
    """Build the runtime from the environment and run one sweep (or only the check)."""
    # Import here to avoid loading config before env vars are set
    from civicguard.config import get_settings
    from civicguard.service.runtime import build_runtime

    runtime = build_runtime(get_settings())
    try:
        runtime.startup_check()
        if check_only:
            return {"status": "ok", "health": runtime.health()}
        if retention_days is not None:
            runtime.sweeper.retention_days = retention_days
        report = await runtime.sweeper.run_once()
        return {"status": "ok" if report.ok else "partial", "report": report.as_dict()}
    finally:
        runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Run a civicguard maintenance sweep",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Only run the startup health check",
    )
    parser.add_argument(
        "--retention-days",
        type=int,
        default=None,
        help="Override RETENTION_DAYS for this run",
    )

    args = parser.parse_args()
    if args.retention_days is not None and args.retention_days < 0:
        print("Error: --retention-days must be non-negative")
        sys.exit(1)

    from civicguard.service.runtime import StartupError

    try:
        result = asyncio.run(run_sweep(check_only=args.check, retention_days=args.retention_days))
    except StartupError as e:
        print(json.dumps({"status": "error", "error": str(e)}))
        sys.exit(2)

    print(json.dumps(result, indent=2, default=str))
    if result["status"] != "ok":
        sys.exit(1)


if __name__ == "__main__":
    main()
