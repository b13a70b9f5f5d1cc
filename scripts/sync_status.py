#!/usr/bin/env python3
"""
License Sync Status

Prints mirror sync statistics, external API health and the last sync time.

Usage:
    python scripts/sync_status.py [--pending]
"""
import asyncio
import sys
import argparse
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from license_sync.models.base import init_db
from license_sync.services.license_sync_service import create_license_sync_service


async def show_status(resync_pending: bool = False, limit: int = 100):
    init_db()
    service = create_license_sync_service()

    status = await service.get_sync_status()
    if not status.get("success"):
        print(f"Failed to get sync status: {status.get('error')}")
        return 1

    mirror = status["internal"]
    external = status["external"]
    print("\n" + "=" * 60)
    print("  LICENSE SYNC STATUS")
    print("=" * 60)
    print(f"  Mirror rows: {mirror['total']:,}")
    print(f"    synced:  {mirror['synced']:,}")
    print(f"    pending: {mirror['pending']:,}")
    print(f"    failed:  {mirror['failed']:,}")
    print(f"    success rate: {mirror['success_rate']}%")
    print(f"  External API: {'healthy' if external['healthy'] else 'UNHEALTHY'}")
    if external.get("error"):
        print(f"    error: {external['error']}")
    print(f"  Last sync: {status['last_sync'] or 'never'}")

    if resync_pending:
        print(f"\nRe-syncing up to {limit} pending/failed licenses...")
        results = await service.sync_pending_licenses(limit=limit)
        print(
            f"  processed={results.get('processed', 0)} synced={results.get('synced', 0)} "
            f"failed={results.get('failed', 0)}"
        )
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Show license sync status")
    parser.add_argument(
        "--pending", action="store_true",
        help="Also re-sync mirror rows left pending or failed"
    )
    parser.add_argument(
        "--limit", type=int, default=100,
        help="Max pending licenses to re-sync (default: 100)"
    )

    args = parser.parse_args()
    sys.exit(asyncio.run(show_status(args.pending, args.limit)))
