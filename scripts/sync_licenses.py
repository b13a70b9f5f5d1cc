#!/usr/bin/env python3
"""
External License Sync Script

Runs one sync of the external license API into the external mirror and the
internal license table, then prints a summary.

Usage:
    python scripts/sync_licenses.py [--batch-size 50] [--dry-run] [--internal-only]

Examples:
    # Normal sync (fetch, mirror, reconcile)
    python scripts/sync_licenses.py

    # Check API access and data without writing anything
    python scripts/sync_licenses.py --dry-run

    # Re-run reconciliation against the existing mirror, first 200 records only
    python scripts/sync_licenses.py --internal-only --limit 200
"""
import asyncio
import sys
import argparse
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from license_sync.models.base import init_db
from license_sync.services.license_sync_service import create_license_sync_service
from license_sync.services.monitoring_service import LicenseSyncMonitor
from license_sync.utils.logger import log


def print_summary(result) -> None:
    print("\n" + "=" * 60)
    print("  LICENSE SYNC " + ("COMPLETE" if result.success else "FAILED"))
    print("=" * 60)
    print(f"  Fetched:   {result.total_fetched:,}")
    print(f"  Created:   {result.created:,}")
    print(f"  Updated:   {result.updated:,}")
    print(f"  Failed:    {result.failed:,}")
    if result.internal_synced is not None:
        print(
            f"  Internal:  {result.internal_synced:,} synced "
            f"({result.internal_created:,} created, {result.internal_updated:,} updated, "
            f"{result.internal_skipped:,} skipped)"
        )
    if result.internal_sync_error:
        print(f"  Internal sync error: {result.internal_sync_error}")
    if result.bidirectional_synced is not None:
        print(f"  Pushed back: {result.bidirectional_updated:,} updated, {result.bidirectional_failed:,} failed")
    if result.bidirectional_sync_error:
        print(f"  Bidirectional sync error: {result.bidirectional_sync_error}")
    if result.dry_run:
        print(f"  Dry run API status: {result.api_status}")
    if result.error:
        print(f"  Error: {result.error}")
        if result.recovery_attempted:
            print(f"  Recovery: {result.recovery_type} (successful={result.recovery_successful})")
    for error in result.errors[:10]:
        print(f"   - {error.get('appid')}: {error.get('error')}")
    if len(result.errors) > 10:
        print(f"   ... and {len(result.errors) - 10} more errors")
    print(f"\n  Duration: {result.duration / 1000:.1f}s")


async def run_sync(args) -> int:
    init_db()
    service = create_license_sync_service(monitor=LicenseSyncMonitor())

    result = await service.execute(
        batch_size=args.batch_size,
        dry_run=args.dry_run,
        sync_to_internal_only=args.internal_only,
        comprehensive=False if args.legacy else None,
        bidirectional=True if args.bidirectional else None,
        limit=args.limit,
        max_records=args.max_records,
    )

    print_summary(result)
    if not result.success:
        log.error(f"License sync failed: {result.error}")
        return 1
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Sync external licenses")
    parser.add_argument(
        "--batch-size", type=int, default=None,
        help="Records per upsert batch and reconciliation page (default: LICENSE_SYNC_BATCH_SIZE)"
    )
    parser.add_argument(
        "--dry-run", action="store_true",
        help="Fetch and validate without writing"
    )
    parser.add_argument(
        "--internal-only", action="store_true",
        help="Skip the API fetch and reconcile the existing mirror"
    )
    parser.add_argument(
        "--legacy", action="store_true",
        help="Use the whole-mirror reconciliation instead of the paginated one"
    )
    parser.add_argument(
        "--bidirectional", action="store_true",
        help="Push internal changes back to the external API afterwards"
    )
    parser.add_argument(
        "--limit", type=int, default=None,
        help="Reconcile at most this many mirror records"
    )
    parser.add_argument(
        "--max-records", type=int, default=None,
        help="Fetch at most this many records from the API"
    )

    args = parser.parse_args()
    sys.exit(asyncio.run(run_sync(args)))
