"""
External License Sync Service
Orchestrates one sync run: fetch from the external API, upsert into the
external mirror in batches, reconcile the mirror into the internal license
table and optionally push internal changes back.

execute() never raises. Failures come back as a SyncResult with
success=False, partial counts preserved, after a best-effort recovery.
"""
import asyncio
import time
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Dict, List, Optional

from license_sync.config import get_settings
from license_sync.connectors.license_api_connector import (
    AUTH_ERROR,
    RATE_LIMIT_ERROR,
    classify_fetch_error,
)
from license_sync.services.batch_processor import (
    BatchProcessor,
    calculate_adaptive_concurrency,
    create_batches,
)
from license_sync.services.monitoring_service import SyncMonitor
from license_sync.services.reconciliation import ReconciliationEngine
from license_sync.utils.helpers import safe_divide
from license_sync.utils.logger import log

OPERATION_TYPE = "external_licenses_sync"

# Recovery types
RECOVERY_SMALLER_BATCH = "retry_with_smaller_batch"
RECOVERY_CONNECTION = "database_connection_issue"
RECOVERY_EXTERNAL_API = "external_api_issue"

MIN_RECOVERY_BATCH_SIZE = 10


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


@dataclass
class SyncResult:
    """Outcome of one sync run"""
    success: bool = False
    total_fetched: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0
    errors: List[Dict] = field(default_factory=list)
    duration: int = 0  # milliseconds
    timestamp: datetime = field(default_factory=datetime.utcnow)
    operation_id: Optional[str] = None
    # Internal reconciliation
    internal_synced: Optional[int] = None
    internal_updated: Optional[int] = None
    internal_created: Optional[int] = None
    internal_skipped: Optional[int] = None
    internal_sync_error: Optional[str] = None
    # Dry run
    dry_run: Optional[bool] = None
    validated_licenses: Optional[int] = None
    api_status: Optional[Dict] = None
    # Internal -> external
    bidirectional_synced: Optional[int] = None
    bidirectional_updated: Optional[int] = None
    bidirectional_failed: Optional[int] = None
    bidirectional_sync_error: Optional[str] = None
    # Failure and recovery
    error: Optional[str] = None
    recovery_attempted: Optional[bool] = None
    recovery_successful: Optional[bool] = None
    recovery_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """camelCase rendering for callers; unset optional fields are omitted."""
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            if f.name == "api_status":
                value = {_camel(key): item for key, item in value.items()}
            data[_camel(f.name)] = value
        return data


class LicenseSyncService:
    """
    Sync external licenses into the mirror and internal license tables

    Collaborators:
        mirror_store: external mirror store (bulk_upsert, find_by_app_id, ...)
        data_source: external license API (get_all_licenses, get_license_by_app_id, ...)
        internal_store: internal license store, optional; without it no
            reconciliation or bidirectional sync happens
        monitor: SyncMonitor, optional
    """

    def __init__(self, mirror_store, data_source, internal_store=None, monitor: Optional[SyncMonitor] = None, settings=None):
        if mirror_store is None:
            raise ValueError("mirror_store is required")
        if data_source is None:
            raise ValueError("data_source is required")

        self.settings = settings or get_settings()
        self.mirror_store = mirror_store
        self.data_source = data_source
        self.internal_store = internal_store
        self.monitor = monitor or SyncMonitor()
        self.batch_processor = BatchProcessor(mirror_store)
        self.reconciler = (
            ReconciliationEngine(internal_store, mirror_store) if internal_store is not None else None
        )

    def _notify(self, method_name: str, *args) -> Any:
        """Call a monitor hook; a failing monitor never fails the sync."""
        try:
            return getattr(self.monitor, method_name)(*args)
        except Exception as e:
            log.warning(f"Monitor {method_name} failed: {e}")
            return None

    async def execute(
        self,
        batch_size: Optional[int] = None,
        dry_run: bool = False,
        sync_to_internal_only: bool = False,
        force_full_sync: bool = False,
        comprehensive: Optional[bool] = None,
        bidirectional: Optional[bool] = None,
        limit: Optional[int] = None,
        max_records: Optional[int] = None,
        max_pages: Optional[int] = None,
    ) -> SyncResult:
        """
        Run one sync.

        Args:
            batch_size: Records per mirror upsert batch (and reconciliation page)
            dry_run: Fetch and validate only; nothing is written
            sync_to_internal_only: Skip the API fetch and reconcile the existing mirror
            force_full_sync: Recorded with the run options
            comprehensive: Paginated reconciliation (True) or legacy whole-mirror pass
            bidirectional: Push internal changes back to the external API afterwards
            limit: Cap on mirror records reconciled
            max_records: Cap on records fetched from the API
            max_pages: Cap on API pages fetched

        Returns:
            SyncResult
        """
        options = {
            "batch_size": batch_size,
            "dry_run": dry_run,
            "sync_to_internal_only": sync_to_internal_only,
            "force_full_sync": force_full_sync,
            "comprehensive": comprehensive,
            "bidirectional": bidirectional,
            "limit": limit,
            "max_records": max_records,
            "max_pages": max_pages,
        }
        return await self._run(options, allow_recovery=True)

    async def _run(self, options: Dict, allow_recovery: bool) -> SyncResult:
        settings = self.settings
        batch_size = options["batch_size"] or settings.license_sync_batch_size
        dry_run = options["dry_run"]
        sync_to_internal_only = options["sync_to_internal_only"]
        comprehensive = options["comprehensive"]
        if comprehensive is None:
            comprehensive = settings.license_sync_comprehensive_enabled
        bidirectional = options["bidirectional"]
        if bidirectional is None:
            bidirectional = settings.license_sync_bidirectional_enabled

        context = self._notify("record_sync_start", OPERATION_TYPE, {
            "batch_size": batch_size,
            "dry_run": dry_run,
            "sync_to_internal_only": sync_to_internal_only,
            "force_full_sync": options["force_full_sync"],
            "comprehensive": comprehensive,
        })
        result = SyncResult(operation_id=getattr(context, "operation_id", None))
        started = time.time()

        try:
            log.info(
                f"Starting external licenses sync (batch_size={batch_size}, dry_run={dry_run}, "
                f"internal_only={sync_to_internal_only}, comprehensive={comprehensive})"
            )

            if sync_to_internal_only:
                log.info("Skipping external API fetch, reconciling existing mirror data")
                result.total_fetched = await self._mirror_count()
                if dry_run:
                    result.success = True
                    result.dry_run = True
                    return self._finish(result, started, context)
            else:
                fetched = await self.data_source.get_all_licenses(
                    batch_size=batch_size,
                    concurrency_limit=settings.license_sync_concurrency,
                    max_records=options["max_records"],
                    max_pages=options["max_pages"],
                )

                if not fetched.get("success"):
                    error = fetched.get("error") or "Unknown error"
                    error_type = fetched.get("error_type") or classify_fetch_error(error)
                    log.warning(f"External API call failed ({error_type}): {error}")

                    if dry_run:
                        result.success = True
                        result.dry_run = True
                        result.api_status = {
                            "authenticated": error_type != AUTH_ERROR,
                            "rate_limited": error_type == RATE_LIMIT_ERROR,
                            "reachable": True,
                            "error": error,
                        }
                        log.info(f"Dry run completed with API status check: {result.api_status}")
                        return self._finish(result, started, context)

                    raise RuntimeError(f"Failed to fetch licenses from external API: {error}")

                data = fetched.get("data")
                if data is None:
                    raise RuntimeError("External API returned success but no data")

                result.total_fetched = len(data)
                pages_fetched = (fetched.get("meta") or {}).get("pages_fetched", 0)
                log.info(f"Fetched {result.total_fetched} licenses from external API ({pages_fetched} pages)")

                if dry_run:
                    result.success = True
                    result.dry_run = True
                    result.validated_licenses = len(data)
                    result.api_status = {"authenticated": True, "rate_limited": False, "reachable": True}
                    return self._finish(result, started, context)

                await self._process_batches(data, batch_size, result)

            if self.reconciler is not None:
                await self._sync_internal(result, options, comprehensive, sync_to_internal_only)

                if bidirectional:
                    await self._sync_bidirectional(result)

            result.success = True
            self._notify("record_data_processed", result.total_fetched, OPERATION_TYPE)
            self._finish(result, started, context)

            success_rate = round(safe_divide(result.created + result.updated, result.total_fetched) * 100)
            log.info(
                f"External licenses sync completed: fetched={result.total_fetched}, created={result.created}, "
                f"updated={result.updated}, failed={result.failed}, internal_synced={result.internal_synced}, "
                f"success_rate={success_rate}%, duration={result.duration}ms"
            )

        except Exception as e:
            result.success = False
            result.error = str(e)
            self._finish(result, started, context)
            log.error(f"External licenses sync failed after {result.duration}ms: {e}")

            if allow_recovery:
                recovery = await self._attempt_recovery(e, options, batch_size)
                result.recovery_attempted = recovery["attempted"]
                result.recovery_successful = recovery["successful"]
                result.recovery_type = recovery["type"]
                if recovery["successful"]:
                    log.info(f"Sync recovery successful ({recovery['type']})")

        return result

    def _finish(self, result: SyncResult, started: float, context) -> SyncResult:
        result.duration = int((time.time() - started) * 1000)
        if context is not None:
            self._notify("record_sync_end", context, {
                "success": result.success,
                "error": result.error,
                "total_fetched": result.total_fetched,
                "created": result.created,
                "updated": result.updated,
                "failed": result.failed,
                "duration": result.duration,
            })
        return result

    async def _mirror_count(self) -> int:
        try:
            stats = await self.mirror_store.get_license_stats_with_filters({})
            return int(stats.get("total") or 0)
        except Exception as e:
            log.warning(f"Could not get external license count: {e}")
            return 0

    async def _process_batches(self, data: List[Dict], batch_size: int, result: SyncResult):
        batches = create_batches(data, batch_size)
        if not batches:
            return

        adaptive = calculate_adaptive_concurrency(len(batches), batch_size, self.settings.license_sync_concurrency)
        concurrency = min(len(batches), adaptive)
        log.info(f"Processing {len(data)} licenses in {len(batches)} batches (concurrency {concurrency})")

        outcomes = await self.batch_processor.run(batches, datetime.utcnow(), concurrency)

        for outcome in outcomes:
            if outcome.error is not None:
                message = f"Batch processing failed: {outcome.error}"
                for record in outcome.batch:
                    appid = record.get("appid") if isinstance(record, dict) else None
                    result.errors.append({"appid": appid, "error": message})
                    result.failed += 1
                continue

            batch_result = outcome.result
            result.created += batch_result.created
            result.updated += batch_result.updated
            result.failed += batch_result.failed
            result.errors.extend(batch_result.errors)
            log.debug(
                f"Batch {outcome.index + 1} completed: created={batch_result.created}, "
                f"updated={batch_result.updated}, failed={batch_result.failed}"
            )

    async def _sync_internal(self, result: SyncResult, options: Dict, comprehensive: bool, sync_to_internal_only: bool):
        try:
            if comprehensive:
                page_size = options["batch_size"] or self.settings.license_sync_page_size
                log.info(f"Starting paginated sync to internal licenses (page size {page_size})")
                reconciled = await self.reconciler.sync_to_internal_paginated(
                    batch_size=page_size,
                    limit=options["limit"],
                )
            else:
                log.info("Starting legacy sync to internal licenses")
                reconciled = await self.reconciler.sync_to_internal_legacy()

            result.internal_synced = reconciled.synced
            result.internal_updated = reconciled.updated
            result.internal_created = reconciled.created
            result.internal_skipped = reconciled.skipped

            if sync_to_internal_only:
                result.created = reconciled.created
                result.updated = reconciled.updated

        except Exception as e:
            log.error(f"Failed to sync to internal licenses: {e}")
            result.internal_sync_error = str(e)

    async def _sync_bidirectional(self, result: SyncResult):
        try:
            log.info("Starting bidirectional sync: internal to external")
            pushed = await self.reconciler.sync_from_internal(self.data_source)
            result.bidirectional_synced = pushed["synced"]
            result.bidirectional_updated = pushed["updated"]
            result.bidirectional_failed = pushed["failed"]
        except Exception as e:
            log.error(f"Failed bidirectional sync: {e}")
            result.bidirectional_sync_error = str(e)

    async def _attempt_recovery(self, error: Exception, options: Dict, batch_size: int) -> Dict:
        """
        Recovery policy for a failed run.

        Timeouts get one retry at half the batch size. Connection and
        external API failures are logged for an operator. Anything else is
        left as is.
        """
        recovery = {"attempted": False, "successful": False, "type": None}
        message = str(error)
        lowered = message.lower()

        try:
            if "timeout" in lowered or "etimedout" in lowered:
                recovery["attempted"] = True
                recovery["type"] = RECOVERY_SMALLER_BATCH

                retry_options = dict(options)
                retry_options["batch_size"] = max(MIN_RECOVERY_BATCH_SIZE, batch_size // 2)
                retry_options["force_full_sync"] = False
                log.info(
                    f"Attempting sync recovery with smaller batch size "
                    f"({batch_size} -> {retry_options['batch_size']})"
                )

                retry = await self._run(retry_options, allow_recovery=False)
                recovery["successful"] = retry.success

            elif "connection" in lowered or "econnrefused" in lowered:
                recovery["attempted"] = True
                recovery["type"] = RECOVERY_CONNECTION
                log.warning(f"Sync failed due to connection issue - manual intervention required: {message}")

            elif "HTTP" in message or "API" in message:
                recovery["attempted"] = True
                recovery["type"] = RECOVERY_EXTERNAL_API
                log.warning(f"Sync failed due to external API issue: {message}")

        except Exception as recovery_error:
            log.error(f"Sync recovery attempt ({recovery['type']}) failed: {recovery_error}")

        return recovery

    # ────────────────────────────────────────────
    # Single license / pending / status
    # ────────────────────────────────────────────

    async def sync_single_license(self, appid: str) -> Dict:
        """Fetch one license from the API and refresh its mirror row"""
        try:
            log.info(f"Syncing single external license {appid}")
            external = await self.data_source.get_license_by_app_id(appid)
            if not external:
                raise LookupError(f"License with appid {appid} not found in external API")

            stored = await self.mirror_store.upsert(external)
            await self.mirror_store.mark_synced(stored["id"], datetime.utcnow())
            return {"success": True, "license": stored, "action": "synced"}

        except Exception as e:
            log.error(f"Single license sync failed for {appid}: {e}")
            try:
                existing = await self.mirror_store.find_by_app_id(appid)
                if existing:
                    await self.mirror_store.mark_sync_failed(existing["id"], str(e))
            except Exception as mark_error:
                log.error(f"Failed to mark license {appid} sync as failed: {mark_error}")

            return {"success": False, "appid": appid, "error": str(e)}

    async def sync_pending_licenses(self, limit: int = 100, batch_size: int = 20) -> Dict:
        """Re-sync mirror rows left pending or failed by earlier runs"""
        try:
            pending = await self.mirror_store.find_licenses_needing_sync(limit=limit)
            if not pending:
                return {"success": True, "message": "No licenses need syncing", "processed": 0}

            log.info(f"Found {len(pending)} licenses needing sync")
            results = {"success": True, "processed": 0, "synced": 0, "failed": 0, "errors": []}

            for batch in create_batches(pending, batch_size):
                outcomes = await asyncio.gather(
                    *(self.sync_single_license(lic.get("appid")) for lic in batch),
                    return_exceptions=True,
                )
                for outcome in outcomes:
                    results["processed"] += 1
                    if isinstance(outcome, Exception):
                        results["failed"] += 1
                        results["errors"].append({"error": str(outcome)})
                    elif outcome.get("success"):
                        results["synced"] += 1
                    else:
                        results["failed"] += 1
                        results["errors"].append(outcome)

            log.info(
                f"Pending licenses sync completed: processed={results['processed']}, "
                f"synced={results['synced']}, failed={results['failed']}"
            )
            return results

        except Exception as e:
            log.error(f"Pending licenses sync failed: {e}")
            return {"success": False, "error": str(e)}

    async def get_sync_status(self) -> Dict:
        """Mirror sync stats, external API health and the last sync time"""
        try:
            sync_stats, health = await asyncio.gather(
                self.mirror_store.get_sync_stats(),
                self.data_source.health_check(),
            )
            return {
                "success": True,
                "internal": sync_stats,
                "external": {
                    "healthy": health.get("healthy"),
                    "last_health_check": health.get("timestamp"),
                    "error": health.get("error"),
                },
                "last_sync": await self.mirror_store.get_last_sync_timestamp(),
            }
        except Exception as e:
            log.error(f"Failed to get sync status: {e}")
            return {"success": False, "error": str(e)}


def create_license_sync_service(monitor: Optional[SyncMonitor] = None, settings=None) -> LicenseSyncService:
    """Wire the service to the API connector and the database-backed stores"""
    from license_sync.connectors.license_api_connector import ExternalLicenseApiConnector
    from license_sync.services.license_store import ExternalLicenseStore, InternalLicenseStore

    settings = settings or get_settings()
    return LicenseSyncService(
        mirror_store=ExternalLicenseStore(settings=settings),
        data_source=ExternalLicenseApiConnector(monitor=monitor, settings=settings),
        internal_store=InternalLicenseStore(),
        monitor=monitor,
        settings=settings,
    )
