"""
Reconciliation Engine

Walks the external mirror and applies create/update decisions to the internal
license table, one record at a time. Pages are processed strictly in order so
a record created earlier in the run is visible to later lookups.

Match priority: appid, then countid. Email is never used to match.
"""
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from license_sync.services.field_sanitizer import (
    create_external_update_data,
    generate_unique_key,
    internal_to_external_format,
    match_keys,
    transform_robustly,
)
from license_sync.utils.helpers import payload_snapshot
from license_sync.utils.logger import log

# Extra pages allowed past the expected page count before the loop gives up
PAGE_CAP_MARGIN = 10

UPDATED = "updated"
CREATED = "created"
SKIPPED = "skipped"


@dataclass
class ReconciliationResult:
    """Counts for one mirror -> internal pass"""
    synced: int = 0
    updated: int = 0
    created: int = 0
    skipped: int = 0
    pages_processed: int = 0
    page_cap_reached: bool = False

    def record(self, outcome: str):
        if outcome == UPDATED:
            self.updated += 1
        elif outcome == CREATED:
            self.created += 1
        else:
            self.skipped += 1
            return
        self.synced += 1


def log_event(level: str, message: str, **context):
    """Default event sink: loguru, with context appended."""
    if context:
        message = f"{message} | " + ", ".join(f"{key}={value}" for key, value in context.items())
    log.log(level.upper(), message)


class ReconciliationEngine:
    """Reconciles external mirror rows into the internal license store"""

    def __init__(self, internal_store, mirror_store, emit: Optional[Callable[..., Any]] = None):
        if internal_store is None:
            raise ValueError("internal_store is required")
        if mirror_store is None:
            raise ValueError("mirror_store is required")
        self.internal_store = internal_store
        self.mirror_store = mirror_store
        self.emit = emit or log_event

    async def _find_match(self, external: Dict) -> Optional[Dict]:
        keys = match_keys(external)
        appid = keys["appid"]
        if appid:
            try:
                match = await self.internal_store.find_by_app_id(appid)
                if match:
                    return match
            except Exception as e:
                self.emit("debug", "AppID lookup failed, trying countid", appid=appid, error=str(e))

        countid = keys["countid"]
        if countid is not None:
            try:
                return await self.internal_store.find_by_count_id(countid)
            except Exception as e:
                self.emit("debug", "CountID lookup failed, treating as unmatched", countid=countid, error=str(e))
        return None

    async def reconcile_record(self, external: Dict) -> str:
        """
        Create or update the internal license for one external record.

        Returns "updated", "created" or "skipped". A failed update falls
        through to create; a failed create is skipped.
        """
        match = await self._find_match(external)

        if match is not None:
            patch = create_external_update_data(external)
            patch["external_sync_status"] = "synced"
            patch["last_external_sync"] = datetime.utcnow()
            try:
                await self.internal_store.update(match["id"], patch)
                return UPDATED
            except Exception as e:
                self.emit(
                    "warning",
                    "Failed to update internal license, creating instead",
                    license_id=match.get("id"),
                    appid=external.get("appid"),
                    error=str(e),
                )

        try:
            record = transform_robustly(external)
            record["key"] = generate_unique_key(external)
            await self.internal_store.save(record)
            return CREATED
        except Exception as e:
            self.emit(
                "warning",
                "Failed to create internal license from external data",
                appid=external.get("appid"),
                countid=external.get("countid"),
                error=str(e),
                data=payload_snapshot(external),
            )
            return SKIPPED

    async def sync_to_internal_paginated(self, batch_size: int = 100, limit: Optional[int] = None) -> ReconciliationResult:
        """
        Reconcile the mirror page by page.

        Stops on an empty or short page, once limit records are processed,
        or after ceil(total / batch_size) + 10 pages. A page that fails to
        load is logged and skipped.
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")

        result = ReconciliationResult()
        stats = await self.mirror_store.get_license_stats_with_filters({})
        total = int(stats.get("total") or 0)

        if total == 0:
            self.emit("info", "No external licenses to reconcile")
            return result

        max_pages = math.ceil(total / batch_size) + PAGE_CAP_MARGIN
        processed = 0
        page = 1

        self.emit("info", "Starting paginated reconciliation", total=total, batch_size=batch_size, limit=limit)

        while True:
            if page > max_pages:
                result.page_cap_reached = True
                self.emit(
                    "warning",
                    "Reconciliation reached page safety cap, stopping",
                    max_pages=max_pages,
                    processed=processed,
                )
                break

            try:
                response = await self.mirror_store.find_licenses(page=page, limit=batch_size, filters={})
            except Exception as e:
                self.emit("error", "Failed to load mirror page, skipping", page=page, error=str(e))
                page += 1
                continue

            page_records = response.get("licenses") or []
            if not page_records:
                break

            records = page_records
            if limit is not None:
                records = page_records[:max(limit - processed, 0)]

            by_appid = {r.get("appid"): r for r in records if r.get("appid")}
            by_countid = {r.get("countid"): r for r in records if r.get("countid") is not None}
            self.emit(
                "debug",
                "Reconciling mirror page",
                page=page,
                records=len(records),
                with_appid=len(by_appid),
                with_countid=len(by_countid),
            )

            for record in records:
                result.record(await self.reconcile_record(record))
                processed += 1

            result.pages_processed += 1

            if len(page_records) < batch_size:
                break
            if limit is not None and processed >= limit:
                break
            page += 1

        self.emit(
            "info",
            "Paginated reconciliation completed",
            synced=result.synced,
            updated=result.updated,
            created=result.created,
            skipped=result.skipped,
            pages=result.pages_processed,
        )
        return result

    async def sync_to_internal_legacy(self) -> ReconciliationResult:
        """Reconcile the whole mirror loaded in one call."""
        result = ReconciliationResult()
        stats = await self.mirror_store.get_license_stats_with_filters({})
        total = int(stats.get("total") or 0)
        if total == 0:
            self.emit("info", "No external licenses to reconcile")
            return result

        response = await self.mirror_store.find_licenses(page=1, limit=total, filters={})
        records = response.get("licenses") or []
        self.emit("info", "Starting legacy reconciliation", total=len(records))

        for record in records:
            result.record(await self.reconcile_record(record))
        result.pages_processed = 1

        self.emit(
            "info",
            "Legacy reconciliation completed",
            synced=result.synced,
            updated=result.updated,
            created=result.created,
            skipped=result.skipped,
        )
        return result

    async def sync_from_internal(self, data_source, page_size: int = 500) -> Dict:
        """
        Push internal license changes back to the external API.

        Each license with an external identifier is sent by appid, falling
        back to its license email.

        Returns:
            Dict with keys: synced, updated, failed, errors
        """
        counters = {"synced": 0, "updated": 0, "failed": 0, "errors": []}
        filters = {"has_external_data": True}
        page = 1
        max_pages = None

        while max_pages is None or page <= max_pages:
            response = await self.internal_store.find_licenses(page=page, limit=page_size, filters=filters)
            licenses: List[Dict] = response.get("licenses") or []
            if max_pages is None:
                max_pages = math.ceil(int(response.get("total") or 0) / page_size) + PAGE_CAP_MARGIN

            for internal in licenses:
                try:
                    await self._push_to_external(internal, data_source, counters)
                except Exception as e:
                    self.emit("error", "Failed to sync internal license to external", internal_id=internal.get("id"), error=str(e))
                    counters["failed"] += 1
                    counters["errors"].append({"internal_id": internal.get("id"), "error": str(e)})

            if len(licenses) < page_size:
                break
            page += 1

        self.emit(
            "info",
            "Internal to external sync completed",
            processed=counters["synced"],
            updated=counters["updated"],
            failed=counters["failed"],
        )
        return counters

    async def _push_to_external(self, internal: Dict, data_source, counters: Dict):
        appid = internal.get("appid")
        email = internal.get("email_license")
        if not (appid or email or internal.get("countid") is not None):
            return

        payload = internal_to_external_format(internal)
        pushed = False

        if appid:
            try:
                await data_source.update_license_by_app_id(appid, payload)
                pushed = True
            except Exception as e:
                self.emit("debug", "Update by appid failed, trying email", appid=appid, error=str(e))

        if not pushed and email:
            try:
                await data_source.update_license_by_email(email, payload)
                pushed = True
            except Exception as e:
                self.emit("debug", "Update by email failed", email=email, error=str(e))

        if pushed:
            counters["updated"] += 1
        else:
            counters["failed"] += 1
            counters["errors"].append({
                "internal_id": internal.get("id"),
                "error": "No valid external identifiers for update",
            })
        counters["synced"] += 1
