"""
Batch Processor

Splits fetched external licenses into batches and upserts each batch into the
external mirror store. Batches run concurrently in chunks; one batch failing
never cancels its siblings.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from license_sync.config import get_settings
from license_sync.utils.helpers import chunk_list
from license_sync.utils.logger import log


@dataclass
class BatchResult:
    """Counts for one batch upsert"""
    created: int = 0
    updated: int = 0
    failed: int = 0
    errors: List[Dict] = field(default_factory=list)


@dataclass
class BatchOutcome:
    """What happened to one batch: a result, or the exception it raised"""
    index: int
    batch: List[Dict]
    result: Optional[BatchResult] = None
    error: Optional[BaseException] = None


def create_batches(items: Iterable[Any], batch_size: int) -> List[List[Any]]:
    """Split items into order-preserving batches; the last may be shorter."""
    if batch_size < 1:
        raise ValueError(f"batch_size must be at least 1, got {batch_size}")
    return chunk_list(list(items), batch_size)


def calculate_adaptive_concurrency(
    total_batches: int,
    batch_size: int,
    base_concurrency: Optional[int] = None,
) -> int:
    """
    Concurrency for a run of batches.

    Small runs (3 batches or fewer) use at most 2 workers; large runs (more
    than 50 batches) are capped at 8; everything else uses the base value.
    """
    base = base_concurrency or get_settings().license_sync_concurrency

    if total_batches <= 3:
        return min(base, 2)
    if total_batches > 50:
        return min(base, 8)
    return base


class BatchProcessor:
    """Upserts batches of external licenses into the mirror store"""

    def __init__(self, mirror_store):
        self.mirror_store = mirror_store

    async def process_batch(self, batch: List[Dict], timestamp: Optional[datetime] = None) -> BatchResult:
        """
        Upsert one batch with a single bulk call and mark the survivors synced.

        If the bulk call itself raises, every record in the batch is failed
        with that message.
        """
        result = BatchResult()
        timestamp = timestamp or datetime.utcnow()

        try:
            upsert = await self.mirror_store.bulk_upsert(batch)
        except Exception as e:
            log.error(f"Bulk upsert failed for batch of {len(batch)} licenses: {e}")
            result.failed = len(batch)
            result.errors = [{"appid": _appid_of(record), "error": str(e)} for record in batch]
            return result

        result.created = upsert.get("created", 0)
        result.updated = upsert.get("updated", 0)

        failed_appids = set()
        for item in upsert.get("errors") or []:
            data = item.get("data")
            appid = _appid_of(data)
            if appid is not None:
                failed_appids.add(appid)
            result.errors.append({"appid": appid, "error": item.get("error", "Unknown error")})
        result.failed = len(result.errors)

        try:
            ids = []
            for record in batch:
                appid = _appid_of(record)
                if appid is None or appid in failed_appids:
                    continue
                stored = await self.mirror_store.find_by_app_id(appid)
                if stored and stored.get("id") is not None:
                    ids.append(stored["id"])
            if ids:
                await self.mirror_store.bulk_mark_synced(ids, timestamp)
        except Exception as e:
            # The upsert itself succeeded; counts stand
            log.warning(f"Failed to mark batch of {len(batch)} licenses as synced: {e}")

        return result

    async def run(
        self,
        batches: List[List[Dict]],
        timestamp: Optional[datetime] = None,
        concurrency_limit: int = 1,
    ) -> List[BatchOutcome]:
        """
        Process batches concurrency_limit at a time.

        Each chunk of batches completes before the next starts. Outcomes come
        back in batch order, one per batch.
        """
        if concurrency_limit < 1:
            raise ValueError(f"concurrency_limit must be at least 1, got {concurrency_limit}")

        timestamp = timestamp or datetime.utcnow()
        outcomes: List[BatchOutcome] = []
        total = len(batches)

        for start in range(0, total, concurrency_limit):
            chunk = batches[start:start + concurrency_limit]
            log.info(
                f"Processing batches {start + 1}-{start + len(chunk)} of {total} "
                f"(concurrency {concurrency_limit})"
            )
            results = await asyncio.gather(
                *(self.process_batch(batch, timestamp) for batch in chunk),
                return_exceptions=True,
            )
            for offset, (batch, result) in enumerate(zip(chunk, results)):
                index = start + offset
                if isinstance(result, BaseException):
                    if not isinstance(result, Exception):
                        raise result
                    log.error(f"Batch {index + 1} failed: {result}")
                    outcomes.append(BatchOutcome(index=index, batch=batch, error=result))
                else:
                    outcomes.append(BatchOutcome(index=index, batch=batch, result=result))

        return outcomes


def _appid_of(record: Any) -> Optional[str]:
    if isinstance(record, dict) and record.get("appid"):
        return str(record["appid"])
    return None
