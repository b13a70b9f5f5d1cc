"""
Scheduler for automated license syncs

Uses APScheduler to run the external license sync on a cron schedule
(LICENSE_SYNC_SCHEDULE, default every 30 minutes).
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from datetime import datetime
from typing import Callable, Dict, Optional
import time

from license_sync.config import get_settings
from license_sync.utils.helpers import safe_divide
from license_sync.utils.logger import log


class LicenseSyncScheduler:
    """
    Runs LicenseSyncService.execute on a schedule

    Only one run is in flight at a time per scheduler; a tick that arrives
    while a run is still going is skipped.
    """

    JOB_ID = "license_sync"

    def __init__(self, service_factory: Callable, settings=None, scheduler: Optional[AsyncIOScheduler] = None):
        self.settings = settings or get_settings()
        self.service_factory = service_factory
        self.scheduler = scheduler or AsyncIOScheduler(timezone=self.settings.license_sync_timezone)
        self.is_running = False
        self.sync_in_progress = False
        self.stats = {
            "total_runs": 0,
            "successful_runs": 0,
            "failed_runs": 0,
            "skipped_runs": 0,
            "total_duration": 0.0,
            "last_run_time": None,
            "total_records_processed": 0,
        }

    def start(self) -> bool:
        """Schedule the sync job and start the scheduler"""
        if not self.settings.license_sync_scheduler_enabled:
            log.info("License sync scheduler is disabled")
            return False
        if self.is_running:
            log.warning("License sync scheduler already running")
            return True

        self.scheduler.add_job(
            self.run_license_sync,
            trigger=CronTrigger.from_crontab(
                self.settings.license_sync_schedule,
                timezone=self.settings.license_sync_timezone,
            ),
            id=self.JOB_ID,
            name="External License Sync",
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.start()
        self.is_running = True
        log.info(
            f"License sync scheduler started: '{self.settings.license_sync_schedule}' "
            f"({self.settings.license_sync_timezone})"
        )
        return True

    def stop(self):
        """Stop the scheduler"""
        if not self.is_running:
            return
        self.scheduler.shutdown(wait=False)
        self.is_running = False
        log.info("License sync scheduler stopped")

    async def run_license_sync(self, **options):
        """
        Run one sync unless another is still in progress.

        Returns the SyncResult, or None when the run was skipped or the
        service could not be built.
        """
        if self.sync_in_progress:
            self.stats["skipped_runs"] += 1
            log.warning("License sync already in progress, skipping scheduled run")
            return None

        self.sync_in_progress = True
        self.stats["total_runs"] += 1
        start = time.time()

        try:
            log.info("Starting scheduled license sync...")
            service = self.service_factory()
            result = await service.execute(**options)

            if result.success:
                self.stats["successful_runs"] += 1
                self.stats["total_records_processed"] += result.total_fetched
                log.info(
                    f"Scheduled license sync completed: {result.total_fetched} fetched, "
                    f"{result.created} created, {result.updated} updated, {result.failed} failed"
                )
            else:
                self.stats["failed_runs"] += 1
                log.error(f"Scheduled license sync failed: {result.error}")
            return result

        except Exception as e:
            self.stats["failed_runs"] += 1
            log.error(f"Scheduled license sync crashed: {e}")
            return None

        finally:
            self.stats["total_duration"] += time.time() - start
            self.stats["last_run_time"] = datetime.utcnow()
            self.sync_in_progress = False

    async def trigger_now(self, **options):
        """Manually trigger a sync outside the schedule"""
        log.info("Manually triggering license sync...")
        return await self.run_license_sync(**options)

    def get_status(self) -> Dict:
        job = self.scheduler.get_job(self.JOB_ID)
        next_run = getattr(job, "next_run_time", None) if job else None
        completed = self.stats["successful_runs"] + self.stats["failed_runs"]

        return {
            "is_running": self.is_running,
            "sync_in_progress": self.sync_in_progress,
            "schedule": self.settings.license_sync_schedule,
            "timezone": self.settings.license_sync_timezone,
            "next_run": next_run.isoformat() if next_run else None,
            "stats": dict(self.stats),
            "average_duration": safe_divide(self.stats["total_duration"], completed),
            "success_rate": safe_divide(self.stats["successful_runs"], completed),
        }
