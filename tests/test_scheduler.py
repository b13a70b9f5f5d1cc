"""
Scheduler tests: single-flight runs, stats and job registration.
"""
import asyncio

from license_sync.config import Settings
from license_sync.scheduler import LicenseSyncScheduler
from license_sync.services.license_sync_service import SyncResult


def _run(coro):
    """Run an async coroutine in a sync test."""
    return asyncio.run(coro)


class StubService:
    def __init__(self, result=None, error=None, delay=0):
        self.result = result or SyncResult(success=True, total_fetched=4, created=4)
        self.error = error
        self.delay = delay
        self.calls = []

    async def execute(self, **options):
        self.calls.append(options)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.result


def test_successful_run_updates_stats():
    service = StubService()
    scheduler = LicenseSyncScheduler(lambda: service, settings=Settings())

    result = _run(scheduler.trigger_now(batch_size=20))

    assert result.success
    assert service.calls == [{"batch_size": 20}]
    assert scheduler.stats["total_runs"] == 1
    assert scheduler.stats["successful_runs"] == 1
    assert scheduler.stats["total_records_processed"] == 4
    assert scheduler.stats["last_run_time"] is not None
    assert scheduler.sync_in_progress is False


def test_failed_and_crashed_runs_are_counted():
    failing = StubService(result=SyncResult(success=False, error="HTTP 500"))
    crashing = StubService(error=RuntimeError("factory exploded"))

    scheduler = LicenseSyncScheduler(lambda: failing, settings=Settings())
    assert _run(scheduler.run_license_sync()).success is False

    scheduler.service_factory = lambda: crashing
    assert _run(scheduler.run_license_sync()) is None

    assert scheduler.stats["failed_runs"] == 2
    assert scheduler.get_status()["success_rate"] == 0


def test_overlapping_run_is_skipped():
    service = StubService(delay=0.05)
    scheduler = LicenseSyncScheduler(lambda: service, settings=Settings())

    async def overlap():
        return await asyncio.gather(scheduler.run_license_sync(), scheduler.run_license_sync())

    first, second = _run(overlap())

    assert first.success
    assert second is None
    assert len(service.calls) == 1
    assert scheduler.stats["skipped_runs"] == 1
    assert scheduler.stats["total_runs"] == 1


def test_disabled_scheduler_does_not_start():
    scheduler = LicenseSyncScheduler(StubService, settings=Settings(license_sync_scheduler_enabled=False))

    assert scheduler.start() is False
    assert scheduler.is_running is False


def test_start_registers_cron_job():
    settings = Settings(license_sync_schedule="*/15 * * * *", license_sync_timezone="UTC")
    scheduler = LicenseSyncScheduler(StubService, settings=settings)

    async def start_and_inspect():
        assert scheduler.start() is True
        status = scheduler.get_status()
        job = scheduler.scheduler.get_job(LicenseSyncScheduler.JOB_ID)
        scheduler.stop()
        return status, job

    status, job = _run(start_and_inspect())

    assert job.max_instances == 1
    assert status["is_running"] is True
    assert status["schedule"] == "*/15 * * * *"
    assert status["next_run"] is not None
    assert scheduler.is_running is False


def test_status_without_job():
    status = LicenseSyncScheduler(StubService, settings=Settings()).get_status()

    assert status["next_run"] is None
    assert status["average_duration"] == 0
    assert status["stats"]["total_runs"] == 0
