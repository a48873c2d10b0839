import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock
from ingestion.scheduler import SyncScheduler
from models.base import SyncService, SyncStatus


def make_orchestrator(services):
    orchestrator = MagicMock()
    orchestrator.config.interval_hours = 1
    orchestrator.configured_services.return_value = services
    orchestrator.trigger_sync = AsyncMock(return_value=MagicMock(status=SyncStatus.SUCCESS))
    return orchestrator


@pytest.mark.asyncio
async def test_scheduler_registers_interval_job():
    scheduler = SyncScheduler(make_orchestrator([SyncService.GITLAB]), interval_hours=2)
    scheduler.start()
    try:
        job = scheduler.scheduler.get_job(SyncScheduler.JOB_ID)
        assert job is not None
        assert job.trigger.interval == timedelta(hours=2)
    finally:
        scheduler.stop()


@pytest.mark.asyncio
async def test_scheduler_defaults_to_configured_interval():
    scheduler = SyncScheduler(make_orchestrator([]))
    assert scheduler.interval_hours == 1


@pytest.mark.asyncio
async def test_scheduler_job_syncs_configured_services():
    orchestrator = make_orchestrator([SyncService.GITLAB, SyncService.CLICKUP])
    scheduler = SyncScheduler(orchestrator)

    report = await scheduler.run_sync_job()

    orchestrator.trigger_sync.assert_awaited_once_with(["GITLAB", "CLICKUP"])
    assert report.status == SyncStatus.SUCCESS


@pytest.mark.asyncio
async def test_scheduler_job_skips_without_configured_services():
    orchestrator = make_orchestrator([])
    scheduler = SyncScheduler(orchestrator)

    assert await scheduler.run_sync_job() is None
    orchestrator.trigger_sync.assert_not_awaited()


@pytest.mark.asyncio
async def test_scheduler_job_survives_failures():
    orchestrator = make_orchestrator([SyncService.GITLAB])
    orchestrator.trigger_sync.side_effect = RuntimeError("database unavailable")
    scheduler = SyncScheduler(orchestrator)

    assert await scheduler.run_sync_job() is None
