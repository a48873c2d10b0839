import logging
from typing import Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from ingestion.orchestrator import SyncOrchestrator
from schemas.sync import SyncReport

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Runs a full sync of every configured provider on a fixed interval"""

    JOB_ID = "sync_job"

    def __init__(self, orchestrator: SyncOrchestrator, interval_hours: Optional[int] = None):
        self.orchestrator = orchestrator
        self.interval_hours = interval_hours or orchestrator.config.interval_hours
        self.scheduler = AsyncIOScheduler()

    async def run_sync_job(self) -> Optional[SyncReport]:
        """Job to sync all configured providers"""
        services = self.orchestrator.configured_services()
        if not services:
            logger.warning("Scheduler: no provider is configured, skipping sync")
            return None

        logger.info("Scheduler: Starting sync job")
        try:
            report = await self.orchestrator.trigger_sync([s.value for s in services])
        except Exception as e:
            logger.error(f"Scheduler: sync job failed - {e}")
            return None

        logger.info(f"Scheduler: sync job finished with {report.status.value}")
        return report

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_sync_job,
            trigger=IntervalTrigger(hours=self.interval_hours),
            id=self.JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        self.scheduler.start()
        logger.info(f"Sync Scheduler started (every {self.interval_hours}h)")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Sync Scheduler stopped")
