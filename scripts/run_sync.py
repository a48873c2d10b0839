"""
Script to run one sync of the given providers (default: all configured)

    python scripts/run_sync.py [gitlab] [clickup]
"""

import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import get_settings
from core.cache import build_cache
from core.database import create_engine, create_session_factory
from core.logging import setup_logging
from analytics.metrics_engine import MetricsEngine
from ingestion.orchestrator import SyncOrchestrator
from models.base import SyncStatus

logger = logging.getLogger(__name__)


async def run_sync(services):
    """Run a sync and exit non-zero unless every service succeeded"""
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)

    engine = create_engine(settings.DATABASE_URL)
    session_factory = create_session_factory(engine)
    orchestrator = SyncOrchestrator(
        session_factory,
        settings.sync_config(),
        metrics_engine=MetricsEngine(session_factory, cache=build_cache(settings.REDIS_URL))
    )

    if not services:
        services = [s.value for s in orchestrator.configured_services()]
    if not services:
        logger.error("No provider is configured; set GITLAB_* and/or CLICKUP_* variables")
        await engine.dispose()
        sys.exit(2)

    try:
        report = await orchestrator.trigger_sync(services)
    finally:
        await engine.dispose()

    for result in report.results:
        logger.info(
            f"{result.service}: {result.status} - {result.records_processed} records "
            f"in {result.duration_ms}ms ({result.message or 'no message'})"
        )
    if not report.metrics_ok:
        logger.error(f"Metrics cycle failed: {report.metrics_error}")

    if report.status != SyncStatus.SUCCESS:
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(run_sync(sys.argv[1:]))
