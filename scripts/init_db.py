import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import get_settings
from core.database import create_engine, create_tables
from core.logging import setup_logging

logger = logging.getLogger(__name__)


async def init_database():
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)

    logger.info("Connecting to database...")
    engine = create_engine(settings.DATABASE_URL)
    try:
        await create_tables(engine)
    finally:
        await engine.dispose()

if __name__ == "__main__":
    asyncio.run(init_database())
