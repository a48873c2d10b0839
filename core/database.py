"""
Database session management with SQLAlchemy async
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool
import logging

logger = logging.getLogger(__name__)


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create the async engine for the canonical store"""
    return create_async_engine(
        database_url,
        echo=echo,
        poolclass=NullPool,  # Sessions are short-lived and spread across tasks
        future=True
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Session factory shared by connectors, orchestrator and metrics engine"""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


async def create_tables(engine: AsyncEngine) -> None:
    """Create all canonical store tables (idempotent)"""
    from models.base import Base
    import models  # noqa: F401  registers every table on Base.metadata

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Canonical store tables created")
