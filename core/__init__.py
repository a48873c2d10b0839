"""
Core utilities and configuration for the DevPulse sync engine.

This package provides foundational components used by connectors, the
orchestrator and the metrics engine:

Modules:
    config: Settings and the provider config structs built from them
    database: Engine and session factory creation
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration
    cache: Cache interface with Redis and in-memory backends
    timeutils: UTC and epoch-millisecond conversions

Usage:
    from core.config import get_settings
    from core.database import create_engine, create_session_factory
    from core.exceptions import ProviderError, ConfigurationError
    from core.logging import setup_logging

Example:
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)

    engine = create_engine(settings.DATABASE_URL)
    session_factory = create_session_factory(engine)
    async with session_factory() as session:
        ...
"""

__all__ = [
    "Settings",
    "GitLabConfig",
    "ClickUpConfig",
    "SyncConfig",
    "get_settings",
    "create_engine",
    "create_session_factory",
    "setup_logging",
    "Cache",
    "InMemoryCache",
    "RedisCache",
    "build_cache",
    # Exceptions
    "SyncEngineError",
    "RetryableError",
    "NonRetryableError",
    "ConfigurationError",
    "ProviderError",
    "UnauthorizedError",
    "NotFoundError",
    "RateLimitedError",
    "TransientNetworkError",
    "FetchTimeoutError",
    "NormalizationError",
    "PersistenceError",
    "SyncCancelledError",
    "SyncNotFoundError",
    "InvalidSyncStateError",
    "InvalidSyncRequestError",
]
