"""
FastAPI application initialization
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.routes import sync
from api.middleware import RequestContextMiddleware
from core.config import get_settings
from core.cache import build_cache
from core.database import create_engine, create_session_factory
from core.exceptions import SyncNotFoundError, InvalidSyncStateError, InvalidSyncRequestError
from core.logging import setup_logging
from analytics.metrics_engine import MetricsEngine
from ingestion.orchestrator import SyncOrchestrator
from ingestion.scheduler import SyncScheduler
import logging

settings = get_settings()
setup_logging(settings.LOG_LEVEL)

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="DevPulse Sync Engine API",
    description="Sync control for GitLab and ClickUp ingestion and productivity metrics",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

app.include_router(sync.router)


def _error_response(status_code: int, error):
    return JSONResponse(status_code=status_code, content=error.to_dict())


@app.exception_handler(SyncNotFoundError)
async def sync_not_found_handler(request: Request, exc: SyncNotFoundError):
    return _error_response(404, exc)


@app.exception_handler(InvalidSyncStateError)
async def invalid_sync_state_handler(request: Request, exc: InvalidSyncStateError):
    return _error_response(409, exc)


@app.exception_handler(InvalidSyncRequestError)
async def invalid_sync_request_handler(request: Request, exc: InvalidSyncRequestError):
    return _error_response(422, exc)


@app.on_event("startup")
async def startup_event():
    """Build the engine components and start the scheduler"""
    logger.info("Starting DevPulse Sync Engine API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    engine = create_engine(settings.DATABASE_URL)
    session_factory = create_session_factory(engine)
    metrics_engine = MetricsEngine(session_factory, cache=build_cache(settings.REDIS_URL))
    orchestrator = SyncOrchestrator(session_factory, settings.sync_config(), metrics_engine=metrics_engine)

    app.state.engine = engine
    app.state.orchestrator = orchestrator
    app.state.scheduler = SyncScheduler(orchestrator)
    app.state.scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down DevPulse Sync Engine API")
    app.state.scheduler.stop()
    await app.state.engine.dispose()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "DevPulse Sync Engine API",
        "version": "1.0.0",
        "docs": "/docs",
        "endpoints": {
            "trigger": "POST /sync",
            "status": "/sync/status",
            "statistics": "/sync/statistics",
            "health": "/sync/health"
        }
    }
