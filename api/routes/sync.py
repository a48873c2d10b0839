"""
Sync trigger, status, statistics, cancellation and health endpoints
"""
from fastapi import APIRouter, Depends, Query, Request
from typing import Optional
from api.dependencies import get_orchestrator
from ingestion.orchestrator import SyncOrchestrator
from schemas.sync import (
    SyncRequest,
    SyncReport,
    SyncStatusResponse,
    SyncStatistics,
    SyncLogInfo,
    HealthResponse,
)
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync", tags=["Sync"])


@router.post("", response_model=SyncReport)
async def trigger_sync(
    body: SyncRequest,
    request: Request,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
):
    """
    Run the requested providers now and return once metrics are refreshed.

    Provider failures are reported per service in the body; the call
    itself only fails for an invalid request.
    """
    logger.info(f"[{request.state.request_id}] Sync requested for {body.services}")
    return await orchestrator.trigger_sync(body.services)


@router.get("/status", response_model=SyncStatusResponse)
async def get_sync_status(
    limit: int = Query(10, ge=1, le=100, description="Number of recent runs to return"),
    service: Optional[str] = Query(None, description="gitlab or clickup"),
    status: Optional[str] = Query(None, description="QUEUED, RUNNING, SUCCESS, FAILED or PARTIAL"),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
):
    return await orchestrator.get_sync_status(limit=limit, service=service, status=status)


@router.get("/statistics", response_model=SyncStatistics)
async def get_sync_statistics(
    window_days: Optional[int] = Query(None, ge=1, le=365),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
):
    return await orchestrator.get_sync_statistics(window_days)


@router.post("/{run_id}/cancel", response_model=SyncLogInfo)
async def cancel_sync(
    run_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
):
    """Only RUNNING syncs can be cancelled"""
    return await orchestrator.cancel_sync(run_id)


@router.get("/health", response_model=HealthResponse)
async def sync_health(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.get_health()
