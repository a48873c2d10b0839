"""
Pydantic schemas for sync trigger, status, statistics and health
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime, date
from uuid import UUID
from models.base import SyncService, SyncStatus


# ============================================================================
# Trigger
# ============================================================================

class SyncRequest(BaseModel):
    """Body of an on-demand sync trigger"""
    services: List[str] = Field(
        default_factory=lambda: ["gitlab", "clickup"],
        description="Providers to sync: gitlab, clickup"
    )

    @validator("services")
    def non_empty(cls, v):
        if not v:
            raise ValueError("at least one service is required")
        return v


class SyncResult(BaseModel):
    """Outcome of one provider's run within a trigger"""
    service: str
    run_id: UUID
    status: str = Field(..., description="success, partial or failed")
    duration_ms: int = 0
    records_processed: int = 0
    message: Optional[str] = None
    error: Optional[Dict[str, Any]] = None


class SyncReport(BaseModel):
    """Everything a trigger did, returned after the metrics pass"""
    status: SyncStatus
    results: List[SyncResult] = Field(default_factory=list)
    metrics_ok: bool = False
    metrics_error: Optional[str] = None
    started_at: datetime
    completed_at: datetime

    class Config:
        json_schema_extra = {
            "example": {
                "status": "PARTIAL",
                "results": [
                    {
                        "service": "gitlab",
                        "run_id": "2d1c3f0e-8c1b-4a4e-9a55-1f0e0c9b2a11",
                        "status": "failed",
                        "duration_ms": 412,
                        "records_processed": 0,
                        "message": "Authentication failed for gitlab",
                    },
                    {
                        "service": "clickup",
                        "run_id": "7b6f8a3c-52a9-4d1e-8f36-0e2c4d9a1b77",
                        "status": "success",
                        "duration_ms": 8120,
                        "records_processed": 143,
                    },
                ],
                "metrics_ok": True,
                "started_at": "2024-01-15T10:00:00",
                "completed_at": "2024-01-15T10:00:09",
            }
        }


# ============================================================================
# Status
# ============================================================================

class SyncLogInfo(BaseModel):
    run_id: UUID
    service: SyncService
    status: SyncStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    records_processed: int = 0
    message: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None

    class Config:
        from_attributes = True


class ServiceSummary(BaseModel):
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    partial_runs: int = 0
    last_successful_sync: Optional[datetime] = None


class SyncStatusResponse(BaseModel):
    is_running: bool
    running_count: int
    last_successful_sync: Dict[str, Optional[datetime]] = Field(default_factory=dict)
    recent_runs: List[SyncLogInfo] = Field(default_factory=list)
    stats_by_service: Dict[str, ServiceSummary] = Field(default_factory=dict)


# ============================================================================
# Statistics
# ============================================================================

class ServiceStatistics(BaseModel):
    service: str
    total_syncs: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    partial_syncs: int = 0
    success_rate: float = 0.0
    avg_duration_ms: float = 0.0
    records_processed: int = 0


class DailySyncStatistics(BaseModel):
    date: date
    total_syncs: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    partial_syncs: int = 0
    records_processed: int = 0


class SyncStatistics(BaseModel):
    window_days: int
    total_syncs: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    partial_syncs: int = 0
    success_rate: float = Field(0.0, description="Percentage of finished runs that succeeded")
    avg_duration_ms: float = 0.0
    total_records_processed: int = 0
    by_service: List[ServiceStatistics] = Field(default_factory=list)
    daily: List[DailySyncStatistics] = Field(default_factory=list)


# ============================================================================
# Health
# ============================================================================

class ProviderHealth(BaseModel):
    service: str
    configured: bool
    last_sync_at: Optional[datetime] = None
    last_status: Optional[SyncStatus] = None


class HealthResponse(BaseModel):
    """Healthy when at least one provider is configured and none of them last failed"""
    is_healthy: bool
    providers: List[ProviderHealth] = Field(default_factory=list)
    sync_interval_hours: int
    checked_at: datetime
