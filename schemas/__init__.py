"""
Pydantic schemas for data validation and serialization.

This package defines Pydantic models shared by connectors, the
orchestrator, the metrics engine and the API:

Schemas:
    normalized: Canonical records produced from provider payloads
    sync: Sync trigger, result, status, statistics and health schemas
    metrics: Productivity metrics, team metrics, trends and ranks

Usage:
    from schemas.normalized import CommitCreate, TaskCreate
    from schemas.sync import SyncReport, SyncStatusResponse
    from schemas.metrics import MetricsPeriod, ProductivityMetrics

Example:
    commit = CommitCreate(
        sha="a1b2c3d4",
        project_id=7,
        message="Fix login redirect",
        author_email="Dev@Example.com",
        authored_at=datetime(2024, 1, 15, 10, 0),
    )
    assert commit.author_email == "dev@example.com"

Validation:
    Normalized schemas lower-case emails and reject negative diff stats,
    so a malformed payload fails before anything reaches the store.
"""

__all__ = [
    "UserIdentity",
    "ProjectCreate",
    "CommitCreate",
    "TaskCreate",
    "TimeEntryCreate",
    "SyncRequest",
    "SyncReport",
    "SyncStatusResponse",
    "SyncStatistics",
    "HealthResponse",
    "MetricsPeriod",
    "ProductivityMetrics",
    "TeamMetrics",
]
