"""
Sync API endpoint tests
"""

import uuid
import pytest
from datetime import datetime, date
from unittest.mock import AsyncMock, MagicMock
from fastapi.testclient import TestClient
from api.main import app
from api.dependencies import get_orchestrator
from core.exceptions import SyncNotFoundError, InvalidSyncStateError, InvalidSyncRequestError
from models.base import SyncService, SyncStatus
from schemas.sync import (
    SyncReport,
    SyncResult,
    SyncLogInfo,
    SyncStatusResponse,
    SyncStatistics,
    DailySyncStatistics,
    HealthResponse,
    ProviderHealth,
)

STARTED = datetime(2024, 1, 15, 10, 0)
RUN_ID = uuid.UUID("2d1c3f0e-8c1b-4a4e-9a55-1f0e0c9b2a11")


@pytest.fixture
def orchestrator():
    return MagicMock()


@pytest.fixture
def client(orchestrator):
    """Test client with the orchestrator replaced; startup is not run"""
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator

    yield TestClient(app)

    app.dependency_overrides.clear()


def test_trigger_sync(client, orchestrator):
    orchestrator.trigger_sync = AsyncMock(return_value=SyncReport(
        status=SyncStatus.PARTIAL,
        results=[
            SyncResult(service="gitlab", run_id=RUN_ID, status="failed", message="Authentication failed"),
            SyncResult(service="clickup", run_id=uuid.uuid4(), status="success", records_processed=5),
        ],
        metrics_ok=True,
        started_at=STARTED,
        completed_at=STARTED,
    ))

    response = client.post("/sync", json={"services": ["gitlab", "clickup"]})

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "PARTIAL"
    assert [r["status"] for r in data["results"]] == ["failed", "success"]
    assert response.headers["X-Request-ID"].startswith("req_")
    orchestrator.trigger_sync.assert_awaited_once_with(["gitlab", "clickup"])


def test_trigger_sync_defaults_to_both_services(client, orchestrator):
    orchestrator.trigger_sync = AsyncMock(return_value=SyncReport(
        status=SyncStatus.SUCCESS, started_at=STARTED, completed_at=STARTED
    ))

    response = client.post("/sync", json={})

    assert response.status_code == 200
    orchestrator.trigger_sync.assert_awaited_once_with(["gitlab", "clickup"])


def test_trigger_sync_unknown_service(client, orchestrator):
    orchestrator.trigger_sync = AsyncMock(side_effect=InvalidSyncRequestError(
        "Unknown service: jira", context={"service": "jira"}
    ))

    response = client.post("/sync", json={"services": ["jira"]})

    assert response.status_code == 422
    data = response.json()
    assert data["error_type"] == "InvalidSyncRequestError"
    assert data["context"]["service"] == "jira"


def test_trigger_sync_empty_service_list(client, orchestrator):
    response = client.post("/sync", json={"services": []})

    assert response.status_code == 422
    orchestrator.trigger_sync.assert_not_called()


def test_sync_status(client, orchestrator):
    orchestrator.get_sync_status = AsyncMock(return_value=SyncStatusResponse(
        is_running=True,
        running_count=1,
        last_successful_sync={"gitlab": STARTED, "clickup": None},
        recent_runs=[SyncLogInfo(
            run_id=RUN_ID, service=SyncService.GITLAB, status=SyncStatus.RUNNING, started_at=STARTED
        )],
    ))

    response = client.get("/sync/status", params={"limit": 5, "service": "gitlab"})

    assert response.status_code == 200
    data = response.json()
    assert data["is_running"] is True
    assert data["recent_runs"][0]["run_id"] == str(RUN_ID)
    assert data["last_successful_sync"]["clickup"] is None
    orchestrator.get_sync_status.assert_awaited_once_with(limit=5, service="gitlab", status=None)


def test_sync_status_limit_is_bounded(client, orchestrator):
    response = client.get("/sync/status", params={"limit": 500})

    assert response.status_code == 422
    orchestrator.get_sync_status.assert_not_called()


def test_sync_statistics(client, orchestrator):
    orchestrator.get_sync_statistics = AsyncMock(return_value=SyncStatistics(
        window_days=7,
        total_syncs=4,
        successful_syncs=2,
        failed_syncs=1,
        partial_syncs=1,
        success_rate=50.0,
        avg_duration_ms=2000.0,
        daily=[DailySyncStatistics(date=date(2024, 1, 15), total_syncs=4)],
    ))

    response = client.get("/sync/statistics", params={"window_days": 7})

    assert response.status_code == 200
    data = response.json()
    assert data["success_rate"] == 50.0
    assert data["daily"][0]["date"] == "2024-01-15"
    orchestrator.get_sync_statistics.assert_awaited_once_with(7)


def test_cancel_sync(client, orchestrator):
    orchestrator.cancel_sync = AsyncMock(return_value=SyncLogInfo(
        run_id=RUN_ID,
        service=SyncService.CLICKUP,
        status=SyncStatus.FAILED,
        started_at=STARTED,
        completed_at=STARTED,
        duration_ms=0,
        message="Sync cancelled by administrator",
    ))

    response = client.post(f"/sync/{RUN_ID}/cancel")

    assert response.status_code == 200
    assert response.json()["status"] == "FAILED"
    orchestrator.cancel_sync.assert_awaited_once_with(str(RUN_ID))


def test_cancel_unknown_sync(client, orchestrator):
    orchestrator.cancel_sync = AsyncMock(side_effect=SyncNotFoundError("Sync run abc not found"))

    response = client.post("/sync/abc/cancel")

    assert response.status_code == 404
    assert response.json()["error_type"] == "SyncNotFoundError"


def test_cancel_finished_sync(client, orchestrator):
    orchestrator.cancel_sync = AsyncMock(side_effect=InvalidSyncStateError(
        f"Sync run {RUN_ID} is SUCCESS, not RUNNING", context={"status": "SUCCESS"}
    ))

    response = client.post(f"/sync/{RUN_ID}/cancel")

    assert response.status_code == 409
    assert response.json()["context"]["status"] == "SUCCESS"


def test_sync_health(client, orchestrator):
    orchestrator.get_health = AsyncMock(return_value=HealthResponse(
        is_healthy=False,
        providers=[
            ProviderHealth(service="gitlab", configured=True, last_status=SyncStatus.FAILED),
            ProviderHealth(service="clickup", configured=False),
        ],
        sync_interval_hours=1,
        checked_at=STARTED,
    ))

    response = client.get("/sync/health")

    assert response.status_code == 200
    data = response.json()
    assert data["is_healthy"] is False
    assert data["providers"][0]["last_status"] == "FAILED"


def test_root(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json()["endpoints"]["trigger"] == "POST /sync"


def test_caller_request_id_is_kept(client, orchestrator):
    orchestrator.get_health = AsyncMock(return_value=HealthResponse(
        is_healthy=True, sync_interval_hours=1, checked_at=STARTED
    ))

    response = client.get("/sync/health", headers={"X-Request-ID": "req_from_gateway"})

    assert response.status_code == 200
    assert response.headers["X-Request-ID"] == "req_from_gateway"
