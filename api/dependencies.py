"""
FastAPI dependencies
"""

from fastapi import Request
from ingestion.orchestrator import SyncOrchestrator


def get_orchestrator(request: Request) -> SyncOrchestrator:
    """Orchestrator built at application startup"""
    return request.app.state.orchestrator
