"""
Sync engine components for provider ingestion.

This package contains everything that moves data from GitLab and ClickUp
into the canonical store:

Modules:
    rate_limiter: Token bucket limiting each connector's request rate
    http_client: Rate-limited HTTP fetcher mapping provider failures to typed errors
    store: Canonical store with idempotent upserts and derived counters
    orchestrator: Runs connectors as tracked SyncLog jobs, then the metrics engine
    scheduler: APScheduler integration for periodic syncs

Subpackages:
    connectors: GitLab and ClickUp connectors
    transformers: Provider payload normalization

Architecture:
    Each sync run follows the same path:

    1. Preflight - verify credentials and reachability before any write
    2. Fetch - page through provider resources under the rate limit
    3. Normalize - turn payloads into canonical records
    4. Persist - upsert by provider identity, recompute derived counters

    Failures are isolated per entity, per unit (project or space) and per
    provider; one provider failing never stops the other.

Usage:
    from ingestion.orchestrator import SyncOrchestrator

    orchestrator = SyncOrchestrator(session_factory, settings.sync_config())
    report = await orchestrator.trigger_sync(["gitlab", "clickup"])

    print(report.status, [r.records_processed for r in report.results])

Error Handling:
    All components raise the typed exceptions from core.exceptions; the
    orchestrator records them on the SyncLog row of the failing run.
"""

__all__ = [
    "TokenBucket",
    "RateLimitedFetcher",
    "CanonicalStore",
    "SyncOrchestrator",
    "SyncScheduler",
]
