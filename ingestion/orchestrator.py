# ============================================================================
# File: ingestion/orchestrator.py
# Description: Sync orchestrator with per-service failure isolation
# ============================================================================
"""
Sync Orchestrator - runs provider connectors as tracked jobs.

This module provides:
- One SyncLog row per requested service, QUEUED -> RUNNING -> terminal
- Concurrent, isolated service runs (one failure never cancels a sibling)
- Exactly one terminal update per run, never overwriting a cancellation
- A metrics cycle after every trigger, whatever the connectors did
- Status, statistics, cancellation and health queries over SyncLog
"""

import asyncio
import uuid
from collections import defaultdict
from datetime import timedelta, datetime, date
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy import select, update, func
import logging

from core.config import SyncConfig
from core.exceptions import (
    SyncEngineError,
    SyncCancelledError,
    SyncNotFoundError,
    InvalidSyncStateError,
    InvalidSyncRequestError,
)
from core.timeutils import utcnow
from analytics.metrics_engine import MetricsEngine
from ingestion.connectors.base import BaseConnector, CancellationToken, ConnectorResult
from ingestion.connectors.gitlab import GitLabConnector
from ingestion.connectors.clickup import ClickUpConnector
from ingestion.store import CanonicalStore
from models.sync_log import SyncLog
from models.base import SyncService, SyncStatus
from schemas.sync import (
    SyncResult,
    SyncReport,
    SyncLogInfo,
    ServiceSummary,
    SyncStatusResponse,
    ServiceStatistics,
    DailySyncStatistics,
    SyncStatistics,
    ProviderHealth,
    HealthResponse,
)

logger = logging.getLogger(__name__)

ConnectorFactory = Callable[[SyncService, CancellationToken, str], BaseConnector]

CANCELLED_MESSAGE = "Sync cancelled by administrator"

RESULT_STATUS = {
    SyncStatus.SUCCESS: "success",
    SyncStatus.PARTIAL: "partial",
    SyncStatus.FAILED: "failed",
}


class SyncOrchestrator:
    """
    Production sync orchestrator

    Responsibilities:
    - Validate and run the requested services
    - Record accurate SyncLog state for every run
    - Isolate service failures from each other
    - Run the metrics engine strictly after all connectors settle
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        config: SyncConfig,
        metrics_engine: Optional[MetricsEngine] = None,
        connector_factory: Optional[ConnectorFactory] = None
    ):
        self.session_factory = session_factory
        self.config = config
        self.metrics_engine = metrics_engine or MetricsEngine(session_factory)
        self.connector_factory = connector_factory
        self._tokens: Dict[uuid.UUID, CancellationToken] = {}

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    @staticmethod
    def parse_services(services: Iterable[str]) -> List[SyncService]:
        """Validate service names, keeping request order and dropping duplicates"""
        parsed: List[SyncService] = []
        for name in services:
            try:
                service = SyncService.parse(str(name))
            except ValueError:
                raise InvalidSyncRequestError(
                    f"Unknown service: {name}",
                    context={"service": name, "allowed": "gitlab, clickup"}
                )
            if service not in parsed:
                parsed.append(service)
        if not parsed:
            raise InvalidSyncRequestError("No services requested")
        return parsed

    @staticmethod
    def _parse_status(value: Optional[str]) -> Optional[SyncStatus]:
        if value is None:
            return None
        try:
            return SyncStatus(value.strip().upper())
        except ValueError:
            raise InvalidSyncRequestError(f"Unknown status: {value}", context={"status": value})

    def configured_services(self) -> List[SyncService]:
        services = []
        if self.config.gitlab.is_configured:
            services.append(SyncService.GITLAB)
        if self.config.clickup.is_configured:
            services.append(SyncService.CLICKUP)
        return services

    def build_connector(self, service: SyncService, cancel_token: CancellationToken, run_id: str) -> BaseConnector:
        """Raises ConfigurationError when the provider's credentials are missing"""
        if self.connector_factory is not None:
            return self.connector_factory(service, cancel_token, run_id)
        if service == SyncService.GITLAB:
            return GitLabConnector(self.config.gitlab, self.session_factory, cancel_token=cancel_token, run_id=run_id)
        return ClickUpConnector(self.config.clickup, self.session_factory, cancel_token=cancel_token, run_id=run_id)

    # ------------------------------------------------------------------
    # run lifecycle
    # ------------------------------------------------------------------

    async def _create_queued_runs(self, services: List[SyncService]) -> List[Tuple[SyncService, uuid.UUID]]:
        runs = []
        async with self.session_factory() as session:
            for service in services:
                run_id = uuid.uuid4()
                session.add(SyncLog(run_id=run_id, service=service, status=SyncStatus.QUEUED, started_at=utcnow()))
                runs.append((service, run_id))
            await session.commit()
        return runs

    async def _mark_running(self, run_id: uuid.UUID) -> Optional[datetime]:
        """QUEUED -> RUNNING; returns the start time, or None if the run left QUEUED already"""
        started_at = utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                update(SyncLog)
                .where(SyncLog.run_id == run_id, SyncLog.status == SyncStatus.QUEUED)
                .values(status=SyncStatus.RUNNING, started_at=started_at)
            )
            await session.commit()
        return started_at if result.rowcount == 1 else None

    async def _finish_run(
        self,
        service: SyncService,
        run_id: uuid.UUID,
        status: SyncStatus,
        started_at: datetime,
        message: Optional[str] = None,
        error_details: Optional[dict] = None,
        details: Optional[dict] = None
    ) -> SyncLog:
        """
        The single terminal update of a run.

        Only applies while the row is still RUNNING; a run cancelled in the
        meantime keeps its cancellation. Returns the row as stored.
        """
        completed_at = utcnow()
        async with self.session_factory() as session:
            records = await CanonicalStore(session).count_touched_since(service, started_at)
            result = await session.execute(
                update(SyncLog)
                .where(SyncLog.run_id == run_id, SyncLog.status == SyncStatus.RUNNING)
                .values(
                    status=status,
                    completed_at=completed_at,
                    duration_ms=int((completed_at - started_at).total_seconds() * 1000),
                    records_processed=records,
                    message=message,
                    error_details=error_details,
                    details=details,
                )
            )
            await session.commit()
            if result.rowcount == 0:
                logger.warning(f"Run {run_id} was no longer RUNNING; terminal state left unchanged")

            row = await session.execute(
                select(SyncLog).where(SyncLog.run_id == run_id).execution_options(populate_existing=True)
            )
            return row.scalar_one()

    @staticmethod
    def _error_details(error: Exception) -> dict:
        if isinstance(error, SyncEngineError):
            return error.to_dict()
        return {"error_type": type(error).__name__, "message": str(error)}

    async def _execute_service(
        self,
        service: SyncService,
        run_id: uuid.UUID,
        started_at: datetime
    ) -> SyncLog:
        token = CancellationToken()
        self._tokens[run_id] = token
        try:
            connector = self.build_connector(service, token, str(run_id))
            result: ConnectorResult = await connector.run()

        except SyncCancelledError as e:
            logger.warning(f"{service.value} run {run_id} stopped: {e.message}")
            return await self._finish_run(
                service, run_id, SyncStatus.FAILED, started_at,
                message=CANCELLED_MESSAGE, error_details=e.to_dict()
            )

        except Exception as e:
            message = e.message if isinstance(e, SyncEngineError) else str(e)
            logger.error(
                f"{service.value} sync failed: {message}",
                extra={"error_context": {"service": service.value, "run_id": str(run_id), **self._error_details(e)}}
            )
            return await self._finish_run(
                service, run_id, SyncStatus.FAILED, started_at,
                message=message, error_details=self._error_details(e)
            )

        finally:
            self._tokens.pop(run_id, None)

        if result.has_failures:
            status = SyncStatus.PARTIAL
            message = (
                f"{result.units_failed} of {result.units_total} {connector.unit_name}s and "
                f"{result.entities_failed} records failed"
            )
        else:
            status = SyncStatus.SUCCESS
            message = f"Synced {result.entities_processed} records"

        return await self._finish_run(
            service, run_id, status, started_at,
            message=message,
            error_details={"errors": result.errors} if result.errors else None,
            details=result.to_dict(),
        )

    async def _run_service(self, service: SyncService, run_id: uuid.UUID) -> SyncResult:
        """Run one service and report it; never raises"""
        try:
            started_at = await self._mark_running(run_id)
            if started_at is None:
                return SyncResult(
                    service=service.value.lower(),
                    run_id=run_id,
                    status="failed",
                    message="Run left QUEUED before it started",
                )

            logger.info(f"Starting {service.value} sync (run {run_id})")
            row = await self._execute_service(service, run_id, started_at)
            return SyncResult(
                service=service.value.lower(),
                run_id=run_id,
                status=RESULT_STATUS.get(row.status, "failed"),
                duration_ms=row.duration_ms or 0,
                records_processed=row.records_processed or 0,
                message=row.message,
                error=row.error_details if row.status == SyncStatus.FAILED else None,
            )

        except Exception as e:
            logger.exception(f"Unexpected error while running {service.value} sync {run_id}")
            return SyncResult(
                service=service.value.lower(),
                run_id=run_id,
                status="failed",
                message=str(e),
                error=self._error_details(e),
            )

    async def _run_metrics(self) -> Tuple[bool, Optional[str]]:
        try:
            await self.metrics_engine.run_cycle()
            return True, None
        except Exception as e:
            logger.error(
                f"Metrics cycle failed: {e}",
                extra={"error_context": self._error_details(e)}
            )
            return False, str(e)

    @staticmethod
    def _overall_status(results: List[SyncResult]) -> SyncStatus:
        statuses = {result.status for result in results}
        if statuses == {"success"}:
            return SyncStatus.SUCCESS
        if statuses == {"failed"}:
            return SyncStatus.FAILED
        return SyncStatus.PARTIAL

    async def trigger_sync(self, services: Optional[Iterable[str]] = None) -> SyncReport:
        """
        Run the requested services concurrently, then the metrics engine.

        Never raises for a provider failure; the report tells success,
        partial and total failure apart.

        Raises:
            InvalidSyncRequestError: unknown service name
        """
        requested = self.parse_services(services if services is not None else ["gitlab", "clickup"])
        started_at = utcnow()
        runs = await self._create_queued_runs(requested)
        logger.info(f"Sync triggered for {', '.join(s.value for s in requested)}")

        results = list(await asyncio.gather(*(self._run_service(service, run_id) for service, run_id in runs)))

        metrics_ok, metrics_error = await self._run_metrics()

        report = SyncReport(
            status=self._overall_status(results),
            results=results,
            metrics_ok=metrics_ok,
            metrics_error=metrics_error,
            started_at=started_at,
            completed_at=utcnow(),
        )
        logger.info(
            f"Sync finished: {report.status.value} - "
            + ", ".join(f"{r.service}={r.status}" for r in results)
        )
        return report

    # ------------------------------------------------------------------
    # control and queries
    # ------------------------------------------------------------------

    async def cancel_sync(self, run_id: Union[str, uuid.UUID]) -> SyncLogInfo:
        """
        Mark a RUNNING sync as FAILED with a cancellation message.

        The connector is asked to stop before its next page; requests in
        flight finish or time out on their own.

        Raises:
            SyncNotFoundError: unknown run id
            InvalidSyncStateError: the run is not RUNNING
        """
        try:
            run_uuid = run_id if isinstance(run_id, uuid.UUID) else uuid.UUID(str(run_id))
        except ValueError:
            raise SyncNotFoundError(f"Sync run {run_id} not found", context={"run_id": run_id})

        async with self.session_factory() as session:
            row = (await session.execute(select(SyncLog).where(SyncLog.run_id == run_uuid))).scalar_one_or_none()
            if row is None:
                raise SyncNotFoundError(f"Sync run {run_id} not found", context={"run_id": run_id})
            if row.status != SyncStatus.RUNNING:
                raise InvalidSyncStateError(
                    f"Sync run {run_id} is {row.status.value}, not RUNNING",
                    context={"run_id": run_id, "status": row.status.value}
                )

            completed_at = utcnow()
            result = await session.execute(
                update(SyncLog)
                .where(SyncLog.run_id == run_uuid, SyncLog.status == SyncStatus.RUNNING)
                .values(
                    status=SyncStatus.FAILED,
                    completed_at=completed_at,
                    duration_ms=int((completed_at - row.started_at).total_seconds() * 1000),
                    message=CANCELLED_MESSAGE,
                )
            )
            await session.commit()
            if result.rowcount == 0:
                raise InvalidSyncStateError(
                    f"Sync run {run_id} finished before it could be cancelled",
                    context={"run_id": run_id}
                )

            row = (await session.execute(
                select(SyncLog).where(SyncLog.run_id == run_uuid).execution_options(populate_existing=True)
            )).scalar_one()

        token = self._tokens.get(run_uuid)
        if token is not None:
            token.cancel(CANCELLED_MESSAGE)

        logger.info(f"Cancelled sync run {run_id}")
        return SyncLogInfo.from_orm(row)

    async def get_last_successful_sync(self, service: SyncService) -> Optional[datetime]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.max(SyncLog.completed_at)).where(
                    SyncLog.service == service, SyncLog.status == SyncStatus.SUCCESS
                )
            )
            return result.scalar_one_or_none()

    async def get_sync_status(
        self,
        limit: int = 10,
        service: Optional[str] = None,
        status: Optional[str] = None
    ) -> SyncStatusResponse:
        service_filter = self.parse_services([service])[0] if service else None
        status_filter = self._parse_status(status)

        async with self.session_factory() as session:
            running_count = (await session.execute(
                select(func.count(SyncLog.id)).where(SyncLog.status == SyncStatus.RUNNING)
            )).scalar_one()

            stmt = select(SyncLog).order_by(SyncLog.started_at.desc(), SyncLog.id.desc()).limit(limit)
            if service_filter is not None:
                stmt = stmt.where(SyncLog.service == service_filter)
            if status_filter is not None:
                stmt = stmt.where(SyncLog.status == status_filter)
            recent = (await session.execute(stmt)).scalars().all()

            grouped = await session.execute(
                select(SyncLog.service, SyncLog.status, func.count(SyncLog.id))
                .group_by(SyncLog.service, SyncLog.status)
            )
            stats_by_service: Dict[str, ServiceSummary] = {}
            for svc, st, count in grouped.all():
                summary = stats_by_service.setdefault(svc.value.lower(), ServiceSummary())
                summary.total_runs += count
                if st == SyncStatus.SUCCESS:
                    summary.successful_runs += count
                elif st == SyncStatus.FAILED:
                    summary.failed_runs += count
                elif st == SyncStatus.PARTIAL:
                    summary.partial_runs += count

        last_success: Dict[str, Optional[datetime]] = {}
        for svc in SyncService:
            last_success[svc.value.lower()] = await self.get_last_successful_sync(svc)
            if svc.value.lower() in stats_by_service:
                stats_by_service[svc.value.lower()].last_successful_sync = last_success[svc.value.lower()]

        return SyncStatusResponse(
            is_running=running_count > 0,
            running_count=running_count,
            last_successful_sync=last_success,
            recent_runs=[SyncLogInfo.from_orm(row) for row in recent],
            stats_by_service=stats_by_service,
        )

    async def get_sync_statistics(self, window_days: Optional[int] = None) -> SyncStatistics:
        """Success rate, durations and record counts over the trailing window"""
        if window_days is None:
            window_days = self.config.stats_window_days
        if window_days < 1:
            raise InvalidSyncRequestError("window_days must be positive", context={"window_days": window_days})

        since = utcnow() - timedelta(days=window_days)
        async with self.session_factory() as session:
            rows = (await session.execute(
                select(SyncLog).where(SyncLog.started_at >= since).order_by(SyncLog.started_at)
            )).scalars().all()

        def tally(logs: List[SyncLog]) -> dict:
            finished = [log for log in logs if log.status.is_terminal]
            success = sum(1 for log in finished if log.status == SyncStatus.SUCCESS)
            durations = [log.duration_ms for log in finished if log.duration_ms is not None]
            return {
                "total": len(logs),
                "success": success,
                "failed": sum(1 for log in finished if log.status == SyncStatus.FAILED),
                "partial": sum(1 for log in finished if log.status == SyncStatus.PARTIAL),
                "success_rate": round(success / len(finished) * 100, 2) if finished else 0.0,
                "avg_duration_ms": round(sum(durations) / len(durations), 2) if durations else 0.0,
                "records": sum(log.records_processed or 0 for log in logs),
            }

        overall = tally(rows)

        by_service_rows: Dict[SyncService, List[SyncLog]] = defaultdict(list)
        by_day_rows: Dict[date, List[SyncLog]] = defaultdict(list)
        for row in rows:
            by_service_rows[row.service].append(row)
            by_day_rows[row.started_at.date()].append(row)

        by_service = []
        for svc, logs in sorted(by_service_rows.items(), key=lambda item: item[0].value):
            t = tally(logs)
            by_service.append(ServiceStatistics(
                service=svc.value.lower(),
                total_syncs=t["total"],
                successful_syncs=t["success"],
                failed_syncs=t["failed"],
                partial_syncs=t["partial"],
                success_rate=t["success_rate"],
                avg_duration_ms=t["avg_duration_ms"],
                records_processed=t["records"],
            ))

        daily = []
        for day, logs in sorted(by_day_rows.items()):
            t = tally(logs)
            daily.append(DailySyncStatistics(
                date=day,
                total_syncs=t["total"],
                successful_syncs=t["success"],
                failed_syncs=t["failed"],
                partial_syncs=t["partial"],
                records_processed=t["records"],
            ))

        return SyncStatistics(
            window_days=window_days,
            total_syncs=overall["total"],
            successful_syncs=overall["success"],
            failed_syncs=overall["failed"],
            partial_syncs=overall["partial"],
            success_rate=overall["success_rate"],
            avg_duration_ms=overall["avg_duration_ms"],
            total_records_processed=overall["records"],
            by_service=by_service,
            daily=daily,
        )

    async def get_health(self) -> HealthResponse:
        configured = {
            SyncService.GITLAB: self.config.gitlab.is_configured,
            SyncService.CLICKUP: self.config.clickup.is_configured,
        }
        providers = []
        async with self.session_factory() as session:
            for svc, is_configured in configured.items():
                last = (await session.execute(
                    select(SyncLog)
                    .where(SyncLog.service == svc, SyncLog.completed_at.is_not(None))
                    .order_by(SyncLog.completed_at.desc())
                    .limit(1)
                )).scalar_one_or_none()
                providers.append(ProviderHealth(
                    service=svc.value.lower(),
                    configured=is_configured,
                    last_sync_at=last.completed_at if last else None,
                    last_status=last.status if last else None,
                ))

        configured_providers = [p for p in providers if p.configured]
        is_healthy = bool(configured_providers) and all(
            p.last_status != SyncStatus.FAILED for p in configured_providers
        )
        return HealthResponse(
            is_healthy=is_healthy,
            providers=providers,
            sync_interval_hours=self.config.interval_hours,
            checked_at=utcnow(),
        )
