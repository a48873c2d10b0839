"""
Abstract base class for provider connectors
"""

import asyncio
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from core.exceptions import SyncEngineError, SyncCancelledError
from ingestion.http_client import RateLimitedFetcher
from ingestion.store import CanonicalStore
from models.base import SyncService
import logging

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ERROR_SAMPLES = 20


class CancellationToken:
    """
    Cooperative cancellation flag.

    Connectors check it before requesting the next page; in-flight requests
    are left to finish or time out.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, **context: Any) -> None:
        if self._event.is_set():
            raise SyncCancelledError(self.reason or "Sync cancelled", context=context)


@dataclass
class ConnectorResult:
    """What one connector run did, reported back to the orchestrator"""
    service: SyncService
    units_total: int = 0
    units_failed: int = 0
    entities_processed: int = 0
    entities_failed: int = 0
    counts: Counter = field(default_factory=Counter)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def has_failures(self) -> bool:
        return self.units_failed > 0 or self.entities_failed > 0

    @property
    def all_units_failed(self) -> bool:
        return self.units_total > 0 and self.units_failed == self.units_total

    def _sample(self, error: Exception, **context: Any) -> None:
        if len(self.errors) >= MAX_ERROR_SAMPLES:
            return
        if isinstance(error, SyncEngineError):
            detail = error.to_dict()
        else:
            detail = {"error_type": type(error).__name__, "message": str(error)}
        detail.update({k: str(v) for k, v in context.items()})
        self.errors.append(detail)

    def record_entity(self, kind: str) -> None:
        self.entities_processed += 1
        self.counts[kind] += 1

    def record_entity_error(self, error: Exception, **context: Any) -> None:
        self.entities_failed += 1
        self._sample(error, **context)

    def record_unit_error(self, error: Exception, **context: Any) -> None:
        self.units_failed += 1
        self._sample(error, **context)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "units_total": self.units_total,
            "units_failed": self.units_failed,
            "entities_processed": self.entities_processed,
            "entities_failed": self.entities_failed,
            "counts": dict(self.counts),
            "errors": list(self.errors),
        }


class BaseConnector(ABC):
    """
    Base class for GitLab and ClickUp connectors.

    Responsibilities:
    - Own the provider fetcher for the duration of a run
    - Verify the provider is reachable before touching the store
    - Fan out over units (projects / spaces) with a concurrency bound
    - Isolate per-entity and per-unit failures
    """

    service: SyncService
    unit_name: str = "unit"

    def __init__(
        self,
        session_factory: async_sessionmaker,
        fetcher: RateLimitedFetcher,
        cancel_token: Optional[CancellationToken] = None,
        run_id: Optional[str] = None
    ):
        self.session_factory = session_factory
        self.fetcher = fetcher
        self.cancel_token = cancel_token or CancellationToken()
        self.run_id = run_id
        self.result = ConnectorResult(service=self.service)

    @abstractmethod
    async def preflight(self) -> None:
        """One cheap authenticated call; any failure aborts the run"""
        pass

    @abstractmethod
    async def sync(self) -> None:
        """Synchronize every unit, recording outcomes on ``self.result``"""
        pass

    async def run(self) -> ConnectorResult:
        """
        Run a full sync for this provider.

        Raises:
            SyncEngineError: the provider is unreachable, or every unit failed
            SyncCancelledError: the run was cancelled between pages
        """
        async with self.fetcher:
            await self.preflight()
            await self.sync()

        if self.result.all_units_failed:
            raise SyncEngineError(
                f"All {self.result.units_total} {self.unit_name}s failed",
                context={
                    "provider": self.service.value,
                    "run_id": self.run_id,
                    "first_error": self.result.errors[0]["message"] if self.result.errors else None,
                }
            )

        logger.info(
            f"{self.service.value} sync finished: {self.result.units_total - self.result.units_failed}/"
            f"{self.result.units_total} {self.unit_name}s, "
            f"{self.result.entities_processed} entities, {self.result.entities_failed} failed"
        )
        return self.result

    def new_store(self, session: AsyncSession) -> CanonicalStore:
        return CanonicalStore(session)

    def check_cancelled(self, **context: Any) -> None:
        self.cancel_token.raise_if_cancelled(provider=self.service.value, run_id=self.run_id, **context)

    def error_context(self, **context: Any) -> Dict[str, Any]:
        return {"provider": self.service.value, "run_id": self.run_id, **context}

    async def gather_bounded(
        self,
        items: Iterable[T],
        worker: Callable[[T], Awaitable[None]],
        limit: int
    ) -> None:
        """
        Run ``worker`` over ``items`` with at most ``limit`` in flight.

        Workers are expected to contain their own failures; anything that
        escapes (cancellation included) is re-raised once all siblings settle.
        """
        semaphore = asyncio.Semaphore(max(limit, 1))

        async def bounded(item: T) -> None:
            async with semaphore:
                await worker(item)

        outcomes = await asyncio.gather(*(bounded(item) for item in items), return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

    async def run_unit(self, unit_id: Any, coro_factory: Callable[[], Awaitable[None]]) -> None:
        """Run one unit; a failure is logged and counted, never propagated"""
        try:
            await coro_factory()
        except SyncCancelledError:
            raise
        except Exception as e:
            self.result.record_unit_error(e, **{self.unit_name: unit_id})
            logger.error(
                f"Failed to sync {self.service.value} {self.unit_name} {unit_id}: {e}",
                extra={"error_context": self.error_context(**{self.unit_name: unit_id})}
            )
