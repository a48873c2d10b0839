"""
ClickUp connector: team topology, tasks and time tracking.

Spaces are synced with a tighter fan-out than GitLab projects because the
ClickUp rate limit is stricter. Lists inside a space run sequentially.
Time entries are fetched team-wide once the spaces are done so that task
references resolve against freshly synced tasks.
"""

from datetime import timedelta
from typing import Any, Dict, List, Optional
import httpx
from sqlalchemy.ext.asyncio import async_sessionmaker
from core.config import ClickUpConfig
from core.exceptions import ConfigurationError, NotFoundError, NormalizationError
from core.timeutils import utcnow, to_epoch_millis
from ingestion.connectors.base import BaseConnector, CancellationToken
from ingestion.http_client import RateLimitedFetcher
from ingestion.rate_limiter import Clock, TokenBucket
from ingestion.store import CanonicalStore
from ingestion.transformers.normalizer import ClickUpNormalizer
from models.base import SyncService
import logging

logger = logging.getLogger(__name__)


class ClickUpConnector(BaseConnector):
    """
    Sync ClickUp spaces and time entries into the canonical store.

    Tasks with several assignees are stored once and linked to every
    assignee; tasks with none belong to the reserved system user.
    """

    service = SyncService.CLICKUP
    unit_name = "space"

    def __init__(
        self,
        config: ClickUpConfig,
        session_factory: async_sessionmaker,
        cancel_token: Optional[CancellationToken] = None,
        run_id: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Clock] = None
    ):
        if not config.is_configured:
            raise ConfigurationError(
                "ClickUp API token and team id are required",
                context={"provider": "clickup", "missing": "CLICKUP_API_TOKEN/CLICKUP_TEAM_ID"}
            )

        fetcher = RateLimitedFetcher(
            provider="clickup",
            base_url=config.base_url,
            headers={"Authorization": config.api_token},
            rate_limiter=TokenBucket.from_interval(config.min_request_interval_ms, clock=clock),
            timeout=config.timeout_seconds,
            transport=transport,
        )
        super().__init__(session_factory, fetcher, cancel_token=cancel_token, run_id=run_id)
        self.config = config
        self.normalizer = ClickUpNormalizer()
        self.system_user_id: Optional[int] = None

    async def preflight(self) -> None:
        """The configured team must be visible to the token"""
        payload = await self.fetcher.get("/team")
        teams = payload.get("teams", []) if isinstance(payload, dict) else []
        team_ids = {str(team.get("id")) for team in teams if isinstance(team, dict)}
        if str(self.config.team_id) not in team_ids:
            raise NotFoundError(
                f"ClickUp team {self.config.team_id} is not accessible",
                context={"provider": "clickup", "team_id": self.config.team_id},
                status_code=404
            )

    async def list_spaces(self) -> List[str]:
        """All space ids under the configured team"""
        payload = await self.fetcher.get(
            f"/team/{self.config.team_id}/space", params={"archived": "false"}
        )
        spaces = payload.get("spaces", []) if isinstance(payload, dict) else []
        return [str(space["id"]) for space in spaces if isinstance(space, dict) and space.get("id")]

    async def resolve_system_user(self) -> int:
        """Id of the reserved owner of unassigned tasks, created on first use"""
        if self.system_user_id is None:
            async with self.session_factory() as session:
                store = self.new_store(session)
                system_user = await store.ensure_system_user()
                await store.commit()
                self.system_user_id = system_user.id
        return self.system_user_id

    async def sync(self) -> None:
        await self.resolve_system_user()

        space_ids = list(self.config.space_ids) or await self.list_spaces()
        # the team-wide time entry pass counts as one more unit
        self.result.units_total = len(space_ids) + 1
        logger.info(f"Syncing {len(space_ids)} ClickUp spaces")

        await self.gather_bounded(
            space_ids,
            lambda space_id: self.run_unit(space_id, lambda: self.sync_space(space_id)),
            self.config.concurrency,
        )
        await self.run_unit("time_entries", self.sync_time_entries)

    async def _space_lists(self, space_id: str) -> List[Dict[str, Any]]:
        """Folderless lists plus the lists inside every folder"""
        lists: List[Dict[str, Any]] = []

        payload = await self.fetcher.get(f"/space/{space_id}/list", params={"archived": "false"})
        lists.extend(payload.get("lists", []) if isinstance(payload, dict) else [])

        payload = await self.fetcher.get(f"/space/{space_id}/folder", params={"archived": "false"})
        for folder in payload.get("folders", []) if isinstance(payload, dict) else []:
            if isinstance(folder, dict):
                lists.extend(folder.get("lists") or [])

        return [task_list for task_list in lists if isinstance(task_list, dict) and task_list.get("id")]

    async def sync_space(self, space_id: str) -> None:
        await self.resolve_system_user()
        space = await self.fetcher.get(f"/space/{space_id}")
        space_name = space.get("name") if isinstance(space, dict) else space_id
        lists = await self._space_lists(space_id)
        logger.info(f"Space {space_id} ({space_name}): {len(lists)} lists")

        async with self.session_factory() as session:
            store = self.new_store(session)
            for task_list in lists:
                list_id = str(task_list["id"])
                try:
                    await self.sync_list(store, list_id, space_id)
                except (NotFoundError, NormalizationError) as e:
                    context = self.error_context(entity="list", entity_id=list_id, space=space_id)
                    self.result.record_entity_error(e, **context)
                    logger.error(
                        f"Failed to sync list {list_id} in space {space_id}: {e.message}",
                        extra={"error_context": context}
                    )

    async def sync_list(self, store: CanonicalStore, list_id: str, space_id: str) -> None:
        since = utcnow() - timedelta(days=self.config.lookback_days)
        page = 0
        while True:
            self.check_cancelled(space=space_id, list=list_id, page=page)
            payload = await self.fetcher.get(
                f"/list/{list_id}/task",
                params={
                    "include_closed": "true",
                    "include_subtasks": "true",
                    "date_updated_gt": to_epoch_millis(since),
                    "page": page,
                    "limit": self.config.page_size,
                }
            )
            if not isinstance(payload, dict):
                raise NormalizationError(
                    "Tasks page is not an object",
                    context={"provider": "clickup", "list": list_id, "page": page}
                )

            tasks = payload.get("tasks") or []
            for raw_task in tasks:
                await self._process_task(store, raw_task, space_id)

            if not tasks or len(tasks) < self.config.page_size or payload.get("last_page"):
                break
            page += 1

    async def _process_task(self, store: CanonicalStore, raw_task: Any, space_id: str) -> None:
        task_id = raw_task.get("id") if isinstance(raw_task, dict) else None
        try:
            if not isinstance(raw_task, dict):
                raise NormalizationError("Task entry is not an object", context={"provider": "clickup"})

            task = self.normalizer.normalize_task(raw_task, space_id=space_id)

            assignee_ids = []
            for identity in task.assignees:
                user = await store.upsert_user(identity)
                assignee_ids.append(user.id)
            if not assignee_ids:
                assignee_ids = [self.system_user_id]

            # users dropped from the task need their totals recomputed too
            previous_ids = await store.task_assignee_ids(task.clickup_id)
            await store.upsert_task(task, assignee_ids)
            for user_id in dict.fromkeys(assignee_ids + previous_ids):
                await store.recompute_task_totals(user_id)
                if user_id != self.system_user_id:
                    await store.refresh_interim_score(user_id)
            await store.commit()
            self.result.record_entity("tasks")

        except Exception as e:
            await store.rollback()
            context = self.error_context(entity="task", entity_id=task_id, space=space_id)
            self.result.record_entity_error(e, **context)
            logger.error(
                f"Failed to process task {task_id}: {e}",
                extra={"error_context": context}
            )

    async def sync_time_entries(self) -> None:
        """Team-wide time entries for the trailing window"""
        self.check_cancelled(operation="time_entries")
        end = utcnow()
        start = end - timedelta(days=self.config.lookback_days)
        payload = await self.fetcher.get(
            f"/team/{self.config.team_id}/time_entries",
            params={"start_date": to_epoch_millis(start), "end_date": to_epoch_millis(end)}
        )
        entries = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(entries, list):
            raise NormalizationError(
                "Time entries payload has no data list",
                context={"provider": "clickup", "team_id": self.config.team_id}
            )

        async with self.session_factory() as session:
            store = self.new_store(session)
            for raw_entry in entries:
                await self._process_time_entry(store, raw_entry)

        logger.info(f"Processed {len(entries)} ClickUp time entries")

    async def _process_time_entry(self, store: CanonicalStore, raw_entry: Any) -> None:
        entry_id = raw_entry.get("id") if isinstance(raw_entry, dict) else None
        try:
            if not isinstance(raw_entry, dict):
                raise NormalizationError("Time entry is not an object", context={"provider": "clickup"})

            entry = self.normalizer.normalize_time_entry(raw_entry)
            user = await store.upsert_user(entry.user)
            task_id = await store.find_task_id(entry.task_clickup_id)

            await store.upsert_time_entry(entry, user.id, task_id)
            await store.recompute_time_total(user.id)
            await store.refresh_interim_score(user.id)
            await store.commit()
            self.result.record_entity("time_entries")

        except Exception as e:
            await store.rollback()
            context = self.error_context(entity="time_entry", entity_id=entry_id)
            self.result.record_entity_error(e, **context)
            logger.error(
                f"Failed to process time entry {entry_id}: {e}",
                extra={"error_context": context}
            )
