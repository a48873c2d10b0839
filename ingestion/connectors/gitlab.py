"""
GitLab connector: projects, commits with diff stats, contributor summaries.

Flow per project:
1. Fetch project detail (with statistics) and upsert Project
2. Page through commits authored in the trailing window
3. For each commit resolve the author, fetch missing diff stats, upsert Commit
4. Reconcile contributor summaries onto User
5. Rebuild daily CodeStats for the trailing week
"""

from datetime import timedelta
from typing import Any, List, Optional
import httpx
from sqlalchemy.ext.asyncio import async_sessionmaker
from core.config import GitLabConfig
from core.exceptions import (
    ConfigurationError,
    NormalizationError,
    ProviderError,
    TransientNetworkError,
)
from core.timeutils import utcnow
from ingestion.connectors.base import BaseConnector, CancellationToken
from ingestion.http_client import RateLimitedFetcher
from ingestion.rate_limiter import Clock, TokenBucket
from ingestion.store import CanonicalStore
from ingestion.transformers.normalizer import GitLabNormalizer
from models.base import SyncService
from schemas.normalized import DiffStats, UserIdentity
import logging

logger = logging.getLogger(__name__)


class GitLabConnector(BaseConnector):
    """
    Sync GitLab projects into the canonical store.

    Projects come from the configured allow-list, or from every project the
    token is a member of. Up to ``config.concurrency`` projects run at once.
    """

    service = SyncService.GITLAB
    unit_name = "project"

    def __init__(
        self,
        config: GitLabConfig,
        session_factory: async_sessionmaker,
        cancel_token: Optional[CancellationToken] = None,
        run_id: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Clock] = None
    ):
        if not config.is_configured:
            raise ConfigurationError(
                "GitLab URL and access token are required",
                context={"provider": "gitlab", "missing": "GITLAB_URL/GITLAB_ACCESS_TOKEN"}
            )

        fetcher = RateLimitedFetcher(
            provider="gitlab",
            base_url=config.api_base_url,
            headers={"Authorization": f"Bearer {config.access_token}"},
            rate_limiter=TokenBucket.from_interval(config.min_request_interval_ms, clock=clock),
            timeout=config.timeout_seconds,
            transport=transport,
        )
        super().__init__(session_factory, fetcher, cancel_token=cancel_token, run_id=run_id)
        self.config = config
        self.normalizer = GitLabNormalizer()

    async def preflight(self) -> None:
        user = await self.fetcher.get("/user")
        logger.info(f"Connected to GitLab as {user.get('username') if isinstance(user, dict) else 'unknown'}")

    async def list_accessible_projects(self) -> List[int]:
        """All project ids the token is a member of"""
        project_ids: List[int] = []
        page = 1
        while True:
            self.check_cancelled(operation="list_projects", page=page)
            projects = await self.fetcher.get(
                "/projects",
                params={
                    "membership": "true",
                    "simple": "true",
                    "order_by": "last_activity_at",
                    "per_page": self.config.page_size,
                    "page": page,
                }
            )
            if not isinstance(projects, list):
                raise NormalizationError(
                    "Projects page is not a list",
                    context={"provider": "gitlab", "page": page}
                )
            project_ids.extend(int(p["id"]) for p in projects if isinstance(p, dict) and p.get("id"))
            if len(projects) < self.config.page_size:
                break
            page += 1
        return project_ids

    async def sync(self) -> None:
        project_ids = list(self.config.project_ids) or await self.list_accessible_projects()
        self.result.units_total = len(project_ids)
        logger.info(f"Syncing {len(project_ids)} GitLab projects")

        await self.gather_bounded(
            project_ids,
            lambda project_id: self.run_unit(project_id, lambda: self.sync_project(project_id)),
            self.config.concurrency,
        )

    async def sync_project(self, project_id: int) -> None:
        async with self.session_factory() as session:
            store = self.new_store(session)

            payload = await self.fetcher.get(f"/projects/{project_id}", params={"statistics": "true"})
            project = self.normalizer.normalize_project(payload)
            await store.upsert_project(project)
            await store.commit()
            self.result.record_entity("projects")

            since = utcnow() - timedelta(days=self.config.lookback_days)
            page = 1
            while True:
                self.check_cancelled(project=project_id, page=page)
                commits = await self.fetcher.get(
                    f"/projects/{project_id}/repository/commits",
                    params={
                        "since": since.isoformat() + "Z",
                        "per_page": self.config.page_size,
                        "page": page,
                        "with_stats": "true",
                    }
                )
                if not isinstance(commits, list):
                    raise NormalizationError(
                        "Commits page is not a list",
                        context={"provider": "gitlab", "project": project_id, "page": page}
                    )

                for raw_commit in commits:
                    await self._process_commit(store, project_id, raw_commit)

                if len(commits) < self.config.page_size:
                    break
                page += 1

            await self._sync_contributors(store, project_id)

            rows = await store.recompute_code_stats(
                project_id, utcnow() - timedelta(days=self.config.code_stats_days)
            )
            await store.commit()
            logger.info(f"Project {project_id} ({project.name}): rebuilt {rows} daily code stat rows")

    async def _fetch_commit_stats(self, project_id: int, sha: str) -> DiffStats:
        """Stats for a commit listed without them; an unavailable detail degrades to zero"""
        try:
            detail = await self.fetcher.get(f"/projects/{project_id}/repository/commits/{sha}")
        except (ProviderError, TransientNetworkError) as e:
            logger.warning(f"Failed to get stats for commit {sha}: {e.message}")
            return DiffStats()
        stats = detail.get("stats") if isinstance(detail, dict) else None
        if stats is None:
            return DiffStats()
        return self.normalizer.normalize_stats(sha, stats)

    async def _process_commit(self, store: CanonicalStore, project_id: int, raw_commit: Any) -> None:
        sha = raw_commit.get("id") if isinstance(raw_commit, dict) else None
        try:
            if not isinstance(raw_commit, dict):
                raise NormalizationError("Commit entry is not an object", context={"provider": "gitlab"})

            stats = None
            if raw_commit.get("stats") is None and sha:
                stats = await self._fetch_commit_stats(project_id, sha)

            commit = self.normalizer.normalize_commit(raw_commit, project_id, stats)
            author = self.normalizer.commit_author(commit)

            user = await store.upsert_user(author, seen_at=commit.authored_at)
            await store.upsert_commit(commit, user.id)
            await store.recompute_commit_totals(user.id)
            await store.refresh_interim_score(user.id)
            await store.commit()
            self.result.record_entity("commits")

        except Exception as e:
            await store.rollback()
            context = self.error_context(entity="commit", entity_id=sha, project=project_id)
            self.result.record_entity_error(e, **context)
            logger.error(
                f"Failed to process commit {sha} in project {project_id}: {e}",
                extra={"error_context": context}
            )

    async def _sync_contributors(self, store: CanonicalStore, project_id: int) -> None:
        """Contributor summaries are advisory; an unavailable endpoint is only logged"""
        try:
            payload = await self.fetcher.get(
                f"/projects/{project_id}/repository/contributors",
                params={"order_by": "commits", "sort": "desc"}
            )
            contributors = self.normalizer.normalize_contributors(payload)
        except (ProviderError, TransientNetworkError, NormalizationError) as e:
            logger.warning(f"Failed to sync contributors for project {project_id}: {e.message}")
            return

        for contributor in contributors:
            try:
                user = await store.upsert_user(UserIdentity(email=contributor.email, name=contributor.name))
                await store.reconcile_contributor(user.id, contributor)
                await store.commit()
                self.result.record_entity("contributors")
            except Exception as e:
                await store.rollback()
                context = self.error_context(entity="contributor", entity_id=contributor.email, project=project_id)
                self.result.record_entity_error(e, **context)
                logger.error(
                    f"Failed to reconcile contributor {contributor.email}: {e}",
                    extra={"error_context": context}
                )

