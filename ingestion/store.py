"""
Canonical store writer with upsert-by-natural-key semantics (idempotency).

Every write is an INSERT ... ON CONFLICT DO UPDATE keyed by the entity's
permanent correlation id, so replaying a sync converges instead of
duplicating. Counters on User are always recomputed from rows.
"""

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple, Type
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, delete, func, distinct, case
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from models import (
    User,
    SYSTEM_USER_EMAIL,
    Project,
    Commit,
    Task,
    TaskAssignee,
    TimeEntry,
    CodeStats,
    SystemMetrics,
)
from models.base import Base, SyncService, COMPLETED_TASK_STATUSES
from schemas.normalized import (
    UserIdentity,
    ProjectCreate,
    CommitCreate,
    ContributorSummary,
    TaskCreate,
    TimeEntryCreate,
)
from analytics.scoring import interim_productivity_score
from core.exceptions import PersistenceError
from core.timeutils import utcnow, start_of_day
import logging

logger = logging.getLogger(__name__)


# Tables written by each connector; used for the approximate records-processed count
SERVICE_TABLES: Dict[SyncService, Tuple[Type[Base], ...]] = {
    SyncService.GITLAB: (Project, Commit),
    SyncService.CLICKUP: (Task, TimeEntry),
}


class CanonicalStore:
    """
    Write access to the canonical store for one session.

    Ensures:
    - No duplicate rows on repeated runs
    - Updates existing records if upstream data changes
    - Counters derived from rows, never accumulated
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------

    def _insert(self, model):
        """INSERT construct for the bound dialect (PostgreSQL in production, SQLite in tests)"""
        dialect = self.db.bind.dialect.name
        if dialect == "postgresql":
            return postgresql.insert(model)
        if dialect == "sqlite":
            return sqlite.insert(model)
        raise PersistenceError(
            "Upserts are not supported on this database",
            context={"dialect": dialect}
        )

    async def _execute(self, stmt, table_name: str, entity_id):
        try:
            return await self.db.execute(stmt)
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Failed to write {table_name}",
                context={"operation": "UPSERT", "table_name": table_name, "entity_id": entity_id},
                original_exception=e
            )

    async def _reload(self, model, *criteria):
        result = await self.db.execute(
            select(model).where(*criteria).execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def commit(self) -> None:
        await self.db.commit()

    async def rollback(self) -> None:
        await self.db.rollback()

    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------

    async def upsert_user(self, identity: UserIdentity, seen_at: Optional[datetime] = None) -> User:
        """
        Resolve-or-create a user by email.

        Profile fields are only overwritten when the provider supplies a value;
        last_seen only moves forward.
        """
        now = utcnow()
        values = {
            "email": identity.email,
            "name": identity.name or identity.default_username,
            "username": identity.default_username,
            "avatar": identity.avatar,
            "gitlab_id": identity.gitlab_id,
            "clickup_id": identity.clickup_id,
            "last_seen": seen_at or now,
            "created_at": now,
            "updated_at": now,
        }
        stmt = self._insert(User).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["email"],
            set_={
                "name": func.coalesce(stmt.excluded.name, User.name),
                "username": func.coalesce(User.username, stmt.excluded.username),
                "avatar": func.coalesce(stmt.excluded.avatar, User.avatar),
                "gitlab_id": func.coalesce(stmt.excluded.gitlab_id, User.gitlab_id),
                "clickup_id": func.coalesce(stmt.excluded.clickup_id, User.clickup_id),
                "last_seen": case(
                    (stmt.excluded.last_seen > User.last_seen, stmt.excluded.last_seen),
                    else_=func.coalesce(User.last_seen, stmt.excluded.last_seen),
                ),
                "updated_at": stmt.excluded.updated_at,
            }
        )
        await self._execute(stmt, "users", identity.email)
        return await self._reload(User, User.email == identity.email)

    async def ensure_system_user(self) -> User:
        """The reserved owner of unassigned tasks; inactive so metrics skip it"""
        now = utcnow()
        stmt = self._insert(User).values(
            email=SYSTEM_USER_EMAIL,
            name="Unassigned",
            username="unassigned",
            is_active=False,
            created_at=now,
            updated_at=now,
        ).on_conflict_do_nothing(index_elements=["email"])
        await self._execute(stmt, "users", SYSTEM_USER_EMAIL)
        return await self._reload(User, User.email == SYSTEM_USER_EMAIL)

    async def reconcile_contributor(self, user_id: int, summary: ContributorSummary) -> None:
        """
        Raise the contributor-summary figures to the reported values.

        max() keeps a contributor seen in several projects from being counted
        once per project.
        """
        for column, value in (
            (User.upstream_commits, summary.commits),
            (User.upstream_lines_added, summary.additions),
            (User.upstream_lines_deleted, summary.deletions),
        ):
            await self._execute(
                update(User)
                .where(User.id == user_id, column < value)
                .values({column: value}),
                "users",
                user_id,
            )

    # ------------------------------------------------------------------
    # gitlab entities
    # ------------------------------------------------------------------

    async def upsert_project(self, project: ProjectCreate) -> Project:
        now = utcnow()
        values = project.dict()
        values.update({
            "created_at": project.created_at or now,
            "updated_at": now,
            "synced_at": now,
            "is_active": True,
        })
        stmt = self._insert(Project).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={
                "name": stmt.excluded.name,
                "description": stmt.excluded.description,
                "namespace": stmt.excluded.namespace,
                "visibility": stmt.excluded.visibility,
                "web_url": stmt.excluded.web_url,
                "last_activity": stmt.excluded.last_activity,
                "total_commits": stmt.excluded.total_commits,
                "is_active": stmt.excluded.is_active,
                "updated_at": stmt.excluded.updated_at,
                "synced_at": stmt.excluded.synced_at,
            }
        )
        await self._execute(stmt, "projects", project.id)
        return await self._reload(Project, Project.id == project.id)

    async def upsert_commit(self, commit: CommitCreate, user_id: int) -> Commit:
        """Commits are append-only; only message and diff stats follow upstream amendments"""
        now = utcnow()
        values = commit.dict()
        values.update({"user_id": user_id, "created_at": now, "updated_at": now, "synced_at": now})
        stmt = self._insert(Commit).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["sha"],
            set_={
                "message": stmt.excluded.message,
                "additions": stmt.excluded.additions,
                "deletions": stmt.excluded.deletions,
                "files_changed": stmt.excluded.files_changed,
                "updated_at": stmt.excluded.updated_at,
                "synced_at": stmt.excluded.synced_at,
            }
        )
        await self._execute(stmt, "commits", commit.sha)
        return await self._reload(Commit, Commit.sha == commit.sha)

    async def recompute_code_stats(self, project_id: int, since: datetime) -> int:
        """
        Rebuild daily CodeStats rows for a project from its commits.

        Rows inside the window are replaced wholesale. Returns the number of
        (user, day) rows written.
        """
        window_start = start_of_day(since)
        result = await self.db.execute(
            select(
                Commit.user_id,
                Commit.authored_at,
                Commit.additions,
                Commit.deletions,
                Commit.files_changed,
            ).where(Commit.project_id == project_id, Commit.authored_at >= window_start)
        )

        buckets: Dict[Tuple[int, datetime], Dict[str, int]] = defaultdict(
            lambda: {"lines_added": 0, "lines_deleted": 0, "files_changed": 0, "commits_count": 0}
        )
        for user_id, authored_at, additions, deletions, files_changed in result.all():
            bucket = buckets[(user_id, start_of_day(authored_at))]
            bucket["lines_added"] += additions or 0
            bucket["lines_deleted"] += deletions or 0
            bucket["files_changed"] += files_changed or 0
            bucket["commits_count"] += 1

        await self._execute(
            delete(CodeStats).where(CodeStats.project_id == project_id, CodeStats.date >= window_start),
            "code_stats",
            project_id,
        )

        now = utcnow()
        for (user_id, day), totals in buckets.items():
            stmt = self._insert(CodeStats).values(
                user_id=user_id, project_id=project_id, date=day, updated_at=now, **totals
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["user_id", "project_id", "date"],
                set_={
                    "lines_added": stmt.excluded.lines_added,
                    "lines_deleted": stmt.excluded.lines_deleted,
                    "files_changed": stmt.excluded.files_changed,
                    "commits_count": stmt.excluded.commits_count,
                    "updated_at": stmt.excluded.updated_at,
                }
            )
            await self._execute(stmt, "code_stats", f"{user_id}:{project_id}:{day.date()}")

        return len(buckets)

    # ------------------------------------------------------------------
    # clickup entities
    # ------------------------------------------------------------------

    async def upsert_task(self, task: TaskCreate, assignee_ids: List[int]) -> Task:
        """
        Upsert the task and its assignee associations.

        ``assignee_ids`` must be non-empty; the first id becomes the primary
        assignee. Associations no longer present upstream are removed.
        """
        if not assignee_ids:
            raise PersistenceError(
                "Task needs at least one assignee",
                context={"operation": "UPSERT", "table_name": "tasks", "entity_id": task.clickup_id}
            )

        now = utcnow()
        values = task.dict(exclude={"assignees"})
        values.update({"assignee_id": assignee_ids[0], "synced_at": now})
        stmt = self._insert(Task).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["clickup_id"],
            set_={
                "name": stmt.excluded.name,
                "description": stmt.excluded.description,
                "status": stmt.excluded.status,
                "priority": stmt.excluded.priority,
                "url": stmt.excluded.url,
                "due_date": stmt.excluded.due_date,
                "start_date": stmt.excluded.start_date,
                "completed_at": stmt.excluded.completed_at,
                "time_estimate": stmt.excluded.time_estimate,
                "time_spent": stmt.excluded.time_spent,
                "assignee_id": stmt.excluded.assignee_id,
                "list_id": stmt.excluded.list_id,
                "space_id": stmt.excluded.space_id,
                "folder_id": stmt.excluded.folder_id,
                "updated_at": stmt.excluded.updated_at,
                "synced_at": stmt.excluded.synced_at,
            }
        )
        await self._execute(stmt, "tasks", task.clickup_id)
        row = await self._reload(Task, Task.clickup_id == task.clickup_id)

        unique_ids = list(dict.fromkeys(assignee_ids))
        for user_id in unique_ids:
            link = self._insert(TaskAssignee).values(task_id=row.id, user_id=user_id, synced_at=now)
            link = link.on_conflict_do_update(
                index_elements=["task_id", "user_id"],
                set_={"synced_at": link.excluded.synced_at}
            )
            await self._execute(link, "task_assignees", f"{task.clickup_id}:{user_id}")

        await self._execute(
            delete(TaskAssignee).where(
                TaskAssignee.task_id == row.id,
                TaskAssignee.user_id.not_in(unique_ids),
            ),
            "task_assignees",
            task.clickup_id,
        )
        return row

    async def task_assignee_ids(self, clickup_id: str) -> List[int]:
        result = await self.db.execute(
            select(TaskAssignee.user_id)
            .join(Task, Task.id == TaskAssignee.task_id)
            .where(Task.clickup_id == clickup_id)
        )
        return list(result.scalars().all())

    async def find_task_id(self, clickup_id: Optional[str]) -> Optional[int]:
        if not clickup_id:
            return None
        result = await self.db.execute(select(Task.id).where(Task.clickup_id == clickup_id))
        return result.scalar_one_or_none()

    async def upsert_time_entry(
        self,
        entry: TimeEntryCreate,
        user_id: int,
        task_id: Optional[int]
    ) -> TimeEntry:
        now = utcnow()
        stmt = self._insert(TimeEntry).values(
            clickup_id=entry.clickup_id,
            user_id=user_id,
            task_id=task_id,
            start_time=entry.start_time,
            end_time=entry.end_time,
            duration_seconds=int(entry.duration.total_seconds()),
            description=entry.description,
            billable=entry.billable,
            created_at=entry.created_at or now,
            synced_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["clickup_id"],
            set_={
                "task_id": stmt.excluded.task_id,
                "start_time": stmt.excluded.start_time,
                "end_time": stmt.excluded.end_time,
                "duration_seconds": stmt.excluded.duration_seconds,
                "description": stmt.excluded.description,
                "billable": stmt.excluded.billable,
                "synced_at": stmt.excluded.synced_at,
            }
        )
        await self._execute(stmt, "time_entries", entry.clickup_id)
        return await self._reload(TimeEntry, TimeEntry.clickup_id == entry.clickup_id)

    # ------------------------------------------------------------------
    # recomputed counters
    # ------------------------------------------------------------------

    async def recompute_commit_totals(self, user_id: int) -> None:
        result = await self.db.execute(
            select(
                func.count(Commit.id),
                func.coalesce(func.sum(Commit.additions), 0),
                func.coalesce(func.sum(Commit.deletions), 0),
            ).where(Commit.user_id == user_id)
        )
        commits, added, deleted = result.one()
        await self._execute(
            update(User).where(User.id == user_id).values(
                total_commits=commits,
                total_lines_added=added,
                total_lines_deleted=deleted,
                updated_at=utcnow(),
            ),
            "users",
            user_id,
        )

    async def recompute_task_totals(self, user_id: int) -> None:
        result = await self.db.execute(
            select(func.count(distinct(Task.id)))
            .join(TaskAssignee, TaskAssignee.task_id == Task.id)
            .where(TaskAssignee.user_id == user_id, Task.status.in_(COMPLETED_TASK_STATUSES))
        )
        await self._execute(
            update(User).where(User.id == user_id).values(
                total_tasks_completed=result.scalar_one(),
                updated_at=utcnow(),
            ),
            "users",
            user_id,
        )

    async def recompute_time_total(self, user_id: int) -> None:
        result = await self.db.execute(
            select(func.coalesce(func.sum(TimeEntry.duration_seconds), 0))
            .where(TimeEntry.user_id == user_id)
        )
        seconds = result.scalar_one()
        await self._execute(
            update(User).where(User.id == user_id).values(
                total_time_spent=int(seconds) // 60,
                updated_at=utcnow(),
            ),
            "users",
            user_id,
        )

    async def refresh_interim_score(self, user_id: int, days: int = 30) -> float:
        """Quick 30-day estimate; the metrics engine overwrites it after the cycle"""
        since = utcnow() - timedelta(days=days)

        commits = (await self.db.execute(
            select(func.count(Commit.id)).where(Commit.user_id == user_id, Commit.authored_at >= since)
        )).scalar_one()

        tasks_completed = (await self.db.execute(
            select(func.count(distinct(Task.id)))
            .join(TaskAssignee, TaskAssignee.task_id == Task.id)
            .where(
                TaskAssignee.user_id == user_id,
                Task.status.in_(COMPLETED_TASK_STATUSES),
                Task.completed_at >= since,
            )
        )).scalar_one()

        tracked_seconds = (await self.db.execute(
            select(func.coalesce(func.sum(TimeEntry.duration_seconds), 0))
            .where(TimeEntry.user_id == user_id, TimeEntry.start_time >= since)
        )).scalar_one()

        score = interim_productivity_score(commits, tasks_completed, int(tracked_seconds) / 3600)
        await self._execute(
            update(User).where(User.id == user_id).values(productivity_score=score),
            "users",
            user_id,
        )
        return score

    async def set_productivity_score(self, user_id: int, score: float) -> None:
        await self._execute(
            update(User).where(User.id == user_id).values(productivity_score=score, updated_at=utcnow()),
            "users",
            user_id,
        )

    async def upsert_system_metrics(self, day: datetime, totals: Dict[str, int]) -> SystemMetrics:
        """One row per calendar day; a later cycle on the same day overwrites it"""
        day = start_of_day(day)
        stmt = self._insert(SystemMetrics).values(date=day, updated_at=utcnow(), **totals)
        stmt = stmt.on_conflict_do_update(
            index_elements=["date"],
            set_={
                **{name: getattr(stmt.excluded, name) for name in totals},
                "updated_at": stmt.excluded.updated_at,
            }
        )
        await self._execute(stmt, "system_metrics", day.date())
        return await self._reload(SystemMetrics, SystemMetrics.date == day)

    # ------------------------------------------------------------------
    # run accounting
    # ------------------------------------------------------------------

    async def count_touched_since(self, service: SyncService, since: datetime) -> int:
        """Rows of the service's tables whose synced_at is at or after ``since``"""
        total = 0
        for model in SERVICE_TABLES[service]:
            result = await self.db.execute(
                select(func.count()).select_from(model).where(model.synced_at >= since)
            )
            total += result.scalar_one()
        return total

