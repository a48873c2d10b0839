"""
Metrics Engine - recomputes productivity metrics after every sync cycle.

For every active user and for the team it computes three rolling windows:
    daily   = today
    weekly  = the trailing 7 days including today
    monthly = the trailing 30 days including today
and compares each with the immediately preceding window of equal length.

Everything is read from the canonical store; connector interim scores are
ignored and overwritten by the monthly score.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy import select, func, distinct
from core.cache import Cache, CacheKeys, CacheTTL
from core.timeutils import utcnow, start_of_day, end_of_day
from ingestion.store import CanonicalStore
from models import User, SYSTEM_USER_EMAIL, Project, Commit, Task, TaskAssignee, TimeEntry
from models.base import COMPLETED_TASK_STATUSES, OPEN_TASK_STATUSES
from analytics.scoring import (
    code_productivity_score,
    task_productivity_score,
    overall_productivity_score,
    calculate_trend,
    rank_and_percentile,
)
from schemas.metrics import (
    MetricsPeriod,
    ProductivityMetrics,
    TeamMetrics,
    TopPerformer,
    ProjectActivity,
    TrendPoint,
    UserRank,
    MetricsCycleSummary,
)
import logging

logger = logging.getLogger(__name__)


PERIOD_DAYS = {
    MetricsPeriod.DAILY: 1,
    MetricsPeriod.WEEKLY: 7,
    MetricsPeriod.MONTHLY: 30,
}

# The persisted User.productivity_score always reflects this window
SCORE_PERIOD = MetricsPeriod.MONTHLY


@dataclass(frozen=True)
class MetricWindow:
    start: datetime
    end: datetime

    @classmethod
    def for_period(cls, period: MetricsPeriod, now: datetime) -> "MetricWindow":
        days = PERIOD_DAYS[period]
        return cls(start=start_of_day(now) - timedelta(days=days - 1), end=end_of_day(now))

    def previous(self) -> "MetricWindow":
        length = self.end - self.start + timedelta(microseconds=1)
        return MetricWindow(start=self.start - length, end=self.end - length)


@dataclass
class ActivitySample:
    """Raw activity inside one window"""
    commits: int = 0
    lines_added: int = 0
    lines_deleted: int = 0
    files_changed: int = 0
    tasks_completed: int = 0
    tasks_in_progress: int = 0
    tracked_seconds: int = 0
    avg_completion_days: float = 0.0

    def scores(self) -> Tuple[float, float, float]:
        code = code_productivity_score(self.commits, self.lines_added, self.files_changed)
        task = task_productivity_score(self.tasks_completed, self.avg_completion_days, self.tasks_in_progress)
        return code, task, overall_productivity_score(code, task)


def active_users_filter():
    return (User.is_active.is_(True), User.email != SYSTEM_USER_EMAIL)


class MetricsEngine:
    """
    Productivity metrics over the canonical store.

    Usage:
        engine = MetricsEngine(session_factory, cache)
        summary = await engine.run_cycle()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        cache: Optional[Cache] = None,
        now: Callable[[], datetime] = utcnow,
        top_performers: int = 5
    ):
        self.session_factory = session_factory
        self.cache = cache
        self.now = now
        self.top_performers = top_performers

    # ------------------------------------------------------------------
    # store reads
    # ------------------------------------------------------------------

    async def _activity(
        self,
        session: AsyncSession,
        window: MetricWindow,
        user_id: Optional[int] = None
    ) -> ActivitySample:
        """Activity of one user, or of everyone when ``user_id`` is None"""
        commit_stmt = select(
            func.count(Commit.id),
            func.coalesce(func.sum(Commit.additions), 0),
            func.coalesce(func.sum(Commit.deletions), 0),
            func.coalesce(func.sum(Commit.files_changed), 0),
        ).where(Commit.authored_at >= window.start, Commit.authored_at <= window.end)
        if user_id is not None:
            commit_stmt = commit_stmt.where(Commit.user_id == user_id)
        commits, added, deleted, files = (await session.execute(commit_stmt)).one()

        completed_stmt = select(Task.id, Task.created_at, Task.completed_at).where(
            Task.status.in_(COMPLETED_TASK_STATUSES),
            Task.completed_at >= window.start,
            Task.completed_at <= window.end,
        )
        in_progress_stmt = select(func.count(distinct(Task.id))).where(
            Task.status.in_(OPEN_TASK_STATUSES),
            Task.updated_at >= window.start,
            Task.updated_at <= window.end,
        )
        if user_id is not None:
            completed_stmt = completed_stmt.join(TaskAssignee, TaskAssignee.task_id == Task.id).where(
                TaskAssignee.user_id == user_id
            )
            in_progress_stmt = in_progress_stmt.join(TaskAssignee, TaskAssignee.task_id == Task.id).where(
                TaskAssignee.user_id == user_id
            )

        completed = {row.id: row for row in (await session.execute(completed_stmt)).all()}
        in_progress = (await session.execute(in_progress_stmt)).scalar_one()

        time_stmt = select(func.coalesce(func.sum(TimeEntry.duration_seconds), 0)).where(
            TimeEntry.start_time >= window.start, TimeEntry.start_time <= window.end
        )
        if user_id is not None:
            time_stmt = time_stmt.where(TimeEntry.user_id == user_id)
        tracked = (await session.execute(time_stmt)).scalar_one()

        avg_days = 0.0
        if completed:
            total_days = sum(
                (row.completed_at - row.created_at).total_seconds() / 86400
                for row in completed.values()
            )
            avg_days = total_days / len(completed)

        return ActivitySample(
            commits=commits,
            lines_added=int(added),
            lines_deleted=int(deleted),
            files_changed=int(files),
            tasks_completed=len(completed),
            tasks_in_progress=in_progress,
            tracked_seconds=int(tracked),
            avg_completion_days=round(avg_days, 2),
        )

    async def _active_user_ids(self, session: AsyncSession) -> List[int]:
        result = await session.execute(select(User.id).where(*active_users_filter()).order_by(User.id))
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # per user
    # ------------------------------------------------------------------

    async def _user_metrics(
        self,
        session: AsyncSession,
        user_id: int,
        period: MetricsPeriod,
        now: datetime
    ) -> Tuple[ProductivityMetrics, float]:
        """Window metrics plus the previous window's overall score"""
        window = MetricWindow.for_period(period, now)
        current = await self._activity(session, window, user_id)
        previous = await self._activity(session, window.previous(), user_id)

        code, task, overall = current.scores()
        previous_overall = previous.scores()[2]

        metrics = ProductivityMetrics(
            user_id=user_id,
            period=period,
            window_start=window.start,
            window_end=window.end,
            commits=current.commits,
            lines_added=current.lines_added,
            lines_deleted=current.lines_deleted,
            files_changed=current.files_changed,
            tasks_completed=current.tasks_completed,
            tasks_in_progress=current.tasks_in_progress,
            time_tracked_minutes=current.tracked_seconds // 60,
            avg_task_completion_days=current.avg_completion_days,
            code_productivity_score=code,
            task_productivity_score=task,
            overall_productivity_score=overall,
            commits_trend=calculate_trend(current.commits, previous.commits),
            tasks_trend=calculate_trend(current.tasks_completed, previous.tasks_completed),
            productivity_trend=calculate_trend(overall, previous_overall),
        )
        return metrics, previous_overall

    async def compute_user_metrics(
        self,
        user_id: int,
        period: MetricsPeriod,
        now: Optional[datetime] = None
    ) -> ProductivityMetrics:
        async with self.session_factory() as session:
            metrics, _ = await self._user_metrics(session, user_id, period, now or self.now())
        return metrics

    # ------------------------------------------------------------------
    # team
    # ------------------------------------------------------------------

    async def _project_activity(self, session: AsyncSession, window: MetricWindow) -> List[ProjectActivity]:
        result = await session.execute(
            select(
                Project.id,
                Project.name,
                func.count(Commit.id),
                func.count(distinct(Commit.user_id)),
            )
            .join(Commit, Commit.project_id == Project.id)
            .where(
                Project.is_active.is_(True),
                Commit.authored_at >= window.start,
                Commit.authored_at <= window.end,
            )
            .group_by(Project.id, Project.name)
        )
        activity = [
            ProjectActivity(project_id=pid, name=name, commits=commits, contributors=contributors)
            for pid, name, commits, contributors in result.all()
        ]
        return sorted(activity, key=lambda item: item.commits, reverse=True)

    async def _top_performers(self, session: AsyncSession) -> List[TopPerformer]:
        result = await session.execute(
            select(User)
            .where(*active_users_filter())
            .order_by(User.productivity_score.desc(), User.id)
            .limit(self.top_performers)
        )
        return [
            TopPerformer(user_id=user.id, name=user.name, email=user.email, score=user.productivity_score)
            for user in result.scalars().all()
        ]

    async def _team_metrics(
        self,
        session: AsyncSession,
        period: MetricsPeriod,
        now: datetime,
        user_scores: Optional[Dict[int, Tuple[float, float]]] = None
    ) -> TeamMetrics:
        """
        ``user_scores`` maps user id to (current, previous) overall score for
        the period; missing scores are computed here.
        """
        window = MetricWindow.for_period(period, now)
        current = await self._activity(session, window)
        previous = await self._activity(session, window.previous())

        if user_scores is None:
            user_scores = {}
            for user_id in await self._active_user_ids(session):
                metrics, previous_overall = await self._user_metrics(session, user_id, period, now)
                user_scores[user_id] = (metrics.overall_productivity_score, previous_overall)

        if user_scores:
            avg_score = sum(s[0] for s in user_scores.values()) / len(user_scores)
            avg_previous = sum(s[1] for s in user_scores.values()) / len(user_scores)
        else:
            avg_score = avg_previous = 0.0

        active_members = (await session.execute(
            select(func.count(User.id)).where(
                *active_users_filter(),
                User.last_seen >= now - timedelta(days=7),
            )
        )).scalar_one()

        projects = await self._project_activity(session, window)

        return TeamMetrics(
            period=period,
            window_start=window.start,
            window_end=window.end,
            total_commits=current.commits,
            total_lines_added=current.lines_added,
            total_tasks_completed=current.tasks_completed,
            total_time_tracked_minutes=current.tracked_seconds // 60,
            active_members=active_members,
            active_projects=len(projects),
            avg_productivity_score=round(avg_score, 2),
            commits_trend=calculate_trend(current.commits, previous.commits),
            tasks_trend=calculate_trend(current.tasks_completed, previous.tasks_completed),
            productivity_trend=calculate_trend(round(avg_score, 2), round(avg_previous, 2)),
            top_performers=await self._top_performers(session),
            project_activity=projects,
        )

    async def compute_team_metrics(self, period: MetricsPeriod, now: Optional[datetime] = None) -> TeamMetrics:
        async with self.session_factory() as session:
            return await self._team_metrics(session, period, now or self.now())

    # ------------------------------------------------------------------
    # trends and ranking
    # ------------------------------------------------------------------

    async def _daily_series(self, session: AsyncSession, days: int, user_id: Optional[int]) -> List[TrendPoint]:
        today = start_of_day(self.now())
        points: List[TrendPoint] = []
        previous_value: Optional[float] = None

        for offset in range(days - 1, -1, -1):
            day_start = today - timedelta(days=offset)
            sample = await self._activity(session, MetricWindow(day_start, end_of_day(day_start)), user_id)
            value = float(sample.commits + 2 * sample.tasks_completed)
            change = calculate_trend(value, previous_value) if previous_value is not None else 0.0
            points.append(TrendPoint(date=day_start.date(), value=value, change=change))
            previous_value = value

        return points

    async def _cached_series(self, key: str, days: int, user_id: Optional[int]) -> List[TrendPoint]:
        if self.cache is not None:
            cached = await self.cache.get(key)
            if cached:
                return [TrendPoint(**point) for point in cached]

        async with self.session_factory() as session:
            points = await self._daily_series(session, days, user_id)

        if self.cache is not None:
            await self.cache.set(key, [point.dict() for point in points], CacheTTL.MEDIUM)
        return points

    async def user_trend_series(self, user_id: int, days: int = 30) -> List[TrendPoint]:
        """Daily value = commits + 2 x completed tasks, oldest day first"""
        return await self._cached_series(CacheKeys.user_trends(user_id, days), days, user_id)

    async def team_trend_series(self, days: int = 30) -> List[TrendPoint]:
        return await self._cached_series(CacheKeys.team_trends(days), days, None)

    async def rank_user(self, user_id: int) -> Optional[UserRank]:
        """Rank among active users by persisted score; None for unknown or inactive users"""
        async with self.session_factory() as session:
            result = await session.execute(
                select(User.id, User.productivity_score).where(*active_users_filter())
            )
            scores = {uid: score for uid, score in result.all()}

        if user_id not in scores:
            return None
        rank, percentile = rank_and_percentile(scores[user_id], scores.values())
        return UserRank(
            user_id=user_id,
            score=scores[user_id],
            rank=rank,
            percentile=percentile,
            total_users=len(scores),
        )

    # ------------------------------------------------------------------
    # cycle
    # ------------------------------------------------------------------

    async def snapshot_system_metrics(self, session: AsyncSession, now: datetime):
        """Team-wide totals for today's SystemMetrics row"""
        total_projects = (await session.execute(select(func.count(Project.id)))).scalar_one()
        commits, lines = (await session.execute(
            select(func.count(Commit.id), func.coalesce(func.sum(Commit.additions), 0))
        )).one()
        total_tasks = (await session.execute(select(func.count(Task.id)))).scalar_one()
        completed = (await session.execute(
            select(func.count(Task.id)).where(Task.status.in_(COMPLETED_TASK_STATUSES))
        )).scalar_one()
        pending = (await session.execute(
            select(func.count(Task.id)).where(Task.status.in_(OPEN_TASK_STATUSES))
        )).scalar_one()
        tracked = (await session.execute(
            select(func.coalesce(func.sum(TimeEntry.duration_seconds), 0))
        )).scalar_one()
        active_users = (await session.execute(
            select(func.count(User.id)).where(*active_users_filter())
        )).scalar_one()

        store = CanonicalStore(session)
        snapshot = await store.upsert_system_metrics(now, {
            "total_projects": total_projects,
            "total_commits": commits,
            "lines_of_code": int(lines),
            "total_tasks": total_tasks,
            "completed_tasks": completed,
            "pending_tasks": pending,
            "total_time_tracked": int(tracked),
            "active_users": active_users,
        })
        await store.commit()
        return snapshot

    async def invalidate_cache(self) -> int:
        if self.cache is None:
            return 0
        deleted = 0
        for pattern in CacheKeys.INVALIDATE_AFTER_SYNC:
            deleted += await self.cache.delete_pattern(pattern)
        logger.info(f"Invalidated {deleted} cached metric entries")
        return deleted

    async def _cache_set(self, key: str, value) -> None:
        if self.cache is not None:
            await self.cache.set(key, value, CacheTTL.LONG)

    async def run_cycle(self) -> MetricsCycleSummary:
        """
        Recompute everything for every active user, then the team.

        A failure for one user is logged and skipped; the persisted score of
        that user is left untouched.
        """
        now = self.now()
        summary = MetricsCycleSummary(started_at=now)
        logger.info("Calculating productivity metrics for all users")

        await self.invalidate_cache()

        scores_by_period: Dict[MetricsPeriod, Dict[int, Tuple[float, float]]] = {
            period: {} for period in PERIOD_DAYS
        }

        async with self.session_factory() as session:
            store = CanonicalStore(session)
            user_ids = await self._active_user_ids(session)

            for user_id in user_ids:
                try:
                    computed = {}
                    for period in PERIOD_DAYS:
                        computed[period] = await self._user_metrics(session, user_id, period, now)

                    await store.set_productivity_score(
                        user_id, computed[SCORE_PERIOD][0].overall_productivity_score
                    )
                    await store.commit()

                    for period, (metrics, previous_overall) in computed.items():
                        scores_by_period[period][user_id] = (metrics.overall_productivity_score, previous_overall)
                        await self._cache_set(
                            CacheKeys.user_metrics(user_id, period.value, metrics.window_start.date().isoformat()),
                            metrics.dict(),
                        )
                    summary.users_processed += 1

                except Exception as e:
                    await session.rollback()
                    summary.users_failed += 1
                    logger.error(
                        f"Failed to calculate metrics for user {user_id}: {e}",
                        extra={"error_context": {"user_id": user_id, "error_type": type(e).__name__}}
                    )

            for period in PERIOD_DAYS:
                try:
                    team = await self._team_metrics(session, period, now, scores_by_period[period])
                    await self._cache_set(
                        CacheKeys.team_metrics(period.value, team.window_start.date().isoformat()),
                        team.dict(),
                    )
                    summary.team_periods.append(period)
                except Exception as e:
                    await session.rollback()
                    logger.error(f"Failed to calculate team metrics for period {period.value}: {e}")

            snapshot = await self.snapshot_system_metrics(session, now)
            summary.snapshot_date = snapshot.date

        summary.completed_at = utcnow()
        logger.info(
            f"Productivity metrics calculated: {summary.users_processed} users, "
            f"{summary.users_failed} failed"
        )
        return summary
