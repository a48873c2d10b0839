"""
Metrics engine over a seeded canonical store with a fixed clock
"""

import pytest
import pytest_asyncio
from datetime import datetime, timedelta
from sqlalchemy import select
from analytics.metrics_engine import MetricsEngine
from core.cache import InMemoryCache
from models import User, SYSTEM_USER_EMAIL, Project, Commit, Task, TaskAssignee, SystemMetrics
from models.base import TaskStatus
from schemas.metrics import MetricsPeriod

NOW = datetime(2024, 1, 15, 12, 0)


@pytest_asyncio.fixture
async def seeded(db_session):
    """
    One active developer with two commits and one completed task today,
    plus the inactive system user holding nothing.
    """
    alice = User(email="alice@example.com", name="Alice", last_seen=NOW - timedelta(hours=1))
    system = User(email=SYSTEM_USER_EMAIL, name="Unassigned", is_active=False)
    project = Project(id=1, name="billing-api")
    db_session.add_all([alice, system, project])
    await db_session.flush()

    for n, hours_ago in enumerate((1, 2), start=1):
        db_session.add(Commit(
            sha=f"{n:040x}",
            author_email=alice.email,
            authored_at=NOW - timedelta(hours=hours_ago),
            additions=100,
            deletions=0,
            files_changed=10,
            project_id=project.id,
            user_id=alice.id,
        ))

    task = Task(
        clickup_id="t1",
        name="Ship invoices",
        status=TaskStatus.DONE,
        assignee_id=alice.id,
        created_at=NOW - timedelta(days=2, hours=1),
        updated_at=NOW - timedelta(hours=1),
        completed_at=NOW - timedelta(hours=1),
    )
    db_session.add(task)
    await db_session.flush()
    db_session.add(TaskAssignee(task_id=task.id, user_id=alice.id))
    await db_session.commit()
    return {"alice": alice, "system": system, "project": project}


@pytest.fixture
def cache():
    return InMemoryCache()


@pytest.fixture
def engine(session_factory, cache):
    return MetricsEngine(session_factory, cache=cache, now=lambda: NOW)


@pytest.mark.asyncio
async def test_daily_user_metrics(engine, seeded):
    metrics = await engine.compute_user_metrics(seeded["alice"].id, MetricsPeriod.DAILY)

    assert metrics.window_start == datetime(2024, 1, 15)
    assert metrics.commits == 2
    assert metrics.lines_added == 200
    assert metrics.files_changed == 20
    assert metrics.tasks_completed == 1
    assert metrics.avg_task_completion_days == 2.0
    assert metrics.code_productivity_score == 44.0
    assert metrics.task_productivity_score == 38.8
    assert metrics.overall_productivity_score == 41.4
    assert metrics.commits_trend == 100.0
    # yesterday scored the neutral 7.5 (speed component only)
    assert metrics.productivity_trend == pytest.approx(452.0)


@pytest.mark.asyncio
async def test_weekly_window_covers_seven_days(engine, seeded):
    metrics = await engine.compute_user_metrics(seeded["alice"].id, MetricsPeriod.WEEKLY)

    assert metrics.window_start == datetime(2024, 1, 9)
    assert metrics.window_end.date() == NOW.date()


@pytest.mark.asyncio
async def test_run_cycle(engine, cache, seeded, db_session):
    alice_id = seeded["alice"].id
    await cache.set(f"user:{alice_id}:metrics:daily:2020-01-01", {"stale": True})

    summary = await engine.run_cycle()

    assert summary.users_processed == 1
    assert summary.users_failed == 0
    assert len(summary.team_periods) == 3

    users = (await db_session.execute(
        select(User).order_by(User.id).execution_options(populate_existing=True)
    )).scalars().all()
    scores = {user.email: user.productivity_score for user in users}
    assert scores["alice@example.com"] == 41.4
    assert scores[SYSTEM_USER_EMAIL] == 0.0

    assert await cache.get(f"user:{alice_id}:metrics:daily:2020-01-01") is None
    daily = await cache.get(f"user:{alice_id}:metrics:daily:2024-01-15")
    assert daily["overall_productivity_score"] == 41.4
    team = await cache.get("team:metrics:weekly:2024-01-09")
    assert team["total_commits"] == 2

    snapshot = (await db_session.execute(select(SystemMetrics))).scalar_one()
    assert snapshot.date == datetime(2024, 1, 15)
    assert snapshot.total_commits == 2
    assert snapshot.lines_of_code == 200
    assert snapshot.completed_tasks == 1
    assert snapshot.active_users == 1


@pytest.mark.asyncio
async def test_run_cycle_twice_keeps_one_snapshot(engine, seeded, db_session):
    await engine.run_cycle()
    await engine.run_cycle()

    snapshots = (await db_session.execute(select(SystemMetrics))).scalars().all()
    assert len(snapshots) == 1


@pytest.mark.asyncio
async def test_team_metrics(engine, seeded):
    team = await engine.compute_team_metrics(MetricsPeriod.MONTHLY)

    assert team.active_members == 1
    assert team.active_projects == 1
    assert team.total_commits == 2
    assert team.total_tasks_completed == 1
    assert team.avg_productivity_score == 41.4
    assert [p.name for p in team.project_activity] == ["billing-api"]
    assert team.project_activity[0].contributors == 1
    assert SYSTEM_USER_EMAIL not in [p.email for p in team.top_performers]


@pytest.mark.asyncio
async def test_trend_series(engine, cache, seeded):
    points = await engine.user_trend_series(seeded["alice"].id, days=3)

    assert [p.date.isoformat() for p in points] == ["2024-01-13", "2024-01-14", "2024-01-15"]
    assert [p.value for p in points] == [0.0, 0.0, 4.0]
    assert [p.change for p in points] == [0.0, 0.0, 100.0]

    assert await cache.get(f"user:{seeded['alice'].id}:trends:3") is not None
    assert await engine.user_trend_series(seeded["alice"].id, days=3) == points

    team_points = await engine.team_trend_series(days=3)
    assert team_points[-1].value == 4.0


@pytest.mark.asyncio
async def test_rank_user(engine, db_session):
    users = [User(email=f"dev{n}@example.com", productivity_score=score) for n, score in enumerate((90, 70, 70, 40))]
    inactive = User(email="gone@example.com", productivity_score=99, is_active=False)
    db_session.add_all(users + [inactive])
    await db_session.commit()

    ranks = [await engine.rank_user(user.id) for user in users]

    assert [(r.rank, r.percentile) for r in ranks] == [(1, 100.0), (2, 75.0), (2, 75.0), (4, 25.0)]
    assert ranks[0].total_users == 4
    assert await engine.rank_user(inactive.id) is None
    assert await engine.rank_user(999) is None
