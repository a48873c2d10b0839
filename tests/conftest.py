"""
Pytest configuration and fixtures
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Union

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import NullPool

from core.config import GitLabConfig, ClickUpConfig, SyncConfig
from core.database import create_session_factory, create_tables
from core.timeutils import utcnow, to_epoch_millis
from ingestion.connectors.gitlab import GitLabConnector
from ingestion.connectors.clickup import ClickUpConnector
from ingestion.orchestrator import SyncOrchestrator
from ingestion.rate_limiter import Clock
from analytics.metrics_engine import MetricsEngine
from models.base import SyncService


def iso(value: datetime) -> str:
    return value.isoformat() + "Z"


def ms(value: datetime) -> str:
    return str(to_epoch_millis(value))


class FakeClock(Clock):
    """Advances only when something sleeps"""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: List[float] = []

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


Route = Union[Callable[[httpx.Request], httpx.Response], tuple]


class FakeProvider:
    """Route table for httpx.MockTransport keyed by URL path; unknown paths answer 404"""

    def __init__(self, prefix: str):
        self.prefix = prefix
        self.routes: Dict[str, Route] = {}
        self.requests: List[httpx.Request] = []

    def add(self, path: str, payload: Any = None, status_code: int = 200) -> None:
        self.routes[self.prefix + path] = (status_code, payload)

    def add_handler(self, path: str, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.routes[self.prefix + path] = handler

    def paths(self) -> List[str]:
        return [request.url.path[len(self.prefix):] for request in self.requests]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, json={"message": "404 Not Found"})
        if callable(route):
            return route(request)
        status_code, payload = route
        return httpx.Response(status_code, json=payload)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


# ============================================================================
# Database
# ============================================================================

@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """On-disk SQLite database per test"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'sync_test.db'}",
        echo=False,
        poolclass=NullPool,  # Disable connection pooling for tests
        connect_args={"timeout": 30},
    )
    await create_tables(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return create_session_factory(test_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ============================================================================
# Provider fakes
# ============================================================================

@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def gitlab_config():
    return GitLabConfig(
        url="https://gitlab.example.com",
        access_token="glpat-test-token",
        project_ids=(101,),
        concurrency=1,
    )


@pytest.fixture
def clickup_config():
    return ClickUpConfig(api_token="pk_test_token", team_id="9001", concurrency=1)


def gitlab_commit(
    n: int,
    email: str,
    authored_at: datetime,
    additions: int = 10,
    deletions: int = 2,
    name: Optional[str] = None,
    stats: Any = True
) -> Dict[str, Any]:
    """Commit as listed by /repository/commits?with_stats=true"""
    payload = {
        "id": f"{n:040x}",
        "title": f"Change {n}",
        "message": f"Change {n}\n\nDetails",
        "author_name": name or email.split("@")[0].title(),
        "author_email": email,
        "authored_date": iso(authored_at),
    }
    if stats is True:
        payload["stats"] = {"additions": additions, "deletions": deletions, "total": additions + deletions}
    elif stats is not None:
        payload["stats"] = stats
    return payload


@pytest.fixture
def gitlab_api():
    """One project with three recent commits from two authors"""
    now = utcnow()
    api = FakeProvider("/api/v4")
    api.add("/user", {"id": 1, "username": "sync-bot"})
    api.add("/projects/101", {
        "id": 101,
        "name": "billing-api",
        "description": "Billing service",
        "namespace": {"id": 7, "path": "platform"},
        "visibility": "private",
        "web_url": "https://gitlab.example.com/platform/billing-api",
        "created_at": iso(now - timedelta(days=400)),
        "last_activity_at": iso(now - timedelta(hours=1)),
        "statistics": {"commit_count": 3},
    })
    api.add("/projects/101/repository/commits", [
        gitlab_commit(1, "alice@example.com", now - timedelta(hours=1), additions=30, deletions=5),
        gitlab_commit(2, "Bob@Example.com", now - timedelta(hours=2), additions=12, deletions=0),
        gitlab_commit(3, "alice@example.com", now - timedelta(days=2), additions=8, deletions=8),
    ])
    api.add("/projects/101/repository/contributors", [
        {"name": "Alice", "email": "alice@example.com", "commits": 120, "additions": 5400, "deletions": 900},
        {"name": "Bob", "email": "bob@example.com", "commits": 14, "additions": 300, "deletions": 40},
    ])
    return api


ALICE = {"id": 11, "username": "alice", "email": "alice@example.com"}
BOB = {"id": 12, "username": "bob", "email": "bob@example.com", "profilePicture": "https://cdn.example.com/bob.png"}


def clickup_task(task_id: str, status: str, assignees: List[Dict[str, Any]], **fields: Any) -> Dict[str, Any]:
    now = utcnow()
    payload = {
        "id": task_id,
        "name": f"Task {task_id}",
        "text_content": f"Description of {task_id}",
        "status": {"status": status},
        "priority": None,
        "assignees": assignees,
        "date_created": ms(now - timedelta(days=2)),
        "date_updated": ms(now - timedelta(hours=1)),
        "date_closed": None,
        "list": {"id": "l1"},
        "space": {"id": "s1"},
        "url": f"https://app.clickup.com/t/{task_id}",
    }
    payload.update(fields)
    return payload


@pytest.fixture
def clickup_api():
    """
    One space with a folderless list and a folder list.

    t1: unassigned and in a workspace-specific status
    t2: completed, assigned to alice and bob
    t3: in progress, assigned to alice
    """
    now = utcnow()
    api = FakeProvider("/api/v2")
    api.add("/team", {"teams": [{"id": "9001", "name": "Acme"}]})
    api.add("/team/9001/space", {"spaces": [{"id": "s1", "name": "Engineering"}]})
    api.add("/space/s1", {"id": "s1", "name": "Engineering"})
    api.add("/space/s1/list", {"lists": [{"id": "l1", "name": "Backlog"}]})
    api.add("/space/s1/folder", {"folders": [{"id": "f1", "lists": [{"id": "l2", "name": "Docs"}]}]})
    api.add("/list/l1/task", {
        "tasks": [
            clickup_task("t1", "blocked", []),
            clickup_task(
                "t2", "complete", [ALICE, BOB],
                priority={"priority": "high"},
                date_closed=ms(now - timedelta(hours=1)),
                time_estimate="7200000",
            ),
        ],
        "last_page": True,
    })
    api.add("/list/l2/task", {
        "tasks": [clickup_task("t3", "in progress", [ALICE], list={"id": "l2"}, folder={"id": "f1"})],
        "last_page": True,
    })
    api.add("/team/9001/time_entries", {
        "data": [
            {
                "id": "e1",
                "user": ALICE,
                "task": {"id": "t2"},
                "start": ms(now - timedelta(hours=3)),
                "end": ms(now - timedelta(hours=2)),
                "duration": "3600000",
                "billable": True,
                "at": ms(now - timedelta(hours=2)),
            },
            {
                "id": "e2",
                "user": BOB,
                "task": {"id": "t3"},
                "start": ms(now - timedelta(minutes=30)),
                "duration": str(-to_epoch_millis(now - timedelta(minutes=30))),
            },
        ]
    })
    return api


@pytest.fixture
def make_gitlab(gitlab_config, session_factory, gitlab_api, fake_clock):
    def build(config: Optional[GitLabConfig] = None, **kwargs) -> GitLabConnector:
        return GitLabConnector(
            config or gitlab_config,
            session_factory,
            transport=gitlab_api.transport,
            clock=fake_clock,
            **kwargs
        )
    return build


@pytest.fixture
def make_clickup(clickup_config, session_factory, clickup_api, fake_clock):
    def build(config: Optional[ClickUpConfig] = None, **kwargs) -> ClickUpConnector:
        return ClickUpConnector(
            config or clickup_config,
            session_factory,
            transport=clickup_api.transport,
            clock=fake_clock,
            **kwargs
        )
    return build


@pytest.fixture
def make_orchestrator(session_factory, gitlab_config, clickup_config, gitlab_api, clickup_api, fake_clock):
    """Orchestrator whose connectors talk to the fake providers"""

    def build(config: Optional[SyncConfig] = None, metrics_engine: Optional[MetricsEngine] = None) -> SyncOrchestrator:
        config = config or SyncConfig(gitlab=gitlab_config, clickup=clickup_config)

        def connector_factory(service, cancel_token, run_id):
            if service == SyncService.GITLAB:
                return GitLabConnector(
                    config.gitlab, session_factory, cancel_token=cancel_token, run_id=run_id,
                    transport=gitlab_api.transport, clock=fake_clock
                )
            return ClickUpConnector(
                config.clickup, session_factory, cancel_token=cancel_token, run_id=run_id,
                transport=clickup_api.transport, clock=fake_clock
            )

        return SyncOrchestrator(
            session_factory,
            config,
            metrics_engine=metrics_engine,
            connector_factory=connector_factory,
        )

    return build
