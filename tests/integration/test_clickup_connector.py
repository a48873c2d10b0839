"""
ClickUp connector against the canonical store
"""

import asyncio
import httpx
import pytest
from dataclasses import replace
from sqlalchemy import select, func
from core.config import ClickUpConfig
from core.exceptions import ConfigurationError, NotFoundError
from ingestion.connectors.clickup import ClickUpConnector
from models import User, Task, TaskAssignee, TimeEntry, SYSTEM_USER_EMAIL
from models.base import TaskStatus, TaskPriority
from conftest import clickup_task, ALICE


async def get_user(db_session, email):
    return (await db_session.execute(select(User).where(User.email == email))).scalar_one()


async def get_task(db_session, clickup_id):
    return (await db_session.execute(select(Task).where(Task.clickup_id == clickup_id))).scalar_one()


async def assignee_emails(db_session, task_id):
    result = await db_session.execute(
        select(User.email).join(TaskAssignee, TaskAssignee.user_id == User.id).where(TaskAssignee.task_id == task_id)
    )
    return sorted(result.scalars().all())


@pytest.mark.asyncio
async def test_sync_tasks_and_time_entries(make_clickup, db_session):
    result = await make_clickup().run()

    assert result.units_total == 2  # one space plus the time entry pass
    assert result.units_failed == 0
    assert result.counts["tasks"] == 3
    assert result.counts["time_entries"] == 2
    assert not result.has_failures

    system_user = await get_user(db_session, SYSTEM_USER_EMAIL)
    assert system_user.is_active is False

    unassigned = await get_task(db_session, "t1")
    assert unassigned.assignee_id == system_user.id
    assert unassigned.status == TaskStatus.TODO

    shared = await get_task(db_session, "t2")
    assert shared.status == TaskStatus.DONE
    assert shared.priority == TaskPriority.HIGH
    assert shared.completed_at is not None
    assert shared.time_estimate == 120
    assert shared.space_id == "s1"
    assert await assignee_emails(db_session, shared.id) == ["alice@example.com", "bob@example.com"]

    folder_task = await get_task(db_session, "t3")
    assert folder_task.list_id == "l2"
    assert folder_task.folder_id == "f1"
    assert folder_task.status == TaskStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_user_totals_are_recomputed(make_clickup, db_session):
    await make_clickup().run()

    alice = await get_user(db_session, "alice@example.com")
    bob = await get_user(db_session, "bob@example.com")

    assert alice.total_tasks_completed == 1
    assert bob.total_tasks_completed == 1
    assert alice.total_time_spent == 60
    # running timer counts as zero until stopped
    assert bob.total_time_spent == 0
    assert bob.avatar == "https://cdn.example.com/bob.png"
    assert alice.clickup_id == "11"

    entry = (await db_session.execute(select(TimeEntry).where(TimeEntry.clickup_id == "e1"))).scalar_one()
    shared = await get_task(db_session, "t2")
    assert entry.task_id == shared.id
    assert entry.duration_seconds == 3600
    assert entry.billable is True


@pytest.mark.asyncio
async def test_resync_is_idempotent_and_drops_stale_assignees(make_clickup, clickup_api, db_session):
    await make_clickup().run()

    payload = clickup_api.routes["/api/v2/list/l1/task"][1]
    payload["tasks"][1]["assignees"] = [ALICE]
    await make_clickup().run()

    assert (await db_session.execute(select(func.count()).select_from(Task))).scalar_one() == 3
    assert (await db_session.execute(select(func.count()).select_from(TimeEntry))).scalar_one() == 2

    shared = await get_task(db_session, "t2")
    assert await assignee_emails(db_session, shared.id) == ["alice@example.com"]

    bob = await get_user(db_session, "bob@example.com")
    assert bob.total_tasks_completed == 0


@pytest.mark.asyncio
async def test_malformed_entities_are_isolated(make_clickup, clickup_api, db_session):
    clickup_api.add("/list/l2/task", {
        "tasks": [
            clickup_task("t3", "in progress", [ALICE], list={"id": "l2"}),
            clickup_task("t4", "open", [ALICE], date_created=None),
        ],
        "last_page": True,
    })
    entries = clickup_api.routes["/api/v2/team/9001/time_entries"][1]
    entries["data"].append({"id": "e3", "user": {"id": 99, "username": "ghost"}, "start": "1705309200000"})

    result = await make_clickup().run()

    assert result.counts["tasks"] == 3
    assert result.counts["time_entries"] == 2
    assert result.entities_failed == 2
    assert result.units_failed == 0
    assert {e["entity_id"] for e in result.errors} == {"t4", "e3"}


@pytest.mark.asyncio
async def test_missing_list_is_recorded_not_fatal(make_clickup, clickup_api, db_session):
    clickup_api.add("/space/s1/folder", {"folders": [{"id": "f1", "lists": [{"id": "gone"}]}]})

    result = await make_clickup().run()

    assert result.units_failed == 0
    assert result.entities_failed == 1
    assert result.counts["tasks"] == 2


@pytest.mark.asyncio
async def test_space_failure_is_a_unit_failure(make_clickup, clickup_config):
    result = await make_clickup(replace(clickup_config, space_ids=("s1", "missing"))).run()

    assert result.units_total == 3
    assert result.units_failed == 1
    assert result.counts["tasks"] == 3


@pytest.mark.asyncio
async def test_paging_stops_on_short_page(make_clickup, clickup_api, clickup_config):
    pages = {
        "0": [clickup_task("p1", "open", [ALICE]), clickup_task("p2", "open", [ALICE])],
        "1": [clickup_task("p3", "open", [ALICE])],
    }

    def handler(request):
        return httpx.Response(200, json={"tasks": pages.get(request.url.params["page"], [])})

    clickup_api.add_handler("/list/l1/task", handler)

    result = await make_clickup(replace(clickup_config, page_size=2)).run()

    task_pages = [r.url.params["page"] for r in clickup_api.requests if r.url.path == "/api/v2/list/l1/task"]
    assert task_pages == ["0", "1"]
    assert result.counts["tasks"] == 4


@pytest.mark.asyncio
async def test_unknown_team_fails_preflight(make_clickup, clickup_config):
    with pytest.raises(NotFoundError):
        await make_clickup(replace(clickup_config, team_id="4242")).run()


def test_missing_credentials_fail_fast(session_factory):
    with pytest.raises(ConfigurationError):
        ClickUpConnector(ClickUpConfig(api_token="pk_test_token"), session_factory)


@pytest.mark.asyncio
async def test_single_space_sync_attaches_unassigned_tasks(make_clickup, db_session):
    connector = make_clickup()
    async with connector.fetcher:
        await connector.sync_space("s1")

    assert connector.result.entities_failed == 0
    assert connector.result.counts["tasks"] == 3

    system_user = await get_user(db_session, SYSTEM_USER_EMAIL)
    unassigned = await get_task(db_session, "t1")
    assert unassigned.assignee_id == system_user.id


@pytest.mark.asyncio
async def test_spaces_sync_two_at_a_time(make_clickup, clickup_api):
    config = ClickUpConfig(api_token="pk_test_token", team_id="9001", space_ids=("s1", "s2", "s3", "s4"))
    assert config.concurrency == 2
    in_flight = {"now": 0, "peak": 0}

    async def space_detail(request):
        in_flight["now"] += 1
        in_flight["peak"] = max(in_flight["peak"], in_flight["now"])
        await asyncio.sleep(0.01)
        in_flight["now"] -= 1
        return httpx.Response(200, json={"id": request.url.path.rsplit("/", 1)[-1], "name": "Space"})

    for space_id in config.space_ids:
        clickup_api.add_handler(f"/space/{space_id}", space_detail)
    for space_id in ("s2", "s3", "s4"):
        clickup_api.add(f"/space/{space_id}/list", {"lists": []})
        clickup_api.add(f"/space/{space_id}/folder", {"folders": []})

    result = await make_clickup(config).run()

    assert result.units_total == 5
    assert result.units_failed == 0
    assert in_flight["peak"] == 2
