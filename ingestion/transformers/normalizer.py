"""
Transform provider payloads into validated canonical records.

One normalizer per provider. Every vocabulary mapping is an explicit lookup
table with a default case, so an unknown upstream value never aborts a batch.
"""

import math
from typing import Dict, Any, Optional, List
from pydantic import ValidationError
from schemas.normalized import (
    UserIdentity,
    ProjectCreate,
    DiffStats,
    CommitCreate,
    ContributorSummary,
    TaskCreate,
    TimeEntryCreate,
)
from models.base import TaskStatus, TaskPriority
from core.exceptions import NormalizationError
from core.timeutils import parse_iso_datetime, from_epoch_millis, millis_to_minutes
from datetime import timedelta
import logging

logger = logging.getLogger(__name__)


# ClickUp status names are workspace-defined; matched case-insensitively
CLICKUP_STATUS_MAP: Dict[str, TaskStatus] = {
    "to do": TaskStatus.TODO,
    "todo": TaskStatus.TODO,
    "open": TaskStatus.TODO,
    "in progress": TaskStatus.IN_PROGRESS,
    "in review": TaskStatus.REVIEW,
    "review": TaskStatus.REVIEW,
    "testing": TaskStatus.TESTING,
    "qa": TaskStatus.TESTING,
    "done": TaskStatus.DONE,
    "complete": TaskStatus.DONE,
    "completed": TaskStatus.DONE,
    "closed": TaskStatus.CLOSED,
    "cancelled": TaskStatus.CANCELLED,
    "canceled": TaskStatus.CANCELLED,
}

CLICKUP_PRIORITY_MAP: Dict[str, TaskPriority] = {
    "urgent": TaskPriority.URGENT,
    "high": TaskPriority.HIGH,
    "normal": TaskPriority.NORMAL,
    "low": TaskPriority.LOW,
}


def map_task_status(value: Any) -> TaskStatus:
    """Unknown or missing status strings map to TODO"""
    if not isinstance(value, str):
        return TaskStatus.TODO
    return CLICKUP_STATUS_MAP.get(value.strip().lower(), TaskStatus.TODO)


def map_task_priority(value: Any) -> Optional[TaskPriority]:
    """Unknown or missing priority strings map to None"""
    if not isinstance(value, str):
        return None
    return CLICKUP_PRIORITY_MAP.get(value.strip().lower())


def estimate_files_changed(total_lines: int) -> int:
    """GitLab does not report files per commit; ten changed lines per file is the estimate"""
    return math.ceil(total_lines / 10) if total_lines > 0 else 0


class GitLabNormalizer:
    """
    Normalize GitLab REST v4 payloads.

    Handles:
    - Project detail (with statistics)
    - Commits (with or without embedded diff stats)
    - Repository contributor summaries
    """

    provider = "gitlab"

    def _error(self, message: str, entity: str, entity_id: Any, e: Optional[Exception] = None, **extra):
        return NormalizationError(
            message,
            context={"provider": self.provider, "entity": entity, "entity_id": entity_id, **extra},
            original_exception=e
        )

    def normalize_project(self, payload: Dict[str, Any]) -> ProjectCreate:
        project_id = payload.get("id")
        namespace = payload.get("namespace")
        statistics = payload.get("statistics") or {}
        try:
            return ProjectCreate(
                id=project_id,
                name=payload.get("name") or payload.get("path") or str(project_id),
                description=payload.get("description"),
                namespace=namespace.get("path") if isinstance(namespace, dict) else namespace,
                visibility=payload.get("visibility"),
                web_url=payload.get("web_url"),
                last_activity=parse_iso_datetime(payload.get("last_activity_at")),
                created_at=parse_iso_datetime(payload.get("created_at")),
                total_commits=int(statistics.get("commit_count") or 0),
            )
        except (ValidationError, TypeError, ValueError) as e:
            raise self._error("Invalid project payload", "project", project_id, e)

    def normalize_stats(self, sha: str, stats: Any) -> DiffStats:
        """
        Validate a diff-stats block.

        A missing block is not handled here (the caller fetches it); a block
        that is present but malformed is a NormalizationError.
        """
        if not isinstance(stats, dict):
            raise self._error("Diff stats are not an object", "commit", sha, field_name="stats")
        try:
            additions = int(stats.get("additions", 0))
            deletions = int(stats.get("deletions", 0))
            total = int(stats.get("total", additions + deletions))
            return DiffStats(additions=additions, deletions=deletions, total=total)
        except (ValidationError, TypeError, ValueError) as e:
            raise self._error("Malformed diff stats", "commit", sha, e, field_name="stats")

    def normalize_commit(
        self,
        payload: Dict[str, Any],
        project_id: int,
        stats: Optional[DiffStats] = None
    ) -> CommitCreate:
        sha = payload.get("id")
        if not sha:
            raise self._error("Commit without id", "commit", None, field_name="id")

        if stats is None:
            stats = self.normalize_stats(sha, payload.get("stats"))

        authored_at = parse_iso_datetime(payload.get("authored_date") or payload.get("created_at"))
        if authored_at is None:
            raise self._error("Commit without authored date", "commit", sha, field_name="authored_date")

        try:
            return CommitCreate(
                sha=sha,
                message=payload.get("message") or payload.get("title"),
                author_name=payload.get("author_name"),
                author_email=payload.get("author_email") or "",
                authored_at=authored_at,
                additions=stats.additions,
                deletions=stats.deletions,
                files_changed=estimate_files_changed(stats.total),
                project_id=project_id,
            )
        except ValidationError as e:
            raise self._error("Invalid commit payload", "commit", sha, e)

    def commit_author(self, commit: CommitCreate) -> UserIdentity:
        try:
            return UserIdentity(email=commit.author_email, name=commit.author_name)
        except ValidationError as e:
            raise self._error("Commit author has no usable email", "commit", commit.sha, e, field_name="author_email")

    def normalize_contributors(self, payload: Any) -> List[ContributorSummary]:
        """Entries without an email are dropped"""
        if not isinstance(payload, list):
            raise self._error("Contributors payload is not a list", "contributors", None)
        contributors = []
        for entry in payload:
            if not isinstance(entry, dict) or not entry.get("email"):
                continue
            try:
                contributors.append(ContributorSummary(
                    name=entry.get("name"),
                    email=entry["email"],
                    commits=int(entry.get("commits") or 0),
                    additions=int(entry.get("additions") or 0),
                    deletions=int(entry.get("deletions") or 0),
                ))
            except (ValidationError, TypeError, ValueError) as e:
                logger.warning(f"Skipping contributor entry {entry.get('email')}: {e}")
        return contributors


class ClickUpNormalizer:
    """
    Normalize ClickUp API v2 payloads.

    All ClickUp timestamps and durations are epoch milliseconds (often as
    strings); they are converted here, never at read time.
    """

    provider = "clickup"

    def _error(self, message: str, entity: str, entity_id: Any, e: Optional[Exception] = None, **extra):
        return NormalizationError(
            message,
            context={"provider": self.provider, "entity": entity, "entity_id": entity_id, **extra},
            original_exception=e
        )

    def normalize_user(self, payload: Dict[str, Any]) -> UserIdentity:
        if not isinstance(payload, dict):
            raise self._error("Member payload is not an object", "user", None)
        user_id = payload.get("id")
        try:
            return UserIdentity(
                email=payload.get("email") or "",
                name=payload.get("username"),
                username=payload.get("username"),
                avatar=payload.get("profilePicture"),
                clickup_id=str(user_id) if user_id is not None else None,
            )
        except ValidationError as e:
            raise self._error("Member has no usable email", "user", user_id, e, field_name="email")

    def normalize_task(self, payload: Dict[str, Any], space_id: Optional[str] = None) -> TaskCreate:
        task_id = payload.get("id")
        if not task_id:
            raise self._error("Task without id", "task", None, field_name="id")

        created_at = from_epoch_millis(payload.get("date_created"))
        updated_at = from_epoch_millis(payload.get("date_updated")) or created_at
        if created_at is None:
            raise self._error("Task without creation date", "task", task_id, field_name="date_created")

        status = payload.get("status")
        priority = payload.get("priority")
        task_list = payload.get("list") or {}
        folder = payload.get("folder") or {}
        space = payload.get("space") or {}

        assignees = []
        for member in payload.get("assignees") or []:
            try:
                assignees.append(self.normalize_user(member))
            except NormalizationError as e:
                logger.warning(f"Dropping assignee of task {task_id}: {e.message}")

        try:
            return TaskCreate(
                clickup_id=str(task_id),
                name=payload.get("name") or "",
                description=payload.get("text_content") or payload.get("description") or None,
                status=map_task_status(status.get("status") if isinstance(status, dict) else status),
                priority=map_task_priority(priority.get("priority") if isinstance(priority, dict) else priority),
                url=payload.get("url"),
                due_date=from_epoch_millis(payload.get("due_date")),
                start_date=from_epoch_millis(payload.get("start_date")),
                completed_at=from_epoch_millis(payload.get("date_closed")),
                time_estimate=millis_to_minutes(payload.get("time_estimate")),
                time_spent=millis_to_minutes(payload.get("time_spent")),
                list_id=str(task_list["id"]) if task_list.get("id") else None,
                space_id=str(space.get("id") or space_id) if (space.get("id") or space_id) else None,
                folder_id=str(folder["id"]) if folder.get("id") else None,
                created_at=created_at,
                updated_at=updated_at,
                assignees=assignees,
            )
        except ValidationError as e:
            raise self._error("Invalid task payload", "task", task_id, e)

    def normalize_time_entry(self, payload: Dict[str, Any]) -> TimeEntryCreate:
        entry_id = payload.get("id")
        if not entry_id:
            raise self._error("Time entry without id", "time_entry", None, field_name="id")

        start_time = from_epoch_millis(payload.get("start"))
        if start_time is None:
            raise self._error("Time entry without start", "time_entry", entry_id, field_name="start")

        try:
            duration_ms = int(payload.get("duration") or 0)
        except (TypeError, ValueError) as e:
            raise self._error("Unparseable duration", "time_entry", entry_id, e, field_name="duration")
        # a running timer reports a negative duration until it is stopped
        if duration_ms < 0:
            duration_ms = 0

        task = payload.get("task")
        task_id = task.get("id") if isinstance(task, dict) else None

        try:
            return TimeEntryCreate(
                clickup_id=str(entry_id),
                user=self.normalize_user(payload.get("user")),
                task_clickup_id=str(task_id) if task_id else None,
                start_time=start_time,
                end_time=from_epoch_millis(payload.get("end")),
                duration=timedelta(milliseconds=duration_ms),
                description=payload.get("description") or None,
                billable=bool(payload.get("billable", False)),
                created_at=from_epoch_millis(payload.get("at")),
            )
        except ValidationError as e:
            raise self._error("Invalid time entry payload", "time_entry", entry_id, e)
