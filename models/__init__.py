"""
SQLAlchemy ORM models for the canonical store.

Models:
    base: Base declarative class and shared enums (SyncService, SyncStatus, TaskStatus, TaskPriority)
    user: People observed by either provider (natural key: email)
    project: GitLab projects (natural key: provider id)
    commit: Commits (natural key: sha)
    task: ClickUp tasks and their assignee associations (natural key: provider id)
    time_entry: ClickUp tracked time (natural key: provider id)
    code_stats: Daily per-user-per-project commit rollups
    sync_log: One row per provider sync attempt
    system_metrics: Daily team-wide snapshot

Database Schema:
    Every row reachable from a provider has a permanent correlation id with a
    unique constraint, so upserts converge instead of duplicating.

Usage:
    from models import User, Commit, Task, SyncLog
    from models.base import SyncStatus, TaskStatus

Relationships:
    - User -> Commit (one-to-many)
    - Project -> Commit (one-to-many)
    - Task -> TaskAssignee -> User (many-to-many)
    - User -> TimeEntry (one-to-many)
"""

from models.base import Base, SyncService, SyncStatus, TaskStatus, TaskPriority
from models.user import User, SYSTEM_USER_EMAIL
from models.project import Project
from models.commit import Commit
from models.task import Task, TaskAssignee
from models.time_entry import TimeEntry
from models.code_stats import CodeStats
from models.sync_log import SyncLog
from models.system_metrics import SystemMetrics

__all__ = [
    "Base",
    "SyncService",
    "SyncStatus",
    "TaskStatus",
    "TaskPriority",
    "User",
    "SYSTEM_USER_EMAIL",
    "Project",
    "Commit",
    "Task",
    "TaskAssignee",
    "TimeEntry",
    "CodeStats",
    "SyncLog",
    "SystemMetrics",
]
