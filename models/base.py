from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ============================================================================
# ENUMS
# ============================================================================

class SyncService(str, enum.Enum):
    """External providers"""
    GITLAB = "GITLAB"
    CLICKUP = "CLICKUP"

    @classmethod
    def parse(cls, value: str) -> "SyncService":
        return cls(value.strip().upper())


class SyncStatus(str, enum.Enum):
    """Sync run status"""
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PARTIAL = "PARTIAL"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncStatus.SUCCESS, SyncStatus.FAILED, SyncStatus.PARTIAL)


class TaskStatus(str, enum.Enum):
    """Internal task status vocabulary"""
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    REVIEW = "REVIEW"
    TESTING = "TESTING"
    DONE = "DONE"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"


COMPLETED_TASK_STATUSES = (TaskStatus.DONE, TaskStatus.CLOSED)
OPEN_TASK_STATUSES = (
    TaskStatus.TODO,
    TaskStatus.IN_PROGRESS,
    TaskStatus.REVIEW,
    TaskStatus.TESTING,
)


class TaskPriority(str, enum.Enum):
    """Internal task priority vocabulary"""
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"
