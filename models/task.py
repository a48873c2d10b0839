from sqlalchemy import (
    Column, Integer, String, DateTime, Text, Enum, ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship
from models.base import Base, TaskStatus, TaskPriority
from core.timeutils import utcnow


class Task(Base):
    """
    ClickUp task, keyed by the provider task id.

    Field Mapping:
    - status.status -> status (fixed vocabulary, unmapped -> TODO)
    - priority.priority -> priority (unmapped -> NULL)
    - time_estimate / time_spent (ms) -> minutes
    - date_created / date_updated / date_closed (epoch ms) -> created_at / updated_at / completed_at

    assignee_id is the primary assignee (first upstream assignee, or the
    reserved system user when the task has none). Every assignee has a row
    in task_assignees.
    """
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    clickup_id = Column(String(64), nullable=False, unique=True)

    name = Column(String(1024), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(Enum(TaskStatus), nullable=False, default=TaskStatus.TODO, index=True)
    priority = Column(Enum(TaskPriority), nullable=True)
    url = Column(String(2048), nullable=True)

    due_date = Column(DateTime, nullable=True)
    start_date = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True, index=True)

    time_estimate = Column(Integer, nullable=True)  # minutes
    time_spent = Column(Integer, nullable=True)  # minutes

    assignee_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    list_id = Column(String(64), nullable=True)
    space_id = Column(String(64), nullable=True, index=True)
    folder_id = Column(String(64), nullable=True)

    # Upstream timestamps
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    synced_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    assignee = relationship("User", foreign_keys=[assignee_id])
    assignees = relationship("TaskAssignee", back_populates="task", cascade="all, delete-orphan")


class TaskAssignee(Base):
    """One row per (task, assignee) association."""
    __tablename__ = "task_assignees"

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_id = Column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    synced_at = Column(DateTime, nullable=False, default=utcnow)

    task = relationship("Task", back_populates="assignees")
    user = relationship("User")

    __table_args__ = (
        UniqueConstraint("task_id", "user_id", name="uq_task_assignee"),
        Index("idx_task_assignee_user", "user_id", "task_id"),
    )
