"""
Pydantic schemas for normalized upstream records.

Normalizers turn provider payloads into these models; the store only ever
writes validated instances.
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List
from datetime import datetime, timedelta
from models.base import TaskStatus, TaskPriority


class UserIdentity(BaseModel):
    """A person as seen by a provider; email is the cross-provider key"""
    email: str = Field(..., min_length=3, max_length=255)
    name: Optional[str] = Field(None, max_length=255)
    username: Optional[str] = Field(None, max_length=255)
    avatar: Optional[str] = Field(None, max_length=2048)
    clickup_id: Optional[str] = None
    gitlab_id: Optional[str] = None

    @validator("email")
    def normalize_email(cls, v):
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("email must contain '@'")
        return v

    @property
    def default_username(self) -> str:
        return self.username or self.email.split("@")[0]


class ProjectCreate(BaseModel):
    id: int
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    namespace: Optional[str] = None
    visibility: Optional[str] = None
    web_url: Optional[str] = None
    last_activity: Optional[datetime] = None
    created_at: Optional[datetime] = None
    total_commits: int = Field(0, ge=0)


class DiffStats(BaseModel):
    additions: int = Field(0, ge=0)
    deletions: int = Field(0, ge=0)
    total: int = Field(0, ge=0)


class CommitCreate(BaseModel):
    sha: str = Field(..., min_length=7, max_length=64)
    message: Optional[str] = None
    author_name: Optional[str] = None
    author_email: str
    authored_at: datetime
    additions: int = Field(0, ge=0)
    deletions: int = Field(0, ge=0)
    files_changed: int = Field(0, ge=0)
    project_id: int

    @validator("author_email")
    def normalize_email(cls, v):
        return v.strip().lower()


class ContributorSummary(BaseModel):
    name: Optional[str] = None
    email: str
    commits: int = Field(0, ge=0)
    additions: int = Field(0, ge=0)
    deletions: int = Field(0, ge=0)

    @validator("email")
    def normalize_email(cls, v):
        return v.strip().lower()


class TaskCreate(BaseModel):
    clickup_id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=1024)
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.TODO
    priority: Optional[TaskPriority] = None
    url: Optional[str] = None

    due_date: Optional[datetime] = None
    start_date: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    time_estimate: Optional[int] = Field(None, ge=0)  # minutes
    time_spent: Optional[int] = Field(None, ge=0)  # minutes

    list_id: Optional[str] = None
    space_id: Optional[str] = None
    folder_id: Optional[str] = None

    created_at: datetime
    updated_at: datetime

    assignees: List[UserIdentity] = Field(default_factory=list)

    @validator("name")
    def clean_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Task name cannot be empty after stripping")
        return v


class TimeEntryCreate(BaseModel):
    clickup_id: str = Field(..., min_length=1, max_length=64)
    user: UserIdentity
    task_clickup_id: Optional[str] = None
    start_time: datetime
    end_time: Optional[datetime] = None
    duration: timedelta
    description: Optional[str] = None
    billable: bool = False
    created_at: Optional[datetime] = None

    @validator("duration")
    def non_negative_duration(cls, v):
        if v.total_seconds() < 0:
            raise ValueError("duration cannot be negative")
        return v
