"""
Pydantic schemas for productivity metrics
"""

from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime, date
import enum


class MetricsPeriod(str, enum.Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class ProductivityMetrics(BaseModel):
    """One user's figures for one window, with trends against the previous window"""
    user_id: int
    period: MetricsPeriod
    window_start: datetime
    window_end: datetime

    # Raw activity
    commits: int = 0
    lines_added: int = 0
    lines_deleted: int = 0
    files_changed: int = 0
    tasks_completed: int = 0
    tasks_in_progress: int = 0
    time_tracked_minutes: int = 0
    avg_task_completion_days: float = 0.0

    # Scores, all within [0, 100]
    code_productivity_score: float = Field(0.0, ge=0, le=100)
    task_productivity_score: float = Field(0.0, ge=0, le=100)
    overall_productivity_score: float = Field(0.0, ge=0, le=100)

    # Percentage change against the previous window
    commits_trend: float = 0.0
    tasks_trend: float = 0.0
    productivity_trend: float = 0.0


class TopPerformer(BaseModel):
    user_id: int
    name: Optional[str] = None
    email: str
    score: float


class ProjectActivity(BaseModel):
    project_id: int
    name: str
    commits: int
    contributors: int


class TeamMetrics(BaseModel):
    period: MetricsPeriod
    window_start: datetime
    window_end: datetime

    total_commits: int = 0
    total_lines_added: int = 0
    total_tasks_completed: int = 0
    total_time_tracked_minutes: int = 0
    active_members: int = 0
    active_projects: int = 0

    avg_productivity_score: float = 0.0
    commits_trend: float = 0.0
    tasks_trend: float = 0.0
    productivity_trend: float = 0.0

    top_performers: List[TopPerformer] = Field(default_factory=list)
    project_activity: List[ProjectActivity] = Field(default_factory=list)


class TrendPoint(BaseModel):
    """Daily activity value: commits + 2 x tasks completed"""
    date: date
    value: float
    change: float = 0.0


class UserRank(BaseModel):
    user_id: int
    score: float
    rank: int
    percentile: float
    total_users: int


class MetricsCycleSummary(BaseModel):
    """What one metrics cycle did"""
    users_processed: int = 0
    users_failed: int = 0
    team_periods: List[MetricsPeriod] = Field(default_factory=list)
    snapshot_date: Optional[datetime] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
