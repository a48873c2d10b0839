from datetime import timedelta
from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, ForeignKey, Index
from sqlalchemy.orm import relationship
from models.base import Base
from core.timeutils import utcnow


class TimeEntry(Base):
    """
    Tracked time from ClickUp, keyed by the provider entry id. Append-only.

    duration_seconds is derived from the provider's millisecond duration at
    ingestion time; ``duration`` exposes it as a timedelta.
    """
    __tablename__ = "time_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    clickup_id = Column(String(64), nullable=False, unique=True)

    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    task_id = Column(Integer, ForeignKey("tasks.id"), nullable=True, index=True)

    start_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime, nullable=True)
    duration_seconds = Column(Integer, nullable=False, default=0)
    description = Column(Text, nullable=True)
    billable = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    synced_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    user = relationship("User", back_populates="time_entries")
    task = relationship("Task")

    __table_args__ = (
        Index("idx_time_entry_user_start", "user_id", "start_time"),
    )

    @property
    def duration(self) -> timedelta:
        return timedelta(seconds=self.duration_seconds or 0)
