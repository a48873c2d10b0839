from sqlalchemy import Column, Integer, BigInteger, DateTime
from models.base import Base
from core.timeutils import utcnow


class SystemMetrics(Base):
    """Daily snapshot of team-wide totals, upserted once per sync cycle."""
    __tablename__ = "system_metrics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    date = Column(DateTime, nullable=False, unique=True)  # start of the UTC day

    total_projects = Column(Integer, nullable=False, default=0)
    total_commits = Column(Integer, nullable=False, default=0)
    lines_of_code = Column(BigInteger, nullable=False, default=0)

    total_tasks = Column(Integer, nullable=False, default=0)
    completed_tasks = Column(Integer, nullable=False, default=0)
    pending_tasks = Column(Integer, nullable=False, default=0)
    total_time_tracked = Column(BigInteger, nullable=False, default=0)  # seconds

    active_users = Column(Integer, nullable=False, default=0)

    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
