from sqlalchemy import Column, Integer, DateTime, ForeignKey, UniqueConstraint, Index
from models.base import Base
from core.timeutils import utcnow


class CodeStats(Base):
    """
    Daily per-user-per-project rollup of commit rows.

    Fully derived from commits; rows are overwritten on recompute.
    """
    __tablename__ = "code_stats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    date = Column(DateTime, nullable=False)  # start of the UTC day

    lines_added = Column(Integer, nullable=False, default=0)
    lines_deleted = Column(Integer, nullable=False, default=0)
    files_changed = Column(Integer, nullable=False, default=0)
    commits_count = Column(Integer, nullable=False, default=0)

    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "project_id", "date", name="uq_code_stats_user_project_date"),
        Index("idx_code_stats_project_date", "project_id", "date"),
    )
