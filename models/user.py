from sqlalchemy import Column, Integer, BigInteger, String, Boolean, Float, DateTime, Index
from sqlalchemy.orm import relationship
from models.base import Base
from core.timeutils import utcnow


SYSTEM_USER_EMAIL = "system@clickup.unassigned"


class User(Base):
    """
    A person observed by either provider.

    Identity:
    - email is the natural key shared by GitLab commit authors and ClickUp members
    - users are never deleted, only deactivated

    Counters:
    - total_* are recomputed from Commit / Task / TimeEntry rows, never incremented
    - upstream_* hold the provider's contributor-summary figures (max across projects)
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), nullable=False, unique=True)

    # Profile
    name = Column(String(255), nullable=True)
    username = Column(String(255), nullable=True)
    avatar = Column(String(2048), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    last_seen = Column(DateTime, nullable=True)

    # Provider correlation ids
    gitlab_id = Column(String(64), nullable=True, index=True)
    clickup_id = Column(String(64), nullable=True, index=True)

    # Recomputed counters
    total_commits = Column(Integer, nullable=False, default=0)
    total_lines_added = Column(BigInteger, nullable=False, default=0)
    total_lines_deleted = Column(BigInteger, nullable=False, default=0)
    total_tasks_completed = Column(Integer, nullable=False, default=0)
    total_time_spent = Column(Integer, nullable=False, default=0)  # minutes

    # Contributor-summary figures reported by GitLab
    upstream_commits = Column(Integer, nullable=False, default=0)
    upstream_lines_added = Column(BigInteger, nullable=False, default=0)
    upstream_lines_deleted = Column(BigInteger, nullable=False, default=0)

    productivity_score = Column(Float, nullable=False, default=0.0)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    commits = relationship("Commit", back_populates="user")
    time_entries = relationship("TimeEntry", back_populates="user")

    __table_args__ = (
        Index("idx_user_active_score", "is_active", "productivity_score"),
    )

    @property
    def is_system(self) -> bool:
        return self.email == SYSTEM_USER_EMAIL
