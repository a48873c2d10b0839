from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text
from sqlalchemy.orm import relationship
from models.base import Base
from core.timeutils import utcnow


class Project(Base):
    """
    GitLab project, keyed by the provider's integer id.

    Upserted on every sync pass that touches it; total_commits mirrors the
    provider's statistics.commit_count.
    """
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, autoincrement=False)  # GitLab project id

    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    namespace = Column(String(255), nullable=True)
    visibility = Column(String(32), nullable=True)
    web_url = Column(String(2048), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    last_activity = Column(DateTime, nullable=True)
    total_commits = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    synced_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    commits = relationship("Commit", back_populates="project")
