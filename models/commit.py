from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey, Index
from sqlalchemy.orm import relationship
from models.base import Base
from core.timeutils import utcnow


class Commit(Base):
    """
    A commit, keyed by its hash.

    Append-only: re-sync only refreshes message and diff stats.
    """
    __tablename__ = "commits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    sha = Column(String(64), nullable=False, unique=True)

    message = Column(Text, nullable=True)
    author_name = Column(String(255), nullable=True)
    author_email = Column(String(255), nullable=False)
    authored_at = Column(DateTime, nullable=False, index=True)

    # Diff statistics
    additions = Column(Integer, nullable=False, default=0)
    deletions = Column(Integer, nullable=False, default=0)
    files_changed = Column(Integer, nullable=False, default=0)  # estimate

    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    synced_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    project = relationship("Project", back_populates="commits")
    user = relationship("User", back_populates="commits")

    __table_args__ = (
        Index("idx_commit_user_authored", "user_id", "authored_at"),
        Index("idx_commit_project_authored", "project_id", "authored_at"),
    )
