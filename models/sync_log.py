from sqlalchemy import Column, Integer, Enum, DateTime, Text, Index, Uuid
import uuid
from models.base import Base, JSONType, SyncService, SyncStatus
from core.timeutils import utcnow


class SyncLog(Base):
    """
    One attempt to synchronize one provider.

    Purpose:
    - Audit trail of all sync runs
    - Status / health reporting
    - Error tracking and debugging

    Lifecycle:
    - QUEUED -> RUNNING -> {SUCCESS, FAILED, PARTIAL}
    - exactly one terminal update; terminal rows never change status again
    """
    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Uuid, default=uuid.uuid4, unique=True, nullable=False, index=True)

    service = Column(Enum(SyncService), nullable=False, index=True)
    status = Column(Enum(SyncStatus), default=SyncStatus.QUEUED, nullable=False, index=True)

    # Timestamps
    started_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    # Statistics
    records_processed = Column(Integer, nullable=False, default=0)

    message = Column(Text, nullable=True)
    error_details = Column(JSONType, nullable=True)
    details = Column(JSONType, nullable=True)  # connector-reported counts

    __table_args__ = (
        Index("idx_sync_log_service_started", "service", "started_at"),
        Index("idx_sync_log_status_started", "status", "started_at"),
    )
