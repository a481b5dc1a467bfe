"""EmailQueueHealth model"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String

from mailqueue.models.base import Base


class EmailQueueHealth(Base):
    """Snapshot written by each monitor run"""
    __tablename__ = "email_queue_health"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    check_timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    pending_count = Column(Integer, default=0, nullable=False)
    stuck_count = Column(Integer, default=0, nullable=False)
    failed_count = Column(Integer, default=0, nullable=False)
    processing_time_avg_ms = Column(Integer, nullable=True)
    health_status = Column(String(20), nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
