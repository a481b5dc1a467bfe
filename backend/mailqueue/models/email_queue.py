"""EmailQueueItem model"""
import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Index, Integer, String, Text

from mailqueue.models.base import Base


class EmailStatus(str, enum.Enum):
    """Lifecycle states of a queued email"""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"
    # Display alias of pending; scheduled exactly like pending
    RATE_LIMITED = "rate_limited"


# Statuses a processor may still act on
PENDING_STATUSES = (EmailStatus.PENDING.value, EmailStatus.RATE_LIMITED.value)
TERMINAL_STATUSES = (EmailStatus.SENT.value, EmailStatus.FAILED.value, EmailStatus.CANCELLED.value)


def _utcnow():
    return datetime.now(timezone.utc)


class EmailQueueItem(Base):
    """One queued outbound email and its delivery state"""
    __tablename__ = "email_queue"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    recipient_email = Column(Text, nullable=False)  # may be a comma-separated list
    subject = Column(Text, nullable=False)
    body = Column(Text, nullable=False)
    status = Column(String(20), default=EmailStatus.PENDING.value, nullable=False)

    scheduled_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    retry_count = Column(Integer, default=0, nullable=False)
    max_retries = Column(Integer, default=3, nullable=False)
    # Set by a sweep that has already counted the next attempt; cleared by the claim that uses it
    retry_reserved = Column(Boolean, default=False, nullable=False)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    provider_message_id = Column(String(255), nullable=True)

    # Tenant / provenance (informational)
    school_id = Column(String(36), nullable=True, index=True)
    source_table = Column(String(100), nullable=True)
    record_id = Column(String(36), nullable=True)
    rule_id = Column(String(36), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'sent', 'failed', 'cancelled', 'rate_limited')",
            name='ck_email_queue_status'
        ),
        Index('ix_email_queue_status_created_at', 'status', 'created_at'),
        Index('ix_email_queue_status_next_retry_at', 'status', 'next_retry_at'),
    )

    def __repr__(self):
        return f"<EmailQueueItem {self.id} status={self.status} retry={self.retry_count}/{self.max_retries}>"
