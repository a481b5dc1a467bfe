"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from mailqueue.models.base import Base
from mailqueue.models.email_queue import EmailQueueItem, EmailStatus, PENDING_STATUSES, TERMINAL_STATUSES
from mailqueue.models.email_queue_health import EmailQueueHealth

# Export all for convenience
__all__ = [
    "Base", "EmailQueueItem", "EmailStatus", "EmailQueueHealth",
    "PENDING_STATUSES", "TERMINAL_STATUSES"
]
