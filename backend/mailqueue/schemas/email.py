"""Pydantic schemas for the email queue trigger endpoints"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Serializes with camelCase keys, accepts either form on input"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Webhook

class WebhookRequest(BaseModel):
    """Body of POST /api/email/queue/webhook"""
    email_id: Optional[str] = None
    retry_count: Optional[int] = Field(default=None, ge=0)
    manual_trigger: bool = False
    process_all: bool = False
    scheduled: bool = False


class WebhookResponse(CamelModel):
    success: bool
    error: Optional[str] = None
    status: Optional[str] = None
    skipped: Optional[str] = None
    request_id: str


class BatchProcessResponse(CamelModel):
    success: bool
    processed: int
    succeeded: int
    failed: int
    request_id: str


# Monitor

class EmailSummary(BaseModel):
    """Queue row as reported by the monitor"""
    model_config = ConfigDict(from_attributes=True)

    id: str
    recipient_email: str
    subject: str
    status: str
    retry_count: int
    max_retries: int
    created_at: datetime
    scheduled_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    error_message: Optional[str] = None
    school_id: Optional[str] = None


class RetriedEmail(CamelModel):
    email_id: str
    action: str  # marked_failed | retried | retry_scheduled | failed_to_retry | skipped
    retry_count: Optional[int] = None
    next_retry_at: Optional[datetime] = None
    webhook_triggered: Optional[bool] = None
    webhook_error: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None


class MonitorMetrics(CamelModel):
    total_pending: int
    total_stuck: int
    total_retried: int
    avg_processing_time: int  # seconds
    oldest_pending_age: int  # minutes


class MonitorReport(CamelModel):
    timestamp: datetime
    stuck_emails: List[EmailSummary]
    retried_emails: List[RetriedEmail]
    health_status: str
    metrics: MonitorMetrics


# Backup reaper

class BackupRetryDetail(BaseModel):
    email_id: str
    recipient: str
    success: bool
    method: str  # webhook | direct | none
    retry_count: int
    error: Optional[str] = None


class BackupRetryResponse(BaseModel):
    success: bool
    message: str
    processed: int
    succeeded: int
    failed: int
    details: List[BackupRetryDetail]
    timestamp: datetime


# Health history

class EmailQueueHealthResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    check_timestamp: datetime
    pending_count: int
    stuck_count: int
    failed_count: int
    processing_time_avg_ms: Optional[int] = None
    health_status: str
