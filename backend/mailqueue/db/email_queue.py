"""Queue-store helpers for the email_queue table.

Every write is a conditional UPDATE scoped by id and current status (and,
for attempt bookkeeping, by the retry_count the caller observed). A write
that matches no row means another worker got there first; callers treat
that as a lost race, never as an error.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from mailqueue.core.config import settings
from mailqueue.models.email_queue import EmailQueueItem, EmailStatus, PENDING_STATUSES
from mailqueue.models.email_queue_health import EmailQueueHealth
from mailqueue.services.retry_policy import next_retry_time, retries_exhausted
from mailqueue.utils.timeutils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

MAX_RETRIES_EXCEEDED = "max retries exceeded"


@dataclass
class AttemptOutcome:
    """Row state written by a failed-attempt transition"""
    status: str
    retry_count: int
    next_retry_at: Optional[datetime]


def enqueue_email(
    db: Session,
    recipient_email: str,
    subject: str,
    body: str,
    scheduled_at: Optional[datetime] = None,
    max_retries: Optional[int] = None,
    school_id: Optional[str] = None,
    source_table: Optional[str] = None,
    record_id: Optional[str] = None,
    rule_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> EmailQueueItem:
    """Insert a pending email"""
    now = ensure_utc(now) or utcnow()
    email = EmailQueueItem(
        recipient_email=recipient_email,
        subject=subject,
        body=body,
        status=EmailStatus.PENDING.value,
        scheduled_at=ensure_utc(scheduled_at) or now,
        retry_count=0,
        max_retries=max_retries if max_retries is not None else settings.EMAIL_DEFAULT_MAX_RETRIES,
        school_id=school_id,
        source_table=source_table,
        record_id=record_id,
        rule_id=rule_id,
        created_at=now,
        updated_at=now,
    )
    db.add(email)
    db.commit()
    db.refresh(email)
    logger.info(f"Queued email {email.id} to {recipient_email}")
    return email


def get_email(db: Session, email_id: str) -> Optional[EmailQueueItem]:
    return db.query(EmailQueueItem).filter(EmailQueueItem.id == email_id).first()


def reload_email(db: Session, email_id: str) -> Optional[EmailQueueItem]:
    """Fresh copy of a row another writer may have changed"""
    # Conditional updates bypass the identity map; drop stale state first
    db.expire_all()
    return get_email(db, email_id)


def claim_email(db: Session, email_id: str, now: datetime) -> Optional[EmailQueueItem]:
    """Atomically confirm an email is pending and due, stamping the attempt.

    Returns the fresh row, or None when the email is missing, no longer
    pending, or scheduled in the future (in which case nothing is written).
    An unused reservation is dropped: this attempt will be counted on its own.
    """
    now = ensure_utc(now)
    claimed = db.query(EmailQueueItem).filter(
        EmailQueueItem.id == email_id,
        EmailQueueItem.status.in_(PENDING_STATUSES),
        EmailQueueItem.scheduled_at <= now,
    ).update({
        EmailQueueItem.last_attempt_at: now,
        EmailQueueItem.updated_at: now,
        EmailQueueItem.retry_reserved: False,
    }, synchronize_session=False)
    db.commit()
    if claimed != 1:
        return None
    return reload_email(db, email_id)


def claim_reserved_email(db: Session, email_id: str, reserved_retry_count: int, now: datetime) -> Optional[EmailQueueItem]:
    """Claim an email using the attempt a sweep already counted.

    Succeeds at most once per reservation: the update clears the marker, so
    a replayed or duplicate trigger with the same retry_count gets None and
    falls back to a normal, counted claim.
    """
    now = ensure_utc(now)
    claimed = db.query(EmailQueueItem).filter(
        EmailQueueItem.id == email_id,
        EmailQueueItem.status.in_(PENDING_STATUSES),
        EmailQueueItem.scheduled_at <= now,
        EmailQueueItem.retry_count == reserved_retry_count,
        EmailQueueItem.retry_reserved.is_(True),
    ).update({
        EmailQueueItem.last_attempt_at: now,
        EmailQueueItem.updated_at: now,
        EmailQueueItem.retry_reserved: False,
    }, synchronize_session=False)
    db.commit()
    if claimed != 1:
        return None
    return reload_email(db, email_id)


def mark_sent(
    db: Session,
    email: EmailQueueItem,
    now: datetime,
    provider_message_id: Optional[str] = None,
    count_attempt: bool = True,
    note: Optional[str] = None,
) -> bool:
    """pending -> sent. Returns False if the row was no longer pending."""
    now = ensure_utc(now)
    values = {
        EmailQueueItem.status: EmailStatus.SENT.value,
        EmailQueueItem.sent_at: now,
        EmailQueueItem.last_attempt_at: now,
        EmailQueueItem.updated_at: now,
        EmailQueueItem.next_retry_at: None,
        EmailQueueItem.error_message: note,
        EmailQueueItem.provider_message_id: provider_message_id,
    }
    if count_attempt:
        values[EmailQueueItem.retry_count] = EmailQueueItem.retry_count + 1

    updated = db.query(EmailQueueItem).filter(
        EmailQueueItem.id == email.id,
        EmailQueueItem.status.in_(PENDING_STATUSES),
    ).update(values, synchronize_session=False)
    db.commit()
    return updated == 1


def record_failed_attempt(
    db: Session,
    email: EmailQueueItem,
    now: datetime,
    error_message: str,
    count_attempt: bool = True,
) -> Optional[AttemptOutcome]:
    """Write the outcome of a failed delivery attempt.

    Dead-letters to ``failed`` once retry_count reaches max_retries, otherwise
    leaves the email pending with a backoff-scheduled next_retry_at. When the
    caller already counted the attempt (monitor retries), retry_count is left
    as is. Returns None if another writer changed the row first.
    """
    now = ensure_utc(now)
    observed = email.retry_count or 0
    new_count = observed + 1 if count_attempt else observed
    attempts_before = max(new_count - 1, 0)

    if retries_exhausted(new_count, email.max_retries):
        outcome = AttemptOutcome(EmailStatus.FAILED.value, new_count, None)
    else:
        outcome = AttemptOutcome(EmailStatus.PENDING.value, new_count, next_retry_time(attempts_before, now))

    updated = db.query(EmailQueueItem).filter(
        EmailQueueItem.id == email.id,
        EmailQueueItem.status.in_(PENDING_STATUSES),
        EmailQueueItem.retry_count == observed,
    ).update({
        EmailQueueItem.status: outcome.status,
        EmailQueueItem.retry_count: outcome.retry_count,
        EmailQueueItem.next_retry_at: outcome.next_retry_at,
        EmailQueueItem.last_attempt_at: now,
        EmailQueueItem.error_message: error_message,
        EmailQueueItem.updated_at: now,
    }, synchronize_session=False)
    db.commit()
    if updated != 1:
        logger.warning(f"Email {email.id} changed concurrently; failed attempt not recorded")
        return None
    return outcome


def schedule_retry(db: Session, email: EmailQueueItem, now: datetime) -> Optional[AttemptOutcome]:
    """Reserve the next attempt for a stuck email before re-triggering it"""
    now = ensure_utc(now)
    observed = email.retry_count or 0
    new_count = observed + 1
    next_retry_at = next_retry_time(observed, now)

    updated = db.query(EmailQueueItem).filter(
        EmailQueueItem.id == email.id,
        EmailQueueItem.status.in_(PENDING_STATUSES),
        EmailQueueItem.retry_count == observed,
    ).update({
        EmailQueueItem.retry_count: new_count,
        EmailQueueItem.next_retry_at: next_retry_at,
        EmailQueueItem.error_message: f"auto-retry {new_count}/{email.max_retries}: stuck email detected",
        EmailQueueItem.retry_reserved: True,
        EmailQueueItem.updated_at: now,
    }, synchronize_session=False)
    db.commit()
    if updated != 1:
        return None
    return AttemptOutcome(EmailStatus.PENDING.value, new_count, next_retry_at)


def dead_letter(db: Session, email: EmailQueueItem, now: datetime, error_message: str = MAX_RETRIES_EXCEEDED) -> bool:
    """pending -> failed without another attempt"""
    now = ensure_utc(now)
    updated = db.query(EmailQueueItem).filter(
        EmailQueueItem.id == email.id,
        EmailQueueItem.status.in_(PENDING_STATUSES),
    ).update({
        EmailQueueItem.status: EmailStatus.FAILED.value,
        EmailQueueItem.next_retry_at: None,
        EmailQueueItem.error_message: error_message,
        EmailQueueItem.updated_at: now,
    }, synchronize_session=False)
    db.commit()
    return updated == 1


def _pending_and_due(now: datetime):
    return (
        EmailQueueItem.status.in_(PENDING_STATUSES),
        EmailQueueItem.scheduled_at <= now,
    )


def find_stuck_emails(db: Session, now: datetime, threshold: timedelta) -> List[EmailQueueItem]:
    """Pending emails older than the threshold whose retry time has passed"""
    now = ensure_utc(now)
    return db.query(EmailQueueItem).filter(
        *_pending_and_due(now),
        or_(EmailQueueItem.next_retry_at.is_(None), EmailQueueItem.next_retry_at < now),
        EmailQueueItem.created_at < now - threshold,
    ).order_by(EmailQueueItem.created_at.asc()).all()


def find_never_attempted_emails(db: Session, now: datetime, threshold: timedelta) -> List[EmailQueueItem]:
    """Pending emails past the threshold that no processor has touched"""
    now = ensure_utc(now)
    return db.query(EmailQueueItem).filter(
        *_pending_and_due(now),
        EmailQueueItem.created_at < now - threshold,
        or_(EmailQueueItem.retry_count == 0, EmailQueueItem.last_attempt_at.is_(None)),
    ).order_by(EmailQueueItem.created_at.asc()).all()


def find_due_emails(db: Session, now: datetime, limit: int) -> List[EmailQueueItem]:
    """Pending emails ready to send now, oldest first"""
    now = ensure_utc(now)
    return db.query(EmailQueueItem).filter(
        *_pending_and_due(now),
        or_(EmailQueueItem.next_retry_at.is_(None), EmailQueueItem.next_retry_at <= now),
    ).order_by(EmailQueueItem.created_at.asc()).limit(limit).all()


def count_pending(db: Session) -> int:
    return db.query(func.count(EmailQueueItem.id)).filter(
        EmailQueueItem.status.in_(PENDING_STATUSES)
    ).scalar() or 0


def count_failed(db: Session) -> int:
    return db.query(func.count(EmailQueueItem.id)).filter(
        EmailQueueItem.status == EmailStatus.FAILED.value
    ).scalar() or 0


def oldest_pending_created_at(db: Session) -> Optional[datetime]:
    oldest = db.query(func.min(EmailQueueItem.created_at)).filter(
        EmailQueueItem.status.in_(PENDING_STATUSES)
    ).scalar()
    if isinstance(oldest, str):
        # SQLite returns aggregate datetimes as text
        oldest = datetime.fromisoformat(oldest)
    return ensure_utc(oldest)


def average_processing_seconds(db: Session, now: datetime, window: timedelta = timedelta(hours=24), sample: int = 100) -> float:
    """Mean created_at -> sent_at latency over recently sent emails"""
    now = ensure_utc(now)
    recent = db.query(EmailQueueItem.created_at, EmailQueueItem.sent_at).filter(
        EmailQueueItem.status == EmailStatus.SENT.value,
        EmailQueueItem.sent_at.isnot(None),
        EmailQueueItem.sent_at >= now - window,
    ).limit(sample).all()
    if not recent:
        return 0.0
    total = sum((ensure_utc(sent_at) - ensure_utc(created_at)).total_seconds() for created_at, sent_at in recent)
    return total / len(recent)


def record_health_snapshot(
    db: Session,
    now: datetime,
    pending_count: int,
    stuck_count: int,
    failed_count: int,
    processing_time_avg_ms: Optional[int],
    health_status: str,
) -> EmailQueueHealth:
    snapshot = EmailQueueHealth(
        check_timestamp=ensure_utc(now),
        pending_count=pending_count,
        stuck_count=stuck_count,
        failed_count=failed_count,
        processing_time_avg_ms=processing_time_avg_ms,
        health_status=health_status,
    )
    db.add(snapshot)
    db.commit()
    return snapshot


def get_health_history(db: Session, limit: int = 100) -> List[EmailQueueHealth]:
    return db.query(EmailQueueHealth).order_by(EmailQueueHealth.check_timestamp.desc()).limit(limit).all()
