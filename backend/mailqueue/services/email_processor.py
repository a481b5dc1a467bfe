"""Single-email processor behind the queue webhook.

One call = at most one provider attempt for one email. The claim is a
conditional update, not a lock: two concurrent calls for the same id can
both pass it and both send. Delivery is at-least-once by design.
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mailqueue.core.config import settings
from mailqueue.core.metrics import email_dead_letter_counter, email_send_attempts_counter
from mailqueue.core.otel import get_tracer
from mailqueue.db.email_queue import (
    claim_email, claim_reserved_email, find_due_emails, get_email, mark_sent, record_failed_attempt
)
from mailqueue.models.email_queue import EmailQueueItem, EmailStatus, PENDING_STATUSES
from mailqueue.services.email_service import (
    EmailConfigurationError, EmailDeliveryError, ensure_email_configured, send_email
)
from mailqueue.services.retry_policy import is_due
from mailqueue.utils.timeutils import ensure_utc, utcnow

logger = logging.getLogger("email")


@dataclass
class ProcessResult:
    """Outcome of one processor call"""
    email_id: str
    success: bool
    status: Optional[str] = None
    skipped: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None


@dataclass
class BatchResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0


def deliver(
    db: Session,
    email: EmailQueueItem,
    now: datetime,
    sender: Callable = send_email,
    count_attempt: bool = True,
    path: str = "webhook",
) -> ProcessResult:
    """Send an already-claimed email and write the resulting state.

    Success moves it to ``sent``. A delivery error consumes one attempt and
    either schedules a backoff retry or dead-letters it. A configuration
    error writes nothing.
    """
    email_id = email.id
    with get_tracer().start_as_current_span("email.deliver") as span:
        span.set_attribute("email.id", email_id)
        span.set_attribute("email.path", path)
        try:
            result = sender(email)
        except EmailConfigurationError as e:
            logger.error(f"Cannot send email {email_id}: {e}")
            return ProcessResult(email_id, False, status=email.status, error=str(e), error_kind=e.kind)
        except EmailDeliveryError as e:
            return _record_failure(db, email, now, e, count_attempt, path)
        except Exception as e:
            logger.error(f"Unexpected sender failure for email {email_id}: {e}", exc_info=True)
            return _record_failure(db, email, now, EmailDeliveryError(str(e)), count_attempt, path)

        email_send_attempts_counter.labels(path=path, outcome="sent").inc()
        if not mark_sent(db, email, now, provider_message_id=result.message_id, count_attempt=count_attempt):
            # Someone else finished this email while we were sending
            logger.warning(f"Email {email_id} delivered but was no longer pending; possible duplicate send")
        else:
            logger.info(f"✅ Email {email_id} marked as sent via {path} (Resend ID: {result.message_id})")
        return ProcessResult(email_id, True, status=EmailStatus.SENT.value)


def _record_failure(db, email, now, error: EmailDeliveryError, count_attempt: bool, path: str) -> ProcessResult:
    email_id = email.id
    email_send_attempts_counter.labels(path=path, outcome="failed").inc()
    outcome = record_failed_attempt(db, email, now, str(error), count_attempt=count_attempt)
    if outcome is None:
        return ProcessResult(email_id, False, error=str(error), error_kind=error.kind)

    if outcome.status == EmailStatus.FAILED.value:
        email_dead_letter_counter.labels(source="processor").inc()
        logger.warning(f"❌ Email {email_id} failed permanently after {outcome.retry_count} attempts: {error}")
    else:
        logger.info(
            f"Email {email_id} failed ({error.kind}), retry {outcome.retry_count}/{email.max_retries} "
            f"scheduled for {outcome.next_retry_at.isoformat()}"
        )
    return ProcessResult(email_id, False, status=outcome.status, error=str(error), error_kind=error.kind)


def process_email(
    db: Session,
    email_id: str,
    now: Optional[datetime] = None,
    sender: Callable = send_email,
    reserved_retry_count: Optional[int] = None,
) -> ProcessResult:
    """Process one queued email by id.

    Missing, already-processed and not-yet-due emails are successful no-ops.

    Args:
        db: Database session
        email_id: Queue row id
        now: Clock override (defaults to current UTC time)
        sender: Sender adapter, ``send_email`` unless testing
        reserved_retry_count: retry_count a sweep already recorded for this
            attempt. Only the first call that finds that reservation still
            open skips counting; any later call is counted normally
    """
    now = ensure_utc(now) or utcnow()
    with get_tracer().start_as_current_span("email.process") as span:
        span.set_attribute("email.id", email_id)
        try:
            ensure_email_configured()
        except EmailConfigurationError as e:
            logger.error(f"Email {email_id} left untouched: {e}")
            return ProcessResult(email_id, False, error=str(e), error_kind=e.kind)

        try:
            email = None
            if reserved_retry_count:
                email = claim_reserved_email(db, email_id, reserved_retry_count, now)
            counted = email is not None
            if email is None:
                email = claim_email(db, email_id, now)
            if email is None:
                return _explain_skip(db, email_id, now)

            return deliver(db, email, now, sender=sender, count_attempt=not counted)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error processing email {email_id}: {e}", exc_info=True)
            return ProcessResult(email_id, False, error=f"database error: {e}", error_kind="database")


def _explain_skip(db: Session, email_id: str, now: datetime) -> ProcessResult:
    email = get_email(db, email_id)
    if email is None:
        logger.info(f"Email {email_id} not found; nothing to do")
        return ProcessResult(email_id, True, skipped="not_found")
    if email.status in PENDING_STATUSES and not is_due(email, now):
        logger.info(f"Email {email_id} scheduled for {ensure_utc(email.scheduled_at).isoformat()}; skipping")
        return ProcessResult(email_id, True, status=email.status, skipped="not_due")
    logger.info(f"Email {email_id} is {email.status}; nothing to do")
    return ProcessResult(email_id, True, status=email.status, skipped="not_pending")


def process_due_emails(
    db: Session,
    limit: Optional[int] = None,
    sender: Callable = send_email,
    delay_seconds: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], datetime] = utcnow,
) -> BatchResult:
    """Process up to ``limit`` due pending emails, oldest first, one at a time.

    The clock is read again for every email so timestamps and backoff reflect
    when each send actually happened, after the throttle pauses.
    """
    limit = limit or settings.EMAIL_BATCH_LIMIT
    if delay_seconds is None:
        delay_seconds = settings.EMAIL_BACKUP_INTER_JOB_DELAY_SECONDS

    email_ids = [email.id for email in find_due_emails(db, ensure_utc(clock()), limit)]
    logger.info(f"Found {len(email_ids)} due emails")

    batch = BatchResult()
    for index, email_id in enumerate(email_ids):
        if index > 0 and delay_seconds > 0:
            sleep(delay_seconds)
        result = process_email(db, email_id, now=clock(), sender=sender)
        if result.skipped:
            continue
        batch.processed += 1
        if result.success:
            batch.succeeded += 1
        else:
            batch.failed += 1

    logger.info(f"Batch complete: {batch.succeeded}/{batch.processed} succeeded")
    return batch
