"""Recovery sweeps for emails the immediate webhook trigger did not finish.

Two policies share the same claim / backoff / dead-letter primitives:

* ``StalenessSweep`` (the monitor): pending emails older than the general
  staleness threshold whose retry time has passed. It reserves the next
  attempt (retry_count, next_retry_at) before re-triggering the webhook, so
  a crash or hung trigger still leaves the backoff window in place.
* ``NeverAttemptedSweep`` (the backup reaper): emails nobody has touched
  shortly after being queued. Webhook first, then a direct in-process send,
  with a fixed pause between emails to stay under the provider rate limit.

One email's failure is logged and reported; it never aborts the sweep.
"""
import logging
import math
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from mailqueue.core.config import settings
from mailqueue.core.metrics import (
    email_dead_letter_counter, sweep_emails_processed_counter, sweep_runs_counter, update_queue_gauges
)
from mailqueue.core.otel import get_tracer
from mailqueue.db.email_queue import (
    average_processing_seconds, claim_email, count_failed, count_pending, dead_letter,
    find_never_attempted_emails, find_stuck_emails, oldest_pending_created_at, record_health_snapshot,
    reload_email, schedule_retry
)
from mailqueue.models.email_queue import EmailQueueItem, EmailStatus, PENDING_STATUSES
from mailqueue.schemas.email import (
    BackupRetryDetail, BackupRetryResponse, EmailSummary, MonitorMetrics, MonitorReport, RetriedEmail
)
from mailqueue.services.email_processor import deliver
from mailqueue.services.email_service import EmailConfigurationError, ensure_email_configured, send_email
from mailqueue.services.retry_policy import ThresholdKind, default_threshold, is_stale, retries_exhausted
from mailqueue.services.webhook_trigger import WebhookTrigger, get_webhook_trigger
from mailqueue.utils.timeutils import ensure_utc, utcnow

monitor_logger = logging.getLogger("email_monitor")
backup_logger = logging.getLogger("email_backup")


def classify_health(total_stuck: int, oldest_pending_age: int) -> str:
    """healthy / warning / critical from stuck count and oldest pending age (minutes)"""
    if (total_stuck > settings.EMAIL_HEALTH_CRITICAL_STUCK
            or oldest_pending_age > settings.EMAIL_HEALTH_CRITICAL_AGE_MINUTES):
        return "critical"
    if (total_stuck > settings.EMAIL_HEALTH_WARNING_STUCK
            or oldest_pending_age > settings.EMAIL_HEALTH_WARNING_AGE_MINUTES):
        return "warning"
    return "healthy"


class RecoveryPolicy(ABC):
    """A sweep over pending emails matching one staleness rule"""

    name: str = "recovery"
    kind: ThresholdKind = ThresholdKind.GENERAL

    def __init__(
        self,
        db: Session,
        trigger: Optional[WebhookTrigger] = None,
        sender: Callable = send_email,
        clock: Callable[[], datetime] = utcnow,
        threshold: Optional[timedelta] = None,
    ):
        self.db = db
        self.sender = sender
        self.clock = clock
        self.trigger = trigger or get_webhook_trigger(db=db, sender=sender, clock=clock)
        self.threshold = threshold or default_threshold(self.kind)

    @abstractmethod
    def query(self, now: datetime) -> List[EmailQueueItem]:
        ...

    def find_candidates(self, now: datetime) -> List[EmailQueueItem]:
        # The query narrows in SQL; is_stale is the rule of record
        return [email for email in self.query(now) if is_stale(email, self.kind, now, self.threshold)]

    @abstractmethod
    def run(self):
        ...


class StalenessSweep(RecoveryPolicy):
    """Email monitor: reschedule or dead-letter stuck emails and report queue health"""

    name = "monitor"
    kind = ThresholdKind.GENERAL

    def query(self, now: datetime) -> List[EmailQueueItem]:
        return find_stuck_emails(self.db, now, self.threshold)

    def recover(self, email: EmailQueueItem, now: datetime) -> RetriedEmail:
        email_id = email.id
        retry_count = email.retry_count or 0

        if retries_exhausted(retry_count, email.max_retries):
            monitor_logger.info(
                f"❌ Email {email_id} has exceeded max retries ({retry_count}/{email.max_retries}), marking as failed"
            )
            if not dead_letter(self.db, email, now):
                return RetriedEmail(email_id=email_id, action="skipped", reason="changed_concurrently")
            email_dead_letter_counter.labels(source="monitor").inc()
            return RetriedEmail(
                email_id=email_id, action="marked_failed", reason="max_retries_exceeded", retry_count=retry_count
            )

        outcome = schedule_retry(self.db, email, now)
        if outcome is None:
            return RetriedEmail(email_id=email_id, action="skipped", reason="changed_concurrently")

        monitor_logger.info(
            f"🔄 Scheduled retry for email {email_id} (attempt {outcome.retry_count}/{email.max_retries})"
        )
        result = self.trigger.trigger(email_id, retry_count=outcome.retry_count, manual_trigger=False)
        if not result.reached:
            monitor_logger.error(f"Failed to trigger webhook for email {email_id}: {result.error}")
            return RetriedEmail(
                email_id=email_id, action="retry_scheduled", retry_count=outcome.retry_count,
                next_retry_at=outcome.next_retry_at, webhook_error=result.error
            )
        if not result.success:
            monitor_logger.warning(f"Webhook reported failure for email {email_id}: {result.error}")
        return RetriedEmail(
            email_id=email_id, action="retried", retry_count=outcome.retry_count,
            next_retry_at=outcome.next_retry_at, webhook_triggered=result.success
        )

    def run(self) -> MonitorReport:
        now = ensure_utc(self.clock())
        with get_tracer().start_as_current_span("email.monitor"):
            monitor_logger.info(f"Looking for emails stuck since {(now - self.threshold).isoformat()}")
            try:
                stuck = self.find_candidates(now)
                stuck_summaries = [EmailSummary.model_validate(email) for email in stuck]
                total_pending = count_pending(self.db)
                oldest = oldest_pending_created_at(self.db)
            except Exception:
                sweep_runs_counter.labels(sweep=self.name, status="error").inc()
                raise

            oldest_pending_age = math.floor((now - oldest).total_seconds() / 60) if oldest else 0
            monitor_logger.info(f"Found {len(stuck)} stuck emails out of {total_pending} pending")

            retried: List[RetriedEmail] = []
            for email in stuck:
                email_id = email.id
                try:
                    retried.append(self.recover(email, now))
                except Exception as e:
                    self.db.rollback()
                    monitor_logger.error(f"Failed to process stuck email {email_id}: {e}", exc_info=True)
                    retried.append(RetriedEmail(email_id=email_id, action="failed_to_retry", error=str(e)))
                sweep_emails_processed_counter.labels(sweep=self.name).inc()

            total_stuck = len(stuck)
            health_status = classify_health(total_stuck, oldest_pending_age)
            try:
                avg_seconds = average_processing_seconds(self.db, now)
                processing_time_avg_ms = int(round(avg_seconds * 1000))
            except Exception as e:
                self.db.rollback()
                monitor_logger.error(f"Failed to compute average processing time: {e}", exc_info=True)
                avg_seconds = 0.0
                processing_time_avg_ms = None

            try:
                record_health_snapshot(
                    self.db, now,
                    pending_count=total_pending,
                    stuck_count=total_stuck,
                    failed_count=count_failed(self.db),
                    processing_time_avg_ms=processing_time_avg_ms,
                    health_status=health_status,
                )
            except Exception as e:
                self.db.rollback()
                monitor_logger.error(f"Failed to record queue health snapshot: {e}", exc_info=True)

            update_queue_gauges(total_pending, total_stuck, oldest_pending_age, health_status)
            sweep_runs_counter.labels(sweep=self.name, status="success").inc()

            report = MonitorReport(
                timestamp=now,
                stuck_emails=stuck_summaries,
                retried_emails=retried,
                health_status=health_status,
                metrics=MonitorMetrics(
                    total_pending=total_pending,
                    total_stuck=total_stuck,
                    total_retried=sum(1 for r in retried if r.action == "retried"),
                    avg_processing_time=int(round(avg_seconds)),
                    oldest_pending_age=oldest_pending_age,
                ),
            )
            monitor_logger.info(
                f"Monitor report: health={health_status}, pending={total_pending}, "
                f"stuck={total_stuck}, retried={report.metrics.total_retried}"
            )
            return report


class NeverAttemptedSweep(RecoveryPolicy):
    """Backup reaper: webhook first, direct send as fallback, serialized with a fixed pause"""

    name = "backup"
    kind = ThresholdKind.NEVER_ATTEMPTED

    def __init__(
        self,
        db: Session,
        trigger: Optional[WebhookTrigger] = None,
        sender: Callable = send_email,
        clock: Callable[[], datetime] = utcnow,
        threshold: Optional[timedelta] = None,
        delay_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(db, trigger=trigger, sender=sender, clock=clock, threshold=threshold)
        if delay_seconds is None:
            delay_seconds = settings.EMAIL_BACKUP_INTER_JOB_DELAY_SECONDS
        self.delay_seconds = delay_seconds
        self.sleep = sleep

    def query(self, now: datetime) -> List[EmailQueueItem]:
        return find_never_attempted_emails(self.db, now, self.threshold)

    def recover(self, email: EmailQueueItem, now: datetime) -> BackupRetryDetail:
        email_id = email.id
        detail = BackupRetryDetail(
            email_id=email_id,
            recipient=email.recipient_email,
            success=False,
            method="none",
            retry_count=email.retry_count or 0,
        )

        backup_logger.info(f"🔗 Attempting to trigger webhook for email {email_id}")
        result = self.trigger.trigger(email_id, retry_count=None, manual_trigger=True)
        if result.success:
            # The processor also reports success when it skipped the email
            current = reload_email(self.db, email_id)
            if current is not None and current.status == EmailStatus.SENT.value:
                detail.success = True
                detail.method = "webhook"
                return detail
            if current is None or current.status not in PENDING_STATUSES:
                state = current.status if current else "missing"
                backup_logger.info(f"Email {email_id} is {state}; webhook had nothing to send")
                detail.error = f"email is {state}"
                return detail
        backup_logger.info(f"Webhook did not deliver email {email_id} ({result.error}); trying direct send")

        try:
            ensure_email_configured()
        except EmailConfigurationError as e:
            backup_logger.error(f"Cannot send email {email_id} directly: {e}")
            detail.error = str(e)
            return detail

        claimed = claim_email(self.db, email_id, now)
        if claimed is None:
            # The webhook (or another sweep) moved it on in the meantime
            current = reload_email(self.db, email_id)
            if current is not None and current.status == EmailStatus.SENT.value:
                detail.success = True
                detail.method = "webhook"
            else:
                detail.error = f"email is {current.status if current else 'missing'}"
            return detail

        delivery = deliver(self.db, claimed, now, sender=self.sender, count_attempt=True, path="direct")
        detail.success = delivery.success
        detail.method = "direct" if delivery.success else "none"
        detail.error = delivery.error
        return detail

    def run(self) -> BackupRetryResponse:
        started = ensure_utc(self.clock())
        with get_tracer().start_as_current_span("email.backup_retry"):
            try:
                stuck = self.find_candidates(started)
            except Exception:
                sweep_runs_counter.labels(sweep=self.name, status="error").inc()
                raise
            backup_logger.info(f"📧 Found {len(stuck)} never-attempted emails")

            details: List[BackupRetryDetail] = []
            for index, email in enumerate(stuck):
                if index > 0 and self.delay_seconds > 0:
                    backup_logger.debug(f"Waiting {self.delay_seconds}s before next email")
                    self.sleep(self.delay_seconds)

                email_id = email.id
                recipient = email.recipient_email
                retry_count = email.retry_count or 0
                backup_logger.info(f"Processing stuck email {index + 1}/{len(stuck)}: {email_id}")
                try:
                    details.append(self.recover(email, ensure_utc(self.clock())))
                except Exception as e:
                    self.db.rollback()
                    backup_logger.error(f"Backup retry failed for email {email_id}: {e}", exc_info=True)
                    details.append(BackupRetryDetail(
                        email_id=email_id, recipient=recipient, success=False,
                        method="none", retry_count=retry_count, error=str(e)
                    ))
                sweep_emails_processed_counter.labels(sweep=self.name).inc()

            succeeded = sum(1 for d in details if d.success)
            sweep_runs_counter.labels(sweep=self.name, status="success").inc()
            backup_logger.info(f"📊 Backup retry complete: {succeeded}/{len(details)} succeeded")
            return BackupRetryResponse(
                success=True,
                message=f"Processed {len(details)} stuck emails",
                processed=len(details),
                succeeded=succeeded,
                failed=len(details) - succeeded,
                details=details,
                timestamp=ensure_utc(self.clock()),
            )
