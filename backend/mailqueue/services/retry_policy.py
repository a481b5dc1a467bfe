"""Backoff schedule and staleness rules shared by the processor and the sweeps.

Everything here is a pure function of its inputs (including ``now``) so the
monitor and the backup reaper agree on what "stuck" means and tests can pin
the clock.
"""
import enum
from datetime import datetime, timedelta
from typing import Optional

from mailqueue.core.config import settings
from mailqueue.models.email_queue import PENDING_STATUSES
from mailqueue.utils.timeutils import ensure_utc


class ThresholdKind(str, enum.Enum):
    """Which staleness rule to apply"""
    # Pending for a long time and not waiting on a scheduled retry
    GENERAL = "general"
    # Never picked up at all shortly after being queued
    NEVER_ATTEMPTED = "never_attempted"


def default_threshold(kind: ThresholdKind) -> timedelta:
    if kind == ThresholdKind.GENERAL:
        return timedelta(minutes=settings.EMAIL_STUCK_THRESHOLD_MINUTES)
    return timedelta(seconds=settings.EMAIL_NEVER_ATTEMPTED_THRESHOLD_SECONDS)


def compute_backoff(attempts_before: int, base_delay: Optional[timedelta] = None) -> timedelta:
    """Delay before the next attempt: ``2^n * base_delay``.

    ``attempts_before`` is the retry_count the job had before the attempt that
    just failed, so the schedule runs 2, 4, 8 ... minutes with the default base.
    """
    if base_delay is None:
        base_delay = timedelta(minutes=settings.EMAIL_RETRY_BASE_DELAY_MINUTES)
    return base_delay * (2 ** max(attempts_before, 0))


def next_retry_time(attempts_before: int, now: datetime, base_delay: Optional[timedelta] = None) -> datetime:
    return ensure_utc(now) + compute_backoff(attempts_before, base_delay)


def retries_exhausted(retry_count: int, max_retries: int) -> bool:
    return retry_count >= max_retries


def is_due(job, now: datetime) -> bool:
    """False while the job is scheduled in the future"""
    scheduled_at = ensure_utc(job.scheduled_at)
    return scheduled_at is None or scheduled_at <= ensure_utc(now)


def is_stale(job, kind: ThresholdKind, now: datetime, threshold: Optional[timedelta] = None) -> bool:
    """Whether a job qualifies for recovery under the given rule"""
    if job.status not in PENDING_STATUSES:
        return False
    if not is_due(job, now):
        return False

    now = ensure_utc(now)
    if threshold is None:
        threshold = default_threshold(kind)
    if ensure_utc(job.created_at) >= now - threshold:
        return False

    if kind == ThresholdKind.GENERAL:
        next_retry_at = ensure_utc(job.next_retry_at)
        return next_retry_at is None or next_retry_at < now

    return (job.retry_count or 0) == 0 or job.last_attempt_at is None
