"""Prometheus metrics for the email pipeline"""
from prometheus_client import Counter, Gauge, REGISTRY


def _counter(name, documentation, labels=()):
    # Re-importing the module (tests, reloads) must not re-register collectors
    try:
        return Counter(name, documentation, list(labels))
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


def _gauge(name, documentation, labels=()):
    try:
        return Gauge(name, documentation, list(labels))
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Delivery metrics
email_send_attempts_counter = _counter(
    'mailqueue_email_send_attempts_total',
    'Total number of provider send attempts',
    ['path', 'outcome']
)

email_dead_letter_counter = _counter(
    'mailqueue_email_dead_lettered_total',
    'Total number of emails moved to failed after exhausting retries',
    ['source']
)

# Sweep metrics
sweep_runs_counter = _counter(
    'mailqueue_sweep_runs_total',
    'Total number of recovery sweep runs',
    ['sweep', 'status']
)

sweep_emails_processed_counter = _counter(
    'mailqueue_sweep_emails_processed_total',
    'Total number of emails handled by recovery sweeps',
    ['sweep']
)

# Queue gauges (updated by the monitor)
queue_pending_gauge = _gauge(
    'mailqueue_queue_pending',
    'Number of pending emails at the last monitor run'
)

queue_stuck_gauge = _gauge(
    'mailqueue_queue_stuck',
    'Number of stuck emails at the last monitor run'
)

queue_oldest_pending_minutes_gauge = _gauge(
    'mailqueue_queue_oldest_pending_minutes',
    'Age in minutes of the oldest pending email at the last monitor run'
)

queue_health_gauge = _gauge(
    'mailqueue_queue_health',
    'Queue health classification (1 for the current status, 0 otherwise)',
    ['status']
)


def update_queue_gauges(total_pending: int, total_stuck: int, oldest_pending_age: int, health_status: str) -> None:
    """Publish the monitor's view of the queue"""
    queue_pending_gauge.set(total_pending)
    queue_stuck_gauge.set(total_stuck)
    queue_oldest_pending_minutes_gauge.set(oldest_pending_age)
    for status in ("healthy", "warning", "critical"):
        queue_health_gauge.labels(status=status).set(1 if status == health_status else 0)
