"""
Metrics instrumentation for observability.
Exposes Prometheus-compatible metrics at /metrics endpoint.
"""

from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response

# Reservation metrics
reservation_attempts = Counter(
    'reservation_attempts_total',
    'Reservation requests by outcome',
    ['outcome']  # booked, waitlisted, replayed, rejected
)

reservation_latency = Histogram(
    'reservation_latency_seconds',
    'Reservation request latency',
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0]
)

cancellations = Counter(
    'reservation_cancellations_total',
    'Cancellations by reason',
    ['reason']  # member_initiated, late_cancel, staff_cancel, class_cancelled
)

# Capacity accountant metrics
claim_retries = Counter(
    'capacity_claim_retries_total',
    'Capacity claim retries due to version conflicts',
    ['operation']
)

claim_conflicts = Counter(
    'capacity_claim_conflicts_total',
    'Capacity claims that exhausted their retries',
    ['operation']
)

# Waitlist / promotion metrics
promotions = Counter(
    'waitlist_promotions_total',
    'Waitlist promotion transitions',
    ['result']  # promoted, accepted, expired, requeued
)

waitlist_length = Gauge(
    'waitlist_length',
    'Waitlist length of the most recently touched class instance'
)

# Attendance metrics
check_ins = Counter(
    'check_ins_total',
    'Check-ins by kind',
    ['kind']  # reserved, walk_in
)

no_shows = Counter(
    'no_shows_total',
    'Reservations marked no-show by the completion sweep'
)

# Background sweep metrics
sweep_runs = Counter(
    'sweep_runs_total',
    'Background sweep runs',
    ['result']  # ok, error
)

sweep_failures = Counter(
    'sweep_class_failures_total',
    'Classes a sweep step could not process',
    ['step']  # expire_promotions, complete_class
)

confirmation_reminders = Counter(
    'confirmation_reminders_total',
    'Confirmation reminders sent by the sweep'
)

# Side effects after commit
notifications = Counter(
    'notifications_total',
    'Notification deliveries',
    ['kind', 'result']  # sent, failed
)

payment_effects = Counter(
    'payment_effects_total',
    'Payment authority calls made after commit',
    ['action', 'result']  # capture/void/refund/fee, ok/failed
)


def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Usage:
        @app.get("/metrics")
        def metrics():
            return metrics_endpoint()
    """
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


# Convenience functions for instrumentation
def record_reservation(outcome: str):
    """Record reservation outcome. Outcome: booked, waitlisted, replayed, rejected"""
    reservation_attempts.labels(outcome=outcome).inc()


def record_claim_retry(operation: str):
    claim_retries.labels(operation=operation).inc()


def record_claim_conflict(operation: str):
    claim_conflicts.labels(operation=operation).inc()


def record_promotion(result: str, count: int = 1):
    """Record promotion transitions. Result: promoted, accepted, expired, requeued"""
    if count:
        promotions.labels(result=result).inc(count)


def record_notification(kind: str, delivered: bool):
    result = "sent" if delivered else "failed"
    notifications.labels(kind=kind, result=result).inc()


def record_payment_effect(action: str, ok: bool):
    payment_effects.labels(action=action, result="ok" if ok else "failed").inc()


def record_sweep_failure(step: str):
    sweep_failures.labels(step=step).inc()
