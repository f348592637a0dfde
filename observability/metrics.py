"""
Prometheus metrics for the conversation bot.

Business metrics recorded by the dispatcher and delivery path. HTTP
request metrics live in api.middleware.metrics.
"""

from prometheus_client import Counter, Histogram

EVENTS = Counter(
    "bot_events_total",
    "Events handled by the dispatcher",
    ["outcome"],  # applied, duplicate, stale, unchanged, contended, unavailable
)
STORAGE_RETRIES = Counter(
    "bot_storage_retries_total",
    "Dispatch cycles retried because of the storage backend",
    ["backend", "reason"],  # reason: conflict, unavailable
)
DELIVERIES = Counter(
    "bot_deliveries_total",
    "Outbound action deliveries",
    ["kind", "status"],
)
AUDIT_FAILURES = Counter(
    "bot_audit_log_failures_total",
    "Failed best-effort audit log writes",
    ["backend"],
)
DISPATCH_LATENCY = Histogram(
    "bot_dispatch_duration_seconds",
    "Time to dispatch one event, retries included",
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)


def record_event(outcome: str):
    EVENTS.labels(outcome=outcome).inc()


def record_retry(backend: str, reason: str):
    STORAGE_RETRIES.labels(backend=backend, reason=reason).inc()


def record_delivery(kind: str, success: bool):
    DELIVERIES.labels(kind=kind, status="ok" if success else "failed").inc()


def record_audit_failure(backend: str):
    AUDIT_FAILURES.labels(backend=backend).inc()


def record_dispatch_latency(seconds: float):
    DISPATCH_LATENCY.observe(seconds)
