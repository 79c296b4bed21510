"""Prometheus metric inventory.

Every metric the service exports is declared here; the modules that own
the behaviour import and update them.  Scraped from ``GET /metrics``.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# HTTP (MetricsMiddleware)
# ---------------------------------------------------------------------------

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests by method, endpoint, and status code",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

ACTIVE_REQUESTS = Gauge(
    "http_active_requests",
    "Number of HTTP requests currently being processed",
)

RATE_LIMIT_HITS = Counter(
    "rate_limit_hits_total",
    "Requests rejected by rate limiting (429s)",
    ["limit"],  # "enrollments" or "api"
)

# ---------------------------------------------------------------------------
# Enrollment flow
# ---------------------------------------------------------------------------

ENROLLMENT_OUTCOMES = Counter(
    "enrollment_outcomes_total",
    "Enrollment attempts by outcome",
    ["outcome"],  # "created" or the lowercased error code
)

TRANSACTION_RETRIES = Counter(
    "enrollment_transaction_retries_total",
    "Enrollment transactions retried after a transient database failure",
)

ENROLLMENT_DURATION = Histogram(
    "enrollment_duration_seconds",
    "Wall time of a successful enrollment, retries included",
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

OUTBOX_EFFECTS = Counter(
    "outbox_effects_total",
    "After-commit side effects by kind and result",
    ["kind", "result"],  # kind: cache|job|event, result: ok|failed
)

# ---------------------------------------------------------------------------
# Cache and background work
# ---------------------------------------------------------------------------

CACHE_OPERATIONS = Counter(
    "cache_operations_total",
    "Cache get operations by result",
    ["operation"],  # "hit" or "miss"
)

QUEUE_DEPTH = Gauge(
    "task_queue_depth",
    "Number of tasks waiting in a queue",
    ["queue_name"],
)

WORKER_TASKS = Counter(
    "worker_tasks_total",
    "Tasks processed by the worker",
    ["queue_name", "result"],  # result: ok|retried|dead
)
