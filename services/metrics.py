"""
Prometheus metrics for the verification core.

The HTTP request metrics live next to the /metrics route in
``api/routes/metrics.py``; this module holds the domain counters so the
services can record them without importing the API layer.
"""
from prometheus_client import Counter

REGISTRY_CALLS = Counter(
    "idv_registry_calls_total",
    "Registry calls by operation and outcome",
    ["operation", "outcome"],
)

QUOTA_REJECTIONS = Counter(
    "idv_quota_rejections_total",
    "Registry calls refused because the caller's daily budget was exhausted",
)

SESSIONS_FINISHED = Counter(
    "idv_sessions_finished_total",
    "Verification sessions reaching SUCCESS or CANCELLED",
    ["method", "state"],
)

STORE_FAILURES = Counter(
    "idv_store_failures_total",
    "Record store write failures by operation",
    ["operation"],
)
