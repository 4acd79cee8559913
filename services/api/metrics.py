"""Prometheus metrics for the finalization service.

Exposes key metrics for monitoring:
- Request counts by endpoint and status
- Request duration histograms
- Dialog flow transitions and supplier writes
- Price discrepancies, commits and background sync failures

Based on Prometheus client documentation:
https://prometheus.io/docs/practices/naming/
"""

from prometheus_client import Counter, Histogram, generate_latest
from prometheus_client.openmetrics.exposition import CONTENT_TYPE_LATEST

# Request metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Dialog flow metrics
flow_transitions_total = Counter(
    "finalization_flow_transitions_total",
    "Total dialog flow state transitions",
    ["from_state", "to_state"],
)

supplier_auto_resolved_total = Counter(
    "finalization_supplier_auto_resolved_total",
    "Supplier steps resolved from stored payment terms without user input",
)

supplier_writes_total = Counter(
    "finalization_supplier_writes_total",
    "Total supplier writes",
    ["action", "status"],  # create/update/skipped, success/failed
)

# Save path metrics
price_discrepancies_total = Counter(
    "finalization_price_discrepancies_total",
    "Total price discrepancies detected before commit",
)

commits_total = Counter(
    "finalization_commits_total",
    "Total document commits",
    ["status"],  # success, failed
)

commit_duration_seconds = Histogram(
    "finalization_commit_duration_seconds",
    "Document commit duration in seconds",
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)

sync_failures_total = Counter(
    "finalization_sync_failures_total",
    "Background catalog synchronizations that failed",
)


def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics in text format.

    Returns:
        Tuple of (metrics bytes, content type)
    """
    return generate_latest(), CONTENT_TYPE_LATEST
