"""
Prometheus metrics for the omnitwin digital twin core.

Tracks key metrics for observability:
- Ingestion outcomes and latency
- Concurrency / connectivity retries
- Cross-source discrepancies
- Cache hit/miss ratio
- Reported errors by kind

Usage:
    from omnitwin.observability.metrics import track_ingest, get_metrics_handler

    track_ingest(result="accepted", latency_s=0.012, attempts=1)

    # Expose metrics endpoint
    app.add_route("/metrics", get_metrics_handler())
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

ingest_events_total = Counter(
    "omnitwin_ingest_events_total", "Total ingestion events processed", ["result"]
)

ingest_latency_seconds = Histogram(
    "omnitwin_ingest_latency_seconds",
    "End-to-end latency of a single ingest call",
    ["result"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

ingest_attempts = Histogram(
    "omnitwin_ingest_attempts",
    "Merge+update attempts needed per ingest call",
    [],
    buckets=(1, 2, 3, 4, 5, 10),
)

retries_total = Counter(
    "omnitwin_retries_total", "Retries performed after transient faults", ["kind"]
)

discrepancies_total = Counter(
    "omnitwin_discrepancies_total",
    "Cross-source discrepancies flagged by the conflict resolver",
    ["winner"],
)

material_changes_total = Counter(
    "omnitwin_material_changes_total", "Accepted updates classified as material changes"
)

node_versions_written_total = Counter(
    "omnitwin_node_versions_written_total", "Successful optimistic node writes", ["field"]
)

cache_ops_total = Counter(
    "omnitwin_cache_ops_total", "Cache operations by outcome", ["op", "result"]
)

cache_degraded_reads_total = Counter(
    "omnitwin_cache_degraded_reads_total",
    "Node reads served from the durable store because the cache was unreachable",
)

errors_reported_total = Counter(
    "omnitwin_errors_reported_total", "Errors classified by the error reporter", ["kind", "resolution"]
)

alert_dispatch_failures_total = Counter(
    "omnitwin_alert_dispatch_failures_total", "Administrator alerts that could not be delivered"
)


def track_ingest(result: str, latency_s: float, attempts: int = 1) -> None:
    """
    Track metrics for one ingest call.

    Args:
        result: "accepted" or the error kind that ended the call
        latency_s: Wall-clock duration in seconds
        attempts: Number of merge+update attempts made
    """
    ingest_events_total.labels(result=result).inc()
    ingest_latency_seconds.labels(result=result).observe(max(0.0, latency_s))
    if attempts > 0:
        ingest_attempts.observe(attempts)


def track_retry(kind: str) -> None:
    retries_total.labels(kind=kind).inc()


def track_discrepancy(winner: str) -> None:
    discrepancies_total.labels(winner=winner).inc()


def track_material_change() -> None:
    material_changes_total.inc()


def track_node_write(field: str) -> None:
    node_versions_written_total.labels(field=field).inc()


def track_cache_op(op: str, result: str) -> None:
    cache_ops_total.labels(op=op, result=result).inc()


def track_degraded_read() -> None:
    cache_degraded_reads_total.inc()


def track_error_reported(kind: str, resolution: str) -> None:
    errors_reported_total.labels(kind=kind, resolution=resolution).inc()


def track_alert_failure() -> None:
    alert_dispatch_failures_total.inc()


def get_metrics_handler():
    """
    Get a handler for the /metrics endpoint.

    Returns:
        Async handler function for Starlette/FastAPI
    """

    async def metrics_endpoint(request=None):
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return metrics_endpoint


__all__ = [
    "track_ingest",
    "track_retry",
    "track_discrepancy",
    "track_material_change",
    "track_node_write",
    "track_cache_op",
    "track_degraded_read",
    "track_error_reported",
    "track_alert_failure",
    "get_metrics_handler",
]
