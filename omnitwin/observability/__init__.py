"""
Observability package for omnitwin.

Provides Prometheus metrics and monitoring utilities.
"""

from omnitwin.observability.metrics import (
    get_metrics_handler,
    track_cache_op,
    track_discrepancy,
    track_error_reported,
    track_ingest,
    track_retry,
)

__all__ = [
    "track_ingest",
    "track_retry",
    "track_discrepancy",
    "track_cache_op",
    "track_error_reported",
    "get_metrics_handler",
]
