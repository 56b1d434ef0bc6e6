"""Failure classification and administrator alerting.

Every failure handled by the core ends up here exactly once, at the point
where it is finally resolved: rejected upstream, exhausted after retries,
or recovered by a retry. Each report becomes one structured log record, one
Prometheus sample and one alert on the configured channel.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import psycopg
import pydantic
import redis

from omnitwin.common.exceptions import ErrorKind, TwinError
from omnitwin.common.logger import get_correlation_context, get_enhanced_logger
from omnitwin.observability.metrics import track_alert_failure, track_error_reported

logger = get_enhanced_logger(__name__)

_CONNECTIVITY_TYPES = (
    redis.ConnectionError,
    redis.TimeoutError,
    psycopg.OperationalError,
    ConnectionError,
    TimeoutError,
    OSError,
)


def classify(error: BaseException | ErrorKind) -> ErrorKind:
    """Map an exception (or an explicit kind) onto the four error kinds."""
    if isinstance(error, ErrorKind):
        return error
    if isinstance(error, TwinError):
        return error.kind
    if isinstance(error, (pydantic.ValidationError, ValueError, TypeError, KeyError)):
        return ErrorKind.VALIDATION
    if isinstance(error, _CONNECTIVITY_TYPES):
        return ErrorKind.CONNECTIVITY
    logger.warning(
        "Unclassified error treated as connectivity",
        extra_fields={"error_type": type(error).__name__},
    )
    return ErrorKind.CONNECTIVITY


@dataclass
class ErrorReport:
    kind: ErrorKind
    message: str
    resolution: str
    correlation_id: str | None = None
    node_id: str | None = None
    source: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    reported_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "resolution": self.resolution,
            "correlation_id": self.correlation_id,
            "node_id": self.node_id,
            "source": self.source,
            "context": self.context,
            "reported_at": self.reported_at.isoformat(),
        }


class AlertChannel(ABC):
    """Destination for administrator alerts."""

    @abstractmethod
    def send(self, report: ErrorReport) -> None:
        pass


class LoggingAlertChannel(AlertChannel):
    """Writes alerts to a dedicated logger. Default when no channel is configured."""

    def __init__(self):
        self.logger = get_enhanced_logger("omnitwin.alerts")

    def send(self, report: ErrorReport) -> None:
        self.logger.error("Administrator alert", extra_fields=report.to_dict())


class RedisAlertChannel(AlertChannel):
    """Publishes alerts as JSON on a Redis pub/sub channel."""

    def __init__(self, redis_client: redis.Redis, channel: str = "omnitwin:alerts"):
        self.redis = redis_client
        self.channel = channel

    def send(self, report: ErrorReport) -> None:
        self.redis.publish(self.channel, json.dumps(report.to_dict(), default=str))


class ErrorReporter:
    def __init__(self, alert_channel: AlertChannel | None = None):
        self.alert_channel = alert_channel or LoggingAlertChannel()

    def report(
        self,
        error: BaseException | ErrorKind,
        context: dict[str, Any] | None = None,
        resolution: str = "rejected",
    ) -> ErrorReport:
        """Classify, log and alert one failure.

        Args:
            error: The exception (or kind) being reported
            context: Extra fields; node_id/source are picked up when present
            resolution: "rejected", "exhausted" or "recovered"
        """
        context = dict(context or {})
        correlation = get_correlation_context()
        kind = classify(error)

        node_id = context.pop("node_id", None) or getattr(error, "node_id", None)
        source = context.pop("source", None) or getattr(error, "source", None)
        node_id = node_id or correlation.get("node_id")
        source = source or correlation.get("source")
        if isinstance(error, TwinError):
            context = {**error.details, **context}

        report = ErrorReport(
            kind=kind,
            message=str(error.value if isinstance(error, ErrorKind) else error),
            resolution=resolution,
            correlation_id=context.pop("correlation_id", None) or correlation.get("correlation_id"),
            node_id=node_id,
            source=source,
            context=context,
        )

        log = logger.info if resolution == "recovered" else logger.error
        log(f"{kind.value} error {resolution}", extra_fields=report.to_dict())
        track_error_reported(kind.value, resolution)

        try:
            self.alert_channel.send(report)
        except (redis.RedisError, OSError) as e:
            track_alert_failure()
            logger.error(
                "Failed to dispatch administrator alert",
                extra_fields={"error": str(e), "kind": kind.value},
            )
        return report
