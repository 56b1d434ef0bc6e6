"""Structured logging with correlation context for omnitwin.

Usage:
    from omnitwin.common.logger import get_enhanced_logger, with_correlation

    logger = get_enhanced_logger(__name__)

    with with_correlation(correlation_id="ingest-abc", node_id="n1"):
        logger.info("Node updated", extra_fields={"version": 2})

Every record emitted inside ``with_correlation`` carries the correlation
fields. Output is JSON lines by default (OMNITWIN_LOG_FORMAT=json) or a
human-readable line (OMNITWIN_LOG_FORMAT=text).
"""

from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

LOG_LEVEL = os.getenv("OMNITWIN_LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("OMNITWIN_LOG_FORMAT", "json").lower()

_correlation: ContextVar[dict[str, Any]] = ContextVar("omnitwin_correlation", default={})
_configured = False


def get_correlation_context() -> dict[str, Any]:
    """Return the correlation fields active in the current context."""
    return dict(_correlation.get())


@contextmanager
def with_correlation(**fields: Any) -> Iterator[dict[str, Any]]:
    """Merge correlation fields into the current context for the block's duration.

    None values are ignored so callers can pass optional ids unconditionally.
    Uses contextvars, so worker threads and asyncio tasks keep separate contexts.
    """
    merged = get_correlation_context()
    merged.update({k: v for k, v in fields.items() if v is not None})
    token = _correlation.set(merged)
    try:
        yield merged
    finally:
        _correlation.reset(token)


class StructuredFormatter(logging.Formatter):
    """JSON formatter that includes correlation context and extra_fields."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_data.update(getattr(record, "correlation", {}) or {})
        log_data.update(getattr(record, "extra_fields", {}) or {})
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """2026-01-01 12:00:00 [INFO] omnitwin.graph.repository [ingest-abc]: Node updated {...}"""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")
        correlation = getattr(record, "correlation", {}) or {}
        prefix = f" [{correlation['correlation_id']}]" if "correlation_id" in correlation else ""
        line = f"{ts} [{record.levelname}] {record.name}{prefix}: {record.getMessage()}"
        extra = getattr(record, "extra_fields", None)
        if extra:
            line += " " + json.dumps(extra, default=str)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class EnhancedLogger(logging.LoggerAdapter):
    """Logger adapter that accepts ``extra_fields=`` and attaches correlation context."""

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        extra_fields = kwargs.pop("extra_fields", None) or {}
        extra = dict(kwargs.get("extra") or {})
        extra["extra_fields"] = extra_fields
        extra["correlation"] = get_correlation_context()
        kwargs["extra"] = extra
        return msg, kwargs


def setup_logging(level: str = LOG_LEVEL, fmt: str = LOG_FORMAT, force: bool = False) -> None:
    """Install a single stream handler on the ``omnitwin`` logger."""
    global _configured
    if _configured and not force:
        return

    root = logging.getLogger("omnitwin")
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter() if fmt == "json" else HumanReadableFormatter())
    root.addHandler(handler)
    root.setLevel(getattr(logging, level, logging.INFO))
    root.propagate = False
    _configured = True


def get_enhanced_logger(name: str) -> EnhancedLogger:
    setup_logging()
    return EnhancedLogger(logging.getLogger(name), {})
