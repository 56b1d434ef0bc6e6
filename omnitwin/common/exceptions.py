"""Error taxonomy for the digital twin core.

Permanent faults (validation, not_found) are rejected upstream and never
retried. Transient faults (concurrency, connectivity) are retried by the
component that detected them, a bounded number of times.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONCURRENCY = "concurrency"
    CONNECTIVITY = "connectivity"


class TwinError(Exception):
    """Base class for every failure surfaced by omnitwin."""

    kind: ErrorKind = ErrorKind.CONNECTIVITY
    transient: bool = False

    def __init__(
        self,
        message: str,
        node_id: str | None = None,
        source: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.node_id = node_id
        self.source = source
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind.value, "error": self.message}
        if self.node_id:
            data["node_id"] = self.node_id
        if self.source:
            data["source"] = self.source
        data.update(self.details)
        return data


class ValidationError(TwinError):
    """Malformed or incomplete input."""

    kind = ErrorKind.VALIDATION


class DiscrepancyRejectedError(ValidationError):
    """Update rejected because a cross-source discrepancy was flagged and blocking is enabled."""


class NotFoundError(TwinError):
    """Referenced node is not part of the twin."""

    kind = ErrorKind.NOT_FOUND


class ConcurrencyError(TwinError):
    """Optimistic-lock version mismatch."""

    kind = ErrorKind.CONCURRENCY
    transient = True

    def __init__(
        self,
        message: str,
        node_id: str | None = None,
        expected_version: int | None = None,
        actual_version: int | None = None,
        **kwargs: Any,
    ):
        details = dict(kwargs.pop("details", None) or {})
        details.update({"expected_version": expected_version, "actual_version": actual_version})
        super().__init__(message, node_id=node_id, details=details, **kwargs)
        self.expected_version = expected_version
        self.actual_version = actual_version


class ConnectivityError(TwinError):
    """Cache or durable store unreachable or timed out."""

    kind = ErrorKind.CONNECTIVITY
    transient = True

    def __init__(self, message: str, service: str = "unknown", **kwargs: Any):
        details = dict(kwargs.pop("details", None) or {})
        details["service"] = service
        super().__init__(message, details=details, **kwargs)
        self.service = service


_ERROR_BY_KIND: dict[ErrorKind, type[TwinError]] = {
    ErrorKind.VALIDATION: ValidationError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.CONCURRENCY: ConcurrencyError,
    ErrorKind.CONNECTIVITY: ConnectivityError,
}


def wrap_error(error: BaseException, kind: ErrorKind, **kwargs: Any) -> TwinError:
    """Return ``error`` as the TwinError subclass for ``kind``; TwinErrors pass through."""
    if isinstance(error, TwinError):
        return error
    return _ERROR_BY_KIND[kind](f"{type(error).__name__}: {error}", **kwargs)
