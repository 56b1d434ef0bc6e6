"""Ingestion gateway: raw event -> validated update -> versioned node write.

Flow per event:
    decode (fail closed) -> get_node -> ConflictResolver.merge
    -> update_node_metrics(expected_version) -> AcceptedUpdate

Retry policy:
    ConcurrencyError   re-read bypassing the cache and retry merge+update,
                       at most ``max_concurrency_retries`` attempts in total
    ConnectivityError  exponential backoff, at most ``connectivity_retries`` retries
    ValidationError    never retried
    NotFoundError      never retried
    anything else      reported as rejected, re-raised as the matching TwinError

A ConnectivityError raised by the write itself may hide a commit. The next
attempt reads bypassing the cache and, if the node sits exactly one version
above the base with the merged metrics, takes that as the landed write
instead of applying the update again. A concurrent writer producing the
same metrics in that window is indistinguishable and is treated the same.

Each failure is reported to the ErrorReporter exactly once, when it is
resolved: recovered by a retry, exhausted, or rejected. A discrepancy is
logged and counted once, for the attempt whose write lands.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

from omnitwin.common.exceptions import (
    ConcurrencyError,
    ConnectivityError,
    DiscrepancyRejectedError,
    NotFoundError,
    TwinError,
    ValidationError,
    wrap_error,
)
from omnitwin.common.logger import get_enhanced_logger, with_correlation
from omnitwin.config import TwinConfig
from omnitwin.errors.reporter import ErrorReporter
from omnitwin.graph.models import Node, NodeMetrics
from omnitwin.graph.repository import NodeRepository
from omnitwin.ingestion.events import IngestionEvent, decode_event
from omnitwin.observability.metrics import (
    track_discrepancy,
    track_ingest,
    track_material_change,
    track_retry,
)
from omnitwin.twin.conflict import ConflictResolver, MergeResult, build_strategy

logger = get_enhanced_logger(__name__)

INVENTORY_CHANGE_THRESHOLD = 0.10
UTILIZATION_CHANGE_THRESHOLD = 0.15


@dataclass(frozen=True)
class AcceptedUpdate:
    node: Node
    previous_version: int
    merge: MergeResult
    attempts: int
    material_change: bool
    correlation_id: str
    message_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodeId": self.node.node_id,
            "version": self.node.version,
            "previousVersion": self.previous_version,
            "incomingWon": self.merge.incoming_won,
            "discrepancy": self.merge.discrepancy.to_dict() if self.merge.discrepancy else None,
            "attempts": self.attempts,
            "materialChange": self.material_change,
            "correlationId": self.correlation_id,
            "messageId": self.message_id,
        }


def is_material_change(current: NodeMetrics | None, new: NodeMetrics) -> bool:
    """Relative inventory change >= 10% or absolute utilization change >= 0.15."""
    if current is None:
        return False
    if current.current_inventory > 0:
        change = abs(new.current_inventory - current.current_inventory) / current.current_inventory
        if change >= INVENTORY_CHANGE_THRESHOLD:
            return True
    return abs(new.utilization_rate - current.utilization_rate) >= UTILIZATION_CHANGE_THRESHOLD


def _already_applied(current: Node, base: Node, merge: MergeResult) -> bool:
    """True if ``current`` is exactly the write of ``merge`` on top of ``base``."""
    return current.version == base.version + 1 and current.metrics == merge.metrics


class IngestionGateway:
    """Validates events and drives optimistic node updates.

    Args:
        repository: Node repository
        resolver: Conflict resolver (built from ``config`` if omitted)
        reporter: Error reporter (logging alert channel if omitted)
        config: Retry and conflict settings
        sleep: Sleep function used between connectivity retries
        on_material_change: Called with (node, accepted_update) after a material change
    """

    def __init__(
        self,
        repository: NodeRepository,
        resolver: ConflictResolver | None = None,
        reporter: ErrorReporter | None = None,
        config: TwinConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
        on_material_change: Callable[[Node, AcceptedUpdate], None] | None = None,
    ):
        self.config = config or TwinConfig()
        self.repository = repository
        self.resolver = resolver or ConflictResolver(
            strategy=build_strategy(self.config.resolution_strategy, self.config.source_priority),
            conflict_window_seconds=self.config.conflict_window_seconds,
        )
        self.reporter = reporter or ErrorReporter()
        self.sleep = sleep
        self.on_material_change = on_material_change

    def ingest(self, raw: Any) -> AcceptedUpdate:
        """Apply one raw event to the twin.

        Raises:
            ValidationError: malformed event, or discrepancy while blocking is enabled
            NotFoundError: node unknown to the twin
            ConcurrencyError: lost the version race on every attempt
            ConnectivityError: cache/store unreachable after all retries
        """
        started = time.perf_counter()
        correlation_id = f"ingest-{uuid.uuid4().hex[:16]}"

        with with_correlation(correlation_id=correlation_id):
            try:
                event = decode_event(raw)
            except ValidationError as e:
                self.reporter.report(e, {"stage": "decode"}, resolution="rejected")
                track_ingest(e.kind.value, time.perf_counter() - started, attempts=0)
                raise

            with with_correlation(
                node_id=event.node_id, source=event.source, message_id=event.message_id
            ):
                try:
                    accepted = self._apply(event, correlation_id)
                except TwinError as e:
                    track_ingest(e.kind.value, time.perf_counter() - started)
                    raise

        track_ingest("accepted", time.perf_counter() - started, accepted.attempts)
        return accepted

    def _apply(self, event: IngestionEvent, correlation_id: str) -> AcceptedUpdate:
        incoming = event.to_metrics()
        # Transient faults seen so far, reported once the call is resolved
        pending: dict[type, TwinError] = {}
        attempts = 0
        concurrency_failures = 0
        connectivity_failures = 0
        consistent = False
        # (node read, merge) of a write whose outcome a connectivity fault hid
        unconfirmed: tuple[Node, MergeResult] | None = None

        while True:
            attempts += 1
            writing = False
            try:
                node = self.repository.get_node(event.node_id, consistent=consistent)
                if node is None:
                    raise NotFoundError(
                        f"Node {event.node_id} not found in digital twin",
                        node_id=event.node_id,
                        source=event.source,
                    )

                if unconfirmed is not None:
                    if _already_applied(node, *unconfirmed):
                        updated = node
                        node, merge = unconfirmed
                        logger.info(
                            "Write confirmed after connectivity fault",
                            extra_fields={"version": updated.version, "attempt": attempts},
                        )
                        break
                    unconfirmed = None

                merge = self.resolver.merge(node.metrics, incoming)
                if merge.discrepancy is not None and self.config.block_on_discrepancy:
                    self._reject_discrepancy(event, merge)

                writing = True
                updated = self.repository.update_node_metrics(
                    event.node_id, merge.metrics, node.version
                )
                break

            except ConcurrencyError as e:
                concurrency_failures += 1
                pending.pop(ConcurrencyError, None)
                if concurrency_failures >= self.config.max_concurrency_retries:
                    self._resolve(pending, attempts, "superseded")
                    self.reporter.report(e, {"attempts": attempts}, resolution="exhausted")
                    raise
                pending[ConcurrencyError] = e
                consistent = True
                track_retry(e.kind.value)
                logger.info(
                    "Version conflict, retrying with fresh read",
                    extra_fields={"attempt": attempts, "actual_version": e.actual_version},
                )

            except ConnectivityError as e:
                pending.pop(ConnectivityError, None)
                if connectivity_failures >= self.config.connectivity_retries:
                    self._resolve(pending, attempts, "superseded")
                    self.reporter.report(e, {"attempts": attempts}, resolution="exhausted")
                    raise
                if writing:
                    # The store may have committed before the fault; check on the next read
                    unconfirmed = (node, merge)
                    consistent = True
                delay = self.config.backoff_delay(connectivity_failures)
                connectivity_failures += 1
                pending[ConnectivityError] = e
                track_retry(e.kind.value)
                logger.warning(
                    "Store unreachable, backing off",
                    extra_fields={"attempt": attempts, "delay_s": delay, "service": e.service},
                )
                self.sleep(delay)

            except (NotFoundError, ValidationError) as e:
                self._resolve(pending, attempts, "superseded")
                self.reporter.report(e, {"attempts": attempts}, resolution="rejected")
                raise

            except Exception as e:
                self._resolve(pending, attempts, "superseded")
                report = self.reporter.report(e, {"attempts": attempts}, resolution="rejected")
                raise wrap_error(
                    e, report.kind, node_id=event.node_id, source=event.source
                ) from e

        self._resolve(pending, attempts, "recovered")
        if merge.discrepancy is not None:
            self._flag_discrepancy(merge)

        material = is_material_change(node.metrics, updated.metrics)
        accepted = AcceptedUpdate(
            node=updated,
            previous_version=node.version,
            merge=merge,
            attempts=attempts,
            material_change=material,
            correlation_id=correlation_id,
            message_id=event.message_id,
        )
        logger.info(
            "Digital twin updated",
            extra_fields={
                "version": updated.version,
                "incoming_won": merge.incoming_won,
                "material_change": material,
                "attempts": attempts,
            },
        )
        if material:
            track_material_change()
            if self.on_material_change is not None:
                self.on_material_change(updated, accepted)
        return accepted

    def _resolve(self, pending: dict[type, TwinError], attempts: int, resolution: str) -> None:
        for error in pending.values():
            self.reporter.report(error, {"attempts": attempts}, resolution=resolution)
        pending.clear()

    def _reject_discrepancy(self, event: IngestionEvent, merge: MergeResult) -> None:
        discrepancy = merge.discrepancy
        track_discrepancy("incoming" if discrepancy.incoming_won else "current")
        logger.warning("Data discrepancy flagged", extra_fields=discrepancy.to_dict())
        raise DiscrepancyRejectedError(
            "Update rejected: conflicting sources within conflict window",
            node_id=event.node_id,
            source=event.source,
            details={"discrepancy": discrepancy.to_dict()},
        )

    def _flag_discrepancy(self, merge: MergeResult) -> None:
        discrepancy = merge.discrepancy
        track_discrepancy("incoming" if discrepancy.incoming_won else "current")
        logger.warning("Data discrepancy flagged", extra_fields=discrepancy.to_dict())

    def ingest_batch(
        self, events: Iterable[Any], max_workers: int | None = None
    ) -> list[AcceptedUpdate | TwinError]:
        """Ingest events concurrently; returns one outcome per event, in input order."""
        events = list(events)
        if not events:
            return []

        def _one(raw: Any) -> AcceptedUpdate | TwinError:
            try:
                return self.ingest(raw)
            except TwinError as e:
                return e

        workers = max_workers or self.config.ingest_max_workers
        with ThreadPoolExecutor(max_workers=min(workers, len(events))) as pool:
            return list(pool.map(_one, events))
