"""Versioned node repository with a read-through cache.

Reads go cache-first (``node:{node_id}``), writes go straight to the durable
store under an optimistic version check and then invalidate the cache
entry. The cache is an optimization only: when it is unreachable reads fall
back to the store and writes still succeed.
"""

from __future__ import annotations

import math
import uuid

from omnitwin.cache.layer import CacheLayer, node_key
from omnitwin.common.exceptions import (
    ConcurrencyError,
    ConnectivityError,
    NotFoundError,
    ValidationError,
)
from omnitwin.common.logger import get_enhanced_logger
from omnitwin.graph.models import Location, Node, NodeMetrics, NodeStatus, NodeType, utcnow
from omnitwin.graph.store import NodeStore
from omnitwin.observability.metrics import track_degraded_read, track_node_write

DEFAULT_NODE_CACHE_TTL_SECONDS = 30


def validate_node(node: Node) -> None:
    """Check node invariants before it is persisted."""
    if not node.node_id:
        raise ValidationError("Node id must be non-empty")
    if node.capacity < 0:
        raise ValidationError("Capacity must be non-negative", node_id=node.node_id)
    if node.node_id in node.connections:
        raise ValidationError("Node cannot connect to itself", node_id=node.node_id)
    if node.version < 1:
        raise ValidationError("Version must be positive", node_id=node.node_id)
    if not (-90 <= node.location.latitude <= 90) or not (-180 <= node.location.longitude <= 180):
        raise ValidationError("Location coordinates out of range", node_id=node.node_id)
    if node.metrics is not None:
        validate_metrics(node.metrics, node.node_id)


def validate_metrics(metrics: NodeMetrics, node_id: str | None = None) -> None:
    if not all(
        math.isfinite(v) for v in (metrics.current_inventory, metrics.utilization_rate)
    ):
        raise ValidationError("Metrics must be finite numbers", node_id=node_id)
    if metrics.current_inventory < 0:
        raise ValidationError("currentInventory must be >= 0", node_id=node_id)
    if not 0.0 <= metrics.utilization_rate <= 1.0:
        raise ValidationError("utilizationRate must be within 0.0-1.0", node_id=node_id)


class NodeRepository:
    """Node reads and optimistic writes.

    Args:
        store: Durable node store
        cache: Cache layer used as read-through cache (optional)
        node_cache_ttl_seconds: TTL of cached node entries
    """

    def __init__(
        self,
        store: NodeStore,
        cache: CacheLayer | None = None,
        node_cache_ttl_seconds: int = DEFAULT_NODE_CACHE_TTL_SECONDS,
    ):
        self.store = store
        self.cache = cache
        self.node_cache_ttl_seconds = node_cache_ttl_seconds
        self.logger = get_enhanced_logger(__name__)

    def create_node(
        self,
        type: NodeType,
        location: Location | None = None,
        capacity: float = 0.0,
        status: NodeStatus = NodeStatus.OPERATIONAL,
        connections: set[str] | None = None,
        metrics: NodeMetrics | None = None,
        node_id: str | None = None,
    ) -> Node:
        """Provision a node at version 1."""
        now = utcnow()
        node = Node(
            node_id=node_id or str(uuid.uuid4()),
            type=NodeType(type),
            location=location or Location(),
            capacity=capacity,
            status=NodeStatus(status),
            connections=set(connections or set()),
            metrics=metrics,
            version=1,
            created_at=now,
            updated_at=now,
        )
        validate_node(node)
        created = self.store.insert(node)
        self.logger.info(
            "Node created", extra_fields={"node_id": created.node_id, "type": created.type.value}
        )
        return created

    def get_node(self, node_id: str, consistent: bool = False) -> Node | None:
        """Return the node or None. ``consistent=True`` skips the cache.

        A cache-first read that fetched from the store just before a concurrent
        write can repopulate the cache with the older version after that
        write's invalidation. Such an entry is served for at most
        ``node_cache_ttl_seconds``; callers that need the committed version
        (retries after ConcurrencyError) pass ``consistent=True``.
        """
        if not consistent:
            cached = self._cache_read(node_id)
            if cached is not None:
                return cached

        node = self.store.fetch(node_id)
        if node is not None:
            self._cache_write(node)
        return node

    def get_nodes(self, node_ids: list[str]) -> list[Node]:
        """Batch read straight from the durable store."""
        return self.store.fetch_many(list(dict.fromkeys(node_ids)))

    def update_node_metrics(self, node_id: str, metrics: NodeMetrics, expected_version: int) -> Node:
        """Replace the node's metrics iff its stored version is ``expected_version``.

        Raises:
            ConcurrencyError: stored version differs; nothing written
            NotFoundError: node does not exist
            ConnectivityError: durable store unreachable
        """
        validate_metrics(metrics, node_id)
        return self._conditional_update(node_id, {"metrics": metrics}, expected_version)

    def update_node_status(self, node_id: str, status: NodeStatus, expected_version: int) -> Node:
        return self._conditional_update(
            node_id, {"status": NodeStatus(status)}, expected_version
        )

    def _conditional_update(self, node_id: str, changes: dict, expected_version: int) -> Node:
        updated = self.store.compare_and_set(node_id, changes, expected_version, utcnow())
        if updated is None:
            current = self.store.fetch(node_id)
            if current is None:
                raise NotFoundError(f"Node {node_id} not found in digital twin", node_id=node_id)
            self.logger.info(
                "Stale version rejected",
                extra_fields={
                    "node_id": node_id,
                    "expected_version": expected_version,
                    "actual_version": current.version,
                },
            )
            raise ConcurrencyError(
                f"Version mismatch for node {node_id}",
                node_id=node_id,
                expected_version=expected_version,
                actual_version=current.version,
            )

        for field in changes:
            track_node_write(field)
        self.invalidate(node_id)
        self.logger.info(
            "Node updated",
            extra_fields={"node_id": node_id, "version": updated.version, "fields": sorted(changes)},
        )
        return updated

    def invalidate(self, node_id: str) -> None:
        """Drop the cached copy of a node.

        A failure here leaves a stale entry for at most the node cache TTL;
        retries after a ConcurrencyError read with ``consistent=True``.
        """
        if self.cache is None:
            return
        try:
            self.cache.delete(node_key(node_id))
        except ConnectivityError as e:
            self.logger.error(
                "Node cache invalidation failed",
                extra_fields={"node_id": node_id, "error": str(e)},
            )

    def _cache_read(self, node_id: str) -> Node | None:
        if self.cache is None:
            return None
        try:
            data = self.cache.get(node_key(node_id))
        except ConnectivityError as e:
            track_degraded_read()
            self.logger.warning(
                "Cache unavailable, reading node from store",
                extra_fields={"node_id": node_id, "error": str(e)},
            )
            return None
        if not data:
            return None
        try:
            return Node.from_dict(data)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            self.logger.warning(
                "Ignoring malformed cached node",
                extra_fields={"node_id": node_id, "error": str(e)},
            )
            return None

    def _cache_write(self, node: Node) -> None:
        if self.cache is None or self.node_cache_ttl_seconds <= 0:
            return
        try:
            self.cache.set(node_key(node.node_id), node.to_dict(), self.node_cache_ttl_seconds)
        except ConnectivityError as e:
            self.logger.warning(
                "Failed to populate node cache",
                extra_fields={"node_id": node.node_id, "error": str(e)},
            )
