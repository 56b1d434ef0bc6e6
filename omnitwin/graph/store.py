"""Durable node storage.

``NodeStore`` is the narrow interface NodeRepository writes through; the
version check lives in the store so that a single statement decides which of
several concurrent writers wins.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool, PoolTimeout

from omnitwin.common.exceptions import ConnectivityError, ValidationError
from omnitwin.common.logger import get_enhanced_logger
from omnitwin.config import StoreConfig
from omnitwin.graph.models import Location, Node, NodeMetrics, NodeStatus, NodeType

# Columns a conditional update may touch
UPDATABLE_FIELDS = {"metrics", "status"}

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS twin_nodes (
    node_id     TEXT PRIMARY KEY,
    type        TEXT NOT NULL,
    location    JSONB NOT NULL DEFAULT '{}'::jsonb,
    capacity    DOUBLE PRECISION NOT NULL DEFAULT 0 CHECK (capacity >= 0),
    status      TEXT NOT NULL,
    connections TEXT[] NOT NULL DEFAULT '{}',
    metrics     JSONB,
    version     INTEGER NOT NULL DEFAULT 1 CHECK (version >= 1),
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS idx_twin_nodes_status ON twin_nodes (status);
"""

_COLUMNS = (
    "node_id, type, location, capacity, status, connections, metrics, "
    "version, created_at, updated_at"
)


class NodeStore(ABC):
    """Durable storage for node records."""

    @abstractmethod
    def fetch(self, node_id: str) -> Node | None:
        """Return the stored node or None."""

    @abstractmethod
    def fetch_many(self, node_ids: list[str]) -> list[Node]:
        """Return the stored nodes among ``node_ids`` (missing ids are skipped)."""

    @abstractmethod
    def insert(self, node: Node) -> Node:
        """Persist a new node at its current version."""

    @abstractmethod
    def compare_and_set(
        self, node_id: str, changes: dict[str, Any], expected_version: int, updated_at: datetime
    ) -> Node | None:
        """Apply ``changes`` and bump version by one iff the stored version equals
        ``expected_version``. Returns the new node, or None when no row matched."""


def node_from_row(row: dict[str, Any]) -> Node:
    metrics = row.get("metrics")
    return Node(
        node_id=row["node_id"],
        type=NodeType(row["type"]),
        location=Location.from_dict(row.get("location")),
        capacity=float(row.get("capacity") or 0.0),
        status=NodeStatus(row["status"]),
        connections=set(row.get("connections") or []),
        metrics=NodeMetrics.from_dict(metrics) if metrics else None,
        version=int(row["version"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _db_value(field: str, value: Any) -> Any:
    if field == "metrics":
        return Jsonb(value.to_dict()) if value is not None else None
    if field == "status":
        return NodeStatus(value).value
    return value


class PostgresNodeStore(NodeStore):
    """Postgres-backed node store using a psycopg connection pool.

    Connections are acquired per operation and returned immediately, so a
    slow statement never pins a connection for a worker's lifetime. Every
    statement runs under ``statement_timeout``; pool waits are bounded by the
    same timeout. Driver and pool failures surface as ConnectivityError.
    """

    def __init__(self, config: StoreConfig | None = None):
        self.config = config or StoreConfig()
        self.logger = get_enhanced_logger(__name__)
        timeout_ms = int(self.config.timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.config.dsn,
            min_size=self.config.pool_min_size,
            max_size=self.config.pool_max_size,
            timeout=self.config.timeout_seconds,
            kwargs={
                "connect_timeout": max(1, int(self.config.timeout_seconds)),
                "options": f"-c statement_timeout={timeout_ms}",
                "row_factory": dict_row,
            },
            open=False,
        )

    def connect(self) -> None:
        try:
            self.pool.open(wait=True, timeout=self.config.timeout_seconds)
        except (PoolTimeout, psycopg.OperationalError) as e:
            raise ConnectivityError(f"Durable store unreachable: {e}", service="store") from e
        self.logger.info("Node store connected", extra_fields={"pool_max": self.config.pool_max_size})

    def disconnect(self) -> None:
        self.pool.close()
        self.logger.info("Node store disconnected")

    def _run(self, op: str, query: Any, params: Any = None, fetch: str = "one") -> Any:
        try:
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, params)
                    if fetch == "one":
                        return cur.fetchone()
                    if fetch == "all":
                        return cur.fetchall()
                    return None
        except (psycopg.DataError, psycopg.IntegrityError) as e:
            self.logger.error(f"Node store {op} rejected data: {e}")
            raise ValidationError(f"Durable store {op} rejected data: {e}") from e
        except psycopg.Error as e:
            # PoolTimeout, OperationalError, InterfaceError and server-side faults
            self.logger.error(f"Node store {op} failed: {e}")
            raise ConnectivityError(f"Durable store {op} failed: {e}", service="store") from e

    def init_schema(self) -> None:
        self._run("init_schema", SCHEMA_SQL, fetch="none")
        self.logger.info("Node store schema ready")

    def fetch(self, node_id: str) -> Node | None:
        row = self._run(
            "fetch", f"SELECT {_COLUMNS} FROM twin_nodes WHERE node_id = %s", (node_id,)
        )
        return node_from_row(row) if row else None

    def fetch_many(self, node_ids: list[str]) -> list[Node]:
        if not node_ids:
            return []
        rows = self._run(
            "fetch_many",
            f"SELECT {_COLUMNS} FROM twin_nodes WHERE node_id = ANY(%s) ORDER BY node_id",
            (list(node_ids),),
            fetch="all",
        )
        return [node_from_row(r) for r in rows]

    def insert(self, node: Node) -> Node:
        row = self._run(
            "insert",
            f"""
            INSERT INTO twin_nodes ({_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {_COLUMNS}
            """,
            (
                node.node_id,
                node.type.value,
                Jsonb(node.location.to_dict()),
                node.capacity,
                node.status.value,
                sorted(node.connections),
                _db_value("metrics", node.metrics),
                node.version,
                node.created_at,
                node.updated_at,
            ),
        )
        return node_from_row(row)

    def compare_and_set(
        self, node_id: str, changes: dict[str, Any], expected_version: int, updated_at: datetime
    ) -> Node | None:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not updatable: {sorted(unknown)}")

        assignments = [
            sql.SQL("{} = %s").format(sql.Identifier(name)) for name in sorted(changes)
        ]
        assignments.append(sql.SQL("updated_at = %s"))
        assignments.append(sql.SQL("version = version + 1"))
        query = sql.SQL(
            "UPDATE twin_nodes SET {} WHERE node_id = %s AND version = %s RETURNING {}"
        ).format(sql.SQL(", ").join(assignments), sql.SQL(_COLUMNS))
        params = [_db_value(name, changes[name]) for name in sorted(changes)]
        params.extend([updated_at, node_id, expected_version])

        row = self._run("compare_and_set", query, params)
        return node_from_row(row) if row else None
