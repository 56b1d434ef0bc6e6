"""Redis-backed TTL cache for derived twin data.

Key layout:
    node:{node_id}                         read-through node cache (NodeRepository)
    simulation:{scenario_id}:{result_hash} simulation results, 1h TTL
    session:{session_id}                   user sessions, 24h TTL
    dt:state:{timestamp}                   digital twin snapshots, 5min TTL
    dt:latest                              timestamp of the newest snapshot

The cache never holds authoritative state. Every entry may disappear at any
time and callers must tolerate a miss.

Lifecycle:
    cache = CacheLayer(CacheConfig(host="redis", port=6379))
    cache.connect()
    ...
    cache.disconnect()

Any operation before connect(), after disconnect(), or on a Redis
connection/timeout failure raises ConnectivityError.
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import redis

from omnitwin.common.exceptions import ConnectivityError
from omnitwin.common.logger import get_enhanced_logger
from omnitwin.config import CacheConfig
from omnitwin.observability.metrics import track_cache_op

logger = get_enhanced_logger(__name__)

SIMULATION_TTL_SECONDS = 3600
SESSION_TTL_SECONDS = 86400
DIGITAL_TWIN_TTL_SECONDS = 300

SNAPSHOT_PREFIX = "dt:state:"
LATEST_SNAPSHOT_KEY = "dt:latest"


def node_key(node_id: str) -> str:
    return f"node:{node_id}"


def simulation_key(scenario_id: str, result_hash: str) -> str:
    return f"simulation:{scenario_id}:{result_hash}"


def session_key(session_id: str) -> str:
    return f"session:{session_id}"


def snapshot_key(timestamp: int) -> str:
    return f"{SNAPSHOT_PREFIX}{timestamp}"


@dataclass
class SessionData:
    user_id: str
    preferences: dict[str, Any] = field(default_factory=dict)
    active_scenarios: set[str] = field(default_factory=set)
    last_activity: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "preferences": self.preferences,
            "activeScenarios": sorted(self.active_scenarios),
            "lastActivity": self.last_activity,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionData:
        return cls(
            user_id=data["userId"],
            preferences=data.get("preferences") or {},
            active_scenarios=set(data.get("activeScenarios") or []),
            last_activity=float(data.get("lastActivity", 0.0)),
        )


@dataclass
class DigitalTwinSnapshot:
    timestamp: int
    state: Any
    version: str


class CacheLayer:
    """TTL key-value cache plus helpers for simulations, sessions and twin snapshots.

    Args:
        config: Redis connection settings
        client_factory: Optional zero-arg callable returning a redis-compatible
            client; replaces the pooled client built from ``config``
        clock: Returns seconds since epoch; used for session/simulation timestamps
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        client_factory: Callable[[], Any] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or CacheConfig()
        self._client_factory = client_factory
        self._clock = clock
        self._pool: redis.ConnectionPool | None = None
        self._client: Any = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """Open the connection pool and verify the server answers. Idempotent."""
        if self._client is not None:
            return

        try:
            if self._client_factory is not None:
                client = self._client_factory()
            else:
                self._pool = redis.ConnectionPool(
                    host=self.config.host,
                    port=self.config.port,
                    db=self.config.db,
                    password=self.config.password,
                    socket_timeout=self.config.timeout_seconds,
                    socket_connect_timeout=self.config.timeout_seconds,
                    max_connections=self.config.max_connections,
                    decode_responses=True,
                )
                client = redis.Redis(connection_pool=self._pool)
            client.ping()
        except (redis.ConnectionError, redis.TimeoutError, OSError) as e:
            self._pool = None
            raise ConnectivityError(f"Failed to connect to cache: {e}", service="cache") from e

        self._client = client
        logger.info(
            "Cache connected", extra_fields={"host": self.config.host, "port": self.config.port}
        )

    def disconnect(self) -> None:
        """Release the pool. Safe to call when already disconnected."""
        client, self._client = self._client, None
        if client is not None:
            try:
                client.close()
            except (redis.RedisError, OSError) as e:
                logger.warning(f"Error closing cache client: {e}")
        if self._pool is not None:
            self._pool.disconnect()
            self._pool = None
        logger.info("Cache disconnected")

    def is_ready(self) -> bool:
        return self._client is not None

    def _call(self, op: str, fn: Callable[[Any], Any]) -> Any:
        client = self._client
        if client is None:
            raise ConnectivityError("Cache client not connected", service="cache")
        try:
            return fn(client)
        except redis.RedisError as e:
            # Connection, timeout and server-side (ResponseError) faults alike
            track_cache_op(op, "error")
            raise ConnectivityError(f"Cache {op} failed: {e}", service="cache") from e

    # ------------------------------------------------------------------
    # Generic operations
    # ------------------------------------------------------------------

    def get(self, key: str) -> Any | None:
        raw = self._call("get", lambda c: c.get(key))
        if raw is None:
            track_cache_op("get", "miss")
            return None
        try:
            value = json.loads(raw)
        except (ValueError, RecursionError):
            # Foreign or truncated entry counts as a miss
            track_cache_op("get", "corrupt")
            logger.warning("Ignoring undecodable cache entry", extra_fields={"key": key})
            return None
        track_cache_op("get", "hit")
        return value

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        if ttl_seconds is not None and ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}")
        serialized = json.dumps(value, default=str)
        if ttl_seconds is not None:
            self._call("set", lambda c: c.set(key, serialized, ex=max(1, int(ttl_seconds))))
        else:
            self._call("set", lambda c: c.set(key, serialized))
        track_cache_op("set", "ok")

    def delete(self, key: str) -> None:
        self._call("delete", lambda c: c.delete(key))
        track_cache_op("delete", "ok")

    def exists(self, key: str) -> bool:
        return bool(self._call("exists", lambda c: c.exists(key)))

    def ttl(self, key: str) -> int:
        """Remaining TTL in seconds; -1 if the key has no expiry, -2 if absent."""
        return int(self._call("ttl", lambda c: c.ttl(key)))

    # ------------------------------------------------------------------
    # Simulation results
    # ------------------------------------------------------------------

    def cache_simulation_result(self, scenario_id: str, result_hash: str, results: Any) -> None:
        data = {"scenarioId": scenario_id, "results": results, "timestamp": self._clock()}
        self.set(simulation_key(scenario_id, result_hash), data, SIMULATION_TTL_SECONDS)

    def get_simulation_result(self, scenario_id: str, result_hash: str) -> Any | None:
        cached = self.get(simulation_key(scenario_id, result_hash))
        if cached is None:
            return None
        return cached["results"]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def cache_session(self, session_id: str, session: SessionData) -> None:
        self.set(session_key(session_id), session.to_dict(), SESSION_TTL_SECONDS)

    def get_session(self, session_id: str) -> SessionData | None:
        cached = self.get(session_key(session_id))
        if cached is None:
            return None
        return SessionData.from_dict(cached)

    def update_session_activity(self, session_id: str) -> bool:
        """Stamp last activity and re-set the session with a fresh 24h TTL.

        Returns False if the session is absent (expired or logged out).
        """
        session = self.get_session(session_id)
        if session is None:
            return False
        session.last_activity = self._clock()
        self.cache_session(session_id, session)
        return True

    def delete_session(self, session_id: str) -> None:
        self.delete(session_key(session_id))

    # ------------------------------------------------------------------
    # Digital twin snapshots
    # ------------------------------------------------------------------

    def cache_digital_twin_state(self, timestamp: int, state: Any, version: str) -> None:
        """Store a snapshot and advance the latest pointer in one transaction.

        The pointer only moves forward: writing an older snapshot leaves it on
        the newer one.
        """
        timestamp = int(timestamp)
        payload = json.dumps({"state": state, "timestamp": timestamp, "version": version}, default=str)

        def _write(pipe: Any) -> None:
            current = pipe.get(LATEST_SNAPSHOT_KEY)
            pipe.multi()
            pipe.set(snapshot_key(timestamp), payload, ex=DIGITAL_TWIN_TTL_SECONDS)
            if current is None or timestamp >= int(current):
                pipe.set(LATEST_SNAPSHOT_KEY, str(timestamp), ex=DIGITAL_TWIN_TTL_SECONDS)

        self._call("snapshot_write", lambda c: c.transaction(_write, LATEST_SNAPSHOT_KEY))
        track_cache_op("snapshot_write", "ok")

    def get_digital_twin_state(self, timestamp: int) -> Any | None:
        snapshot = self._load_snapshot(int(timestamp))
        return snapshot.state if snapshot else None

    def get_latest_digital_twin_snapshot(self) -> DigitalTwinSnapshot | None:
        pointer = self._call("get", lambda c: c.get(LATEST_SNAPSHOT_KEY))
        if pointer is not None:
            snapshot = self._load_snapshot(int(pointer))
            if snapshot is not None:
                return snapshot

        # Pointer expired while older snapshots written later are still live
        timestamps = self._snapshot_timestamps()
        for ts in sorted(timestamps, reverse=True):
            snapshot = self._load_snapshot(ts)
            if snapshot is not None:
                return snapshot
        return None

    def get_latest_digital_twin_state(self) -> Any | None:
        snapshot = self.get_latest_digital_twin_snapshot()
        return snapshot.state if snapshot else None

    def invalidate_digital_twin_cache(self) -> int:
        """Delete every snapshot and the latest pointer. Returns snapshots removed."""
        keys = [snapshot_key(ts) for ts in self._snapshot_timestamps()]
        if keys:
            self._call("delete", lambda c: c.delete(*keys))
        self._call("delete", lambda c: c.delete(LATEST_SNAPSHOT_KEY))
        logger.info("Digital twin cache invalidated", extra_fields={"snapshots": len(keys)})
        return len(keys)

    def _load_snapshot(self, timestamp: int) -> DigitalTwinSnapshot | None:
        cached = self.get(snapshot_key(timestamp))
        if cached is None:
            return None
        return DigitalTwinSnapshot(
            timestamp=int(cached["timestamp"]), state=cached["state"], version=cached["version"]
        )

    def _snapshot_timestamps(self) -> list[int]:
        keys = self._call("scan", lambda c: list(c.scan_iter(match=f"{SNAPSHOT_PREFIX}*")))
        timestamps = []
        for key in keys:
            try:
                timestamps.append(int(key[len(SNAPSHOT_PREFIX) :]))
            except ValueError:
                logger.warning("Skipping malformed snapshot key", extra_fields={"key": key})
        return timestamps
