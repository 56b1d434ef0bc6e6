"""
Pytest fixtures for omnitwin tests.

No external services are needed: Redis is replaced by an in-memory fake
driven by a controllable clock, and Postgres by a thread-safe in-memory
NodeStore with the same compare-and-set contract.
"""

from __future__ import annotations

import copy
import fnmatch
import math
import threading
from datetime import datetime, timezone

import pytest
import redis

from omnitwin.cache.layer import CacheLayer
from omnitwin.common.exceptions import ConnectivityError
from omnitwin.config import TwinConfig
from omnitwin.errors.reporter import AlertChannel, ErrorReporter
from omnitwin.graph.models import Node, NodeMetrics, NodeType
from omnitwin.graph.repository import NodeRepository
from omnitwin.graph.store import NodeStore
from omnitwin.ingestion.gateway import IngestionGateway

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: float = 1_760_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakePipeline:
    """Minimal WATCH/MULTI pipeline: reads are immediate until multi(), writes buffer after."""

    def __init__(self, client: FakeRedis):
        self.client = client
        self.buffered = []
        self.in_multi = False

    def get(self, key):
        if self.in_multi:
            self.buffered.append(("get", (key,), {}))
            return self
        return self.client.get(key)

    def multi(self):
        self.in_multi = True

    def set(self, key, value, ex=None):
        self.buffered.append(("set", (key, value), {"ex": ex}))
        return self

    def execute(self):
        results = [getattr(self.client, op)(*args, **kw) for op, args, kw in self.buffered]
        self.buffered = []
        return results


class FakeRedis:
    """In-memory stand-in for redis.Redis with TTLs evaluated against a FakeClock."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.data: dict[str, tuple[str, float | None]] = {}
        self.published: list[tuple[str, str]] = []
        self.down = False
        self.lock = threading.Lock()

    def _check(self):
        if self.down:
            raise redis.ConnectionError("fake redis is down")

    def _live(self, key):
        entry = self.data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self.clock() >= expires_at:
            del self.data[key]
            return None
        return entry

    def ping(self):
        self._check()
        return True

    def close(self):
        pass

    def get(self, key):
        self._check()
        with self.lock:
            entry = self._live(key)
            return entry[0] if entry else None

    def set(self, key, value, ex=None):
        self._check()
        with self.lock:
            expires_at = self.clock() + ex if ex else None
            self.data[key] = (str(value), expires_at)
        return True

    def delete(self, *keys):
        self._check()
        removed = 0
        with self.lock:
            for key in keys:
                if self._live(key) is not None:
                    del self.data[key]
                    removed += 1
        return removed

    def exists(self, key):
        self._check()
        with self.lock:
            return 1 if self._live(key) else 0

    def ttl(self, key):
        self._check()
        with self.lock:
            entry = self._live(key)
            if entry is None:
                return -2
            if entry[1] is None:
                return -1
            return int(math.ceil(entry[1] - self.clock()))

    def scan_iter(self, match="*"):
        self._check()
        with self.lock:
            keys = [k for k in list(self.data) if self._live(k) is not None]
        return iter([k for k in keys if fnmatch.fnmatchcase(k, match)])

    def transaction(self, func, *watches):
        self._check()
        pipe = FakePipeline(self)
        func(pipe)
        return pipe.execute()

    def publish(self, channel, message):
        self._check()
        self.published.append((channel, message))
        return 1


class InMemoryNodeStore(NodeStore):
    """Thread-safe NodeStore with the same single-step compare-and-set semantics as Postgres."""

    def __init__(self):
        self.nodes: dict[str, Node] = {}
        self.lock = threading.Lock()
        self.fetch_calls = 0
        self.cas_calls = 0
        self.fail_next = 0
        self.fail_after_commit = 0
        self.before_cas = None

    def _maybe_fail(self):
        if self.fail_next > 0:
            self.fail_next -= 1
            raise ConnectivityError("store timed out", service="store")

    def fetch(self, node_id):
        self._maybe_fail()
        with self.lock:
            self.fetch_calls += 1
            node = self.nodes.get(node_id)
            return copy.deepcopy(node) if node else None

    def fetch_many(self, node_ids):
        with self.lock:
            return [copy.deepcopy(self.nodes[n]) for n in node_ids if n in self.nodes]

    def insert(self, node):
        with self.lock:
            self.nodes[node.node_id] = copy.deepcopy(node)
            return copy.deepcopy(node)

    def compare_and_set(self, node_id, changes, expected_version, updated_at):
        self._maybe_fail()
        if self.before_cas is not None:
            self.before_cas(node_id)
        with self.lock:
            self.cas_calls += 1
            node = self.nodes.get(node_id)
            if node is None or node.version != expected_version:
                return None
            updated = node.with_changes(**changes, version=node.version + 1, updated_at=updated_at)
            self.nodes[node_id] = updated
        if self.fail_after_commit > 0:
            self.fail_after_commit -= 1
            raise ConnectivityError("connection lost after commit", service="store")
        return copy.deepcopy(updated)

    def bump(self, node_id, metrics=None):
        """Simulate a concurrent writer committing a new version."""
        with self.lock:
            node = self.nodes[node_id]
            self.nodes[node_id] = node.with_changes(
                version=node.version + 1, metrics=metrics or node.metrics
            )


class RecordingAlertChannel(AlertChannel):
    def __init__(self):
        self.reports = []

    def send(self, report):
        self.reports.append(report)


def make_metrics(inventory=500, utilization=0.5, ts=T0, source="iot-core") -> NodeMetrics:
    return NodeMetrics(
        current_inventory=inventory,
        utilization_rate=utilization,
        last_update_timestamp=ts,
        last_update_source=source,
    )


def make_event(node_id="n1", inventory=480, utilization=0.5, ts=T0, source="manual-entry", **extra):
    event = {
        "nodeId": node_id,
        "timestamp": ts.isoformat() if isinstance(ts, datetime) else ts,
        "sensorType": "inventory",
        "metrics": {"currentInventory": inventory, "utilizationRate": utilization},
        "source": source,
        "messageId": "msg-1",
    }
    event.update(extra)
    return event


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture
def cache(fake_redis, clock):
    layer = CacheLayer(client_factory=lambda: fake_redis, clock=clock)
    layer.connect()
    yield layer
    layer.disconnect()


@pytest.fixture
def store():
    return InMemoryNodeStore()


@pytest.fixture
def repo(store, cache):
    return NodeRepository(store, cache, node_cache_ttl_seconds=30)


@pytest.fixture
def alerts():
    return RecordingAlertChannel()


@pytest.fixture
def reporter(alerts):
    return ErrorReporter(alerts)


@pytest.fixture
def config():
    return TwinConfig(retry_backoff_base_seconds=0.01)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def gateway(repo, reporter, config, sleeps):
    return IngestionGateway(repo, reporter=reporter, config=config, sleep=sleeps.append)


@pytest.fixture
def node_n1(repo):
    """Node n1 at version 1 with metrics from iot-core at T0."""
    return repo.create_node(
        NodeType.WAREHOUSE, capacity=1000, metrics=make_metrics(), node_id="n1"
    )
