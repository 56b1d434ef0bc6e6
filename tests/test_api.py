"""API tests using FastAPI's TestClient with in-memory services.

Run with:
    pytest tests/test_api.py -v
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from conftest import T0, make_event
from fastapi.testclient import TestClient

from omnitwin.api.main import TwinServices, create_app
from omnitwin.config import TwinConfig


@pytest.fixture
def services(cache, repo, gateway):
    return TwinServices(cache=cache, repository=repo, gateway=gateway)


@pytest.fixture
def client(services):
    return TestClient(create_app(services=services))


class TestIngestEndpoint:
    def test_accepted_update(self, client, node_n1):
        resp = client.post("/ingest", json=make_event(ts=T0 + timedelta(seconds=3)))

        assert resp.status_code == 200
        body = resp.json()
        assert body["nodeId"] == "n1"
        assert body["version"] == 2
        assert body["discrepancy"]["incoming_source"] == "manual-entry"

    def test_malformed_event_is_400(self, client, node_n1):
        resp = client.post("/ingest", json={"nodeId": "n1"})
        assert resp.status_code == 400
        assert resp.json()["kind"] == "validation"
        assert resp.json()["problems"]

    def test_unknown_node_is_404(self, client):
        resp = client.post("/ingest", json=make_event(node_id="ghost"))
        assert resp.status_code == 404
        assert resp.json()["node_id"] == "ghost"

    def test_exhausted_concurrency_is_409(self, client, store, node_n1):
        store.before_cas = store.bump
        resp = client.post("/ingest", json=make_event())
        assert resp.status_code == 409
        assert resp.json()["kind"] == "concurrency"

    def test_store_outage_is_503(self, client, store, node_n1):
        store.fail_next = 100
        resp = client.post("/ingest", json=make_event())
        assert resp.status_code == 503
        assert resp.json()["service"] == "store"


class TestReadEndpoints:
    def test_get_node(self, client, node_n1):
        resp = client.get("/nodes/n1")
        assert resp.status_code == 200
        assert resp.json()["metrics"]["lastUpdateSource"] == "iot-core"

    def test_get_missing_node(self, client):
        assert client.get("/nodes/ghost").status_code == 404

    def test_simulation_result(self, client, cache, clock):
        cache.cache_simulation_result("s1", "h1", {"cost": 1000})

        resp = client.get("/simulations/s1/h1")
        assert resp.status_code == 200
        assert resp.json()["results"] == {"cost": 1000}

        clock.advance(3601)
        assert client.get("/simulations/s1/h1").status_code == 404

    def test_latest_twin(self, client, cache):
        assert client.get("/twin/latest").status_code == 404

        cache.cache_digital_twin_state(1000, {"nodes": ["n1"]}, "v7")
        resp = client.get("/twin/latest")
        assert resp.json() == {"timestamp": 1000, "version": "v7", "state": {"nodes": ["n1"]}}

    def test_cache_outage_on_read_is_503(self, client, fake_redis):
        fake_redis.down = True
        assert client.get("/simulations/s1/h1").status_code == 503


class TestOperationalEndpoints:
    def test_health_ok(self, client):
        assert client.get("/health").json() == {"status": "ok", "cache": True, "initialized": True}

    def test_health_degraded_when_cache_down(self, client, fake_redis):
        fake_redis.down = True
        body = client.get("/health").json()
        assert body["status"] == "degraded"
        assert body["cache"] is False

    def test_metrics_exposition(self, client, node_n1):
        client.post("/ingest", json=make_event(ts=T0 + timedelta(seconds=30)))
        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert "omnitwin_ingest_events_total" in resp.text


def test_lifespan_builds_and_closes_services():
    built = MagicMock()
    with patch("omnitwin.api.main.build_services", return_value=built) as build:
        app = create_app(config=TwinConfig())
        with TestClient(app) as client:
            assert client.get("/health").json()["initialized"] is True

    build.assert_called_once()
    built.close.assert_called_once()
    assert app.state.services is None
