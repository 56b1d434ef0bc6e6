"""FastAPI surface for the digital twin core.

Endpoints:
    POST /ingest                                  apply one raw event
    GET  /nodes/{node_id}                         current node state
    GET  /simulations/{scenario_id}/{result_hash} cached simulation result
    GET  /twin/latest                             latest cached twin snapshot
    GET  /health                                  cache/store readiness
    GET  /metrics                                 Prometheus exposition

Run:
    uvicorn omnitwin.api.main:app
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import redis
from fastapi import Body, FastAPI, HTTPException
from fastapi.responses import JSONResponse

from omnitwin.cache.layer import CacheLayer
from omnitwin.common.exceptions import ConnectivityError, ErrorKind, TwinError
from omnitwin.common.logger import get_enhanced_logger
from omnitwin.config import TwinConfig
from omnitwin.errors.reporter import ErrorReporter, LoggingAlertChannel, RedisAlertChannel
from omnitwin.graph.repository import NodeRepository
from omnitwin.graph.store import PostgresNodeStore
from omnitwin.ingestion.gateway import IngestionGateway
from omnitwin.observability.metrics import get_metrics_handler

logger = get_enhanced_logger(__name__)

STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONCURRENCY: 409,
    ErrorKind.CONNECTIVITY: 503,
}


@dataclass
class TwinServices:
    cache: CacheLayer
    repository: NodeRepository
    gateway: IngestionGateway
    store: Any = None

    def close(self) -> None:
        self.cache.disconnect()
        if self.store is not None and hasattr(self.store, "disconnect"):
            self.store.disconnect()


def build_services(config: TwinConfig) -> TwinServices:
    """Wire the core from configuration and open its connection pools."""
    cache = CacheLayer(config.cache)
    store = PostgresNodeStore(config.store)
    cache.connect()
    store.connect()

    if config.admin_alert_channel:
        alert_client = redis.Redis(
            host=config.cache.host,
            port=config.cache.port,
            db=config.cache.db,
            password=config.cache.password,
            socket_timeout=config.cache.timeout_seconds,
        )
        channel = RedisAlertChannel(alert_client, config.admin_alert_channel)
    else:
        channel = LoggingAlertChannel()

    repository = NodeRepository(store, cache, config.node_cache_ttl_seconds)
    gateway = IngestionGateway(repository, reporter=ErrorReporter(channel), config=config)
    return TwinServices(cache=cache, repository=repository, gateway=gateway, store=store)


def create_app(services: TwinServices | None = None, config: TwinConfig | None = None) -> FastAPI:
    """Create the app. Without ``services`` the core is built from the environment at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.services is None
        if owned:
            app.state.services = build_services(config or TwinConfig.from_env())
        try:
            yield
        finally:
            if owned:
                app.state.services.close()
                app.state.services = None

    app = FastAPI(title="omnitwin", lifespan=lifespan)
    app.state.services = services

    def _services() -> TwinServices:
        svc = app.state.services
        if svc is None:
            raise HTTPException(status_code=503, detail="Service not initialized")
        return svc

    @app.exception_handler(TwinError)
    async def twin_error_handler(request, exc: TwinError):
        return JSONResponse(status_code=STATUS_BY_KIND[exc.kind], content=exc.to_dict())

    @app.post("/ingest")
    def ingest(event: Any = Body(...)):
        accepted = _services().gateway.ingest(event)
        return accepted.to_dict()

    @app.get("/nodes/{node_id}")
    def get_node(node_id: str):
        node = _services().repository.get_node(node_id)
        if node is None:
            raise HTTPException(status_code=404, detail=f"Node {node_id} not found")
        return node.to_dict()

    @app.get("/simulations/{scenario_id}/{result_hash}")
    def get_simulation(scenario_id: str, result_hash: str):
        results = _services().cache.get_simulation_result(scenario_id, result_hash)
        if results is None:
            raise HTTPException(status_code=404, detail="Simulation result not cached")
        return {"scenarioId": scenario_id, "resultHash": result_hash, "results": results}

    @app.get("/twin/latest")
    def latest_twin():
        snapshot = _services().cache.get_latest_digital_twin_snapshot()
        if snapshot is None:
            raise HTTPException(status_code=404, detail="No live digital twin snapshot")
        return {"timestamp": snapshot.timestamp, "version": snapshot.version, "state": snapshot.state}

    @app.get("/health")
    def health():
        svc = app.state.services
        cache_ok = False
        if svc is not None and svc.cache.is_ready():
            try:
                svc.cache.exists("health:probe")
                cache_ok = True
            except ConnectivityError as e:
                logger.warning(f"Cache health probe failed: {e}")
        status = "ok" if cache_ok else "degraded"
        return {"status": status, "cache": cache_ok, "initialized": svc is not None}

    app.add_route("/metrics", get_metrics_handler())
    return app


app = create_app()
