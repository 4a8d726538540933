"""
Transport gateway.

FastAPI application exposing:
- WS  <ws_path>   client connections; inbound subscribe/unsubscribe frames
- POST /publish   push a document to the subscribers of one or more topics
- GET /health     JSON health status
- GET /metrics    Prometheus-compatible metrics
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from .config import AuthcastConfig
from .connections import ConnectionDirectory, WebSocketConnection
from .delivery import DeliveryPipeline
from .engine import BroadcastEngine
from .errors import HandshakeError, SessionLookupError
from .keys import new_connection_id
from .metrics import MetricsCollector
from .registry import SubscriptionRegistry
from .sessions import MemorySessionStore, RedisSessionStore, SessionStore
from .store import MemoryRegistryStore, RedisRegistryStore, RegistryStore, connect_redis

log = structlog.get_logger()

CLOSE_UNAUTHORIZED = 4401
INBOUND_EVENTS = ("subscribe", "unsubscribe")


class PublishRequest(BaseModel):
    topics: list[str] | str
    document: Any = None


@dataclass
class Services:
    """Everything the endpoints need, wired once per application."""

    store: RegistryStore
    sessions: SessionStore
    directory: ConnectionDirectory
    registry: SubscriptionRegistry
    pipeline: DeliveryPipeline
    engine: BroadcastEngine
    metrics: MetricsCollector


def build_services(
    config: AuthcastConfig,
    *,
    registry_store: RegistryStore | None = None,
    session_store: SessionStore | None = None,
) -> Services:
    """Wire store -> registry -> pipeline -> engine from configuration."""
    if config.store.backend == "memory":
        registry_store = registry_store or MemoryRegistryStore()
        session_store = session_store or MemorySessionStore()
    elif registry_store is None or session_store is None:
        client = connect_redis(config.redis.url)
        registry_store = registry_store or RedisRegistryStore(client)
        session_store = session_store or RedisSessionStore(client, config.sessions.key_prefix)

    metrics = MetricsCollector()
    directory = ConnectionDirectory()
    registry = SubscriptionRegistry(registry_store, metrics)
    pipeline = DeliveryPipeline(registry, directory, session_store, metrics)
    engine = BroadcastEngine(registry, pipeline, metrics)
    return Services(
        store=registry_store,
        sessions=session_store,
        directory=directory,
        registry=registry,
        pipeline=pipeline,
        engine=engine,
        metrics=metrics,
    )


async def authorize_handshake(session_id: str | None, sessions: SessionStore) -> str:
    """
    Resolve the session presented at connect time.

    Returns the session id to bind to the connection. Raises HandshakeError
    if no session id was presented or it does not resolve. Authentication
    itself is re-checked on every delivery.
    """
    if not session_id:
        raise HandshakeError("missing session")
    try:
        session = await sessions.load(session_id)
    except SessionLookupError as exc:
        raise HandshakeError(str(exc)) from exc
    if session is None:
        raise HandshakeError("unknown session")
    return session_id


def parse_frame(text: str) -> tuple[str, str] | None:
    """Decode an inbound {"event": ..., "data": <topic>} frame, or None if invalid."""
    try:
        frame = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(frame, dict):
        return None
    event = frame.get("event")
    topic = frame.get("data")
    if event not in INBOUND_EVENTS or not isinstance(topic, str) or not topic:
        return None
    return event, topic


def create_app(
    config: AuthcastConfig,
    *,
    registry_store: RegistryStore | None = None,
    session_store: SessionStore | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    services = build_services(
        config, registry_store=registry_store, session_store=session_store
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info("authcast.starting", backend=config.store.backend)
        yield
        log.info("authcast.stopping", connections=len(services.directory))
        await services.store.close()

    app = FastAPI(title="authcast", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    @app.websocket(config.server.ws_path)
    async def socket_endpoint(websocket: WebSocket):
        try:
            session_id = await authorize_handshake(
                websocket.cookies.get(config.sessions.cookie_name), services.sessions
            )
        except HandshakeError as exc:
            log.info("gateway.handshake_rejected", reason=str(exc))
            await websocket.close(code=CLOSE_UNAUTHORIZED, reason=str(exc))
            return

        await websocket.accept()
        connection = WebSocketConnection(websocket, new_connection_id(), session_id)
        services.directory.register(connection)
        services.metrics.set_gauge("connections_active", len(services.directory))
        log.info("gateway.connected", connection=connection.connection_id)

        try:
            while True:
                text = await websocket.receive_text()
                parsed = parse_frame(text)
                if parsed is None:
                    log.warning(
                        "gateway.bad_frame",
                        connection=connection.connection_id,
                        frame=text[:200],
                    )
                    continue

                event, topic = parsed
                if event == "subscribe":
                    await services.registry.subscribe(topic, connection.connection_id)
                else:
                    await services.registry.unsubscribe(topic, connection.connection_id)
        except WebSocketDisconnect:
            pass
        finally:
            services.directory.unregister(connection.connection_id)
            services.metrics.set_gauge("connections_active", len(services.directory))
            await services.registry.purge(connection.connection_id)
            log.info("gateway.disconnected", connection=connection.connection_id)

    @app.post("/publish")
    async def publish(body: PublishRequest):
        try:
            report = await services.engine.publish(body.topics, body.document)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc))
        return {
            "topics": report.topics,
            "recipients": report.recipients,
            "outcomes": report.outcomes,
            "lookup_errors": report.lookup_errors,
        }

    @app.get("/health")
    async def health():
        reachable = await services.store.ping()
        return {
            "status": "ok" if reachable else "degraded",
            "store_reachable": reachable,
            "connections": len(services.directory),
        }

    if config.metrics.enabled:

        @app.get("/metrics", response_class=PlainTextResponse)
        async def metrics():
            return services.metrics.to_prometheus()

    return app
