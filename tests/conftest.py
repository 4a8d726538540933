"""
Shared fixtures: in-memory stores wired into the registry, pipeline and engine.
"""

import pytest

from authcast.connections import ConnectionDirectory
from authcast.delivery import DeliveryPipeline
from authcast.engine import BroadcastEngine
from authcast.metrics import MetricsCollector
from authcast.registry import SubscriptionRegistry
from authcast.sessions import MemorySessionStore, Session
from authcast.store import MemoryRegistryStore

from .doubles import RecordingConnection


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def store():
    return MemoryRegistryStore()


@pytest.fixture
def sessions():
    return MemorySessionStore()


@pytest.fixture
def directory():
    return ConnectionDirectory()


@pytest.fixture
def registry(store, metrics):
    return SubscriptionRegistry(store, metrics)


@pytest.fixture
def pipeline(registry, directory, sessions, metrics):
    return DeliveryPipeline(registry, directory, sessions, metrics)


@pytest.fixture
def engine(registry, pipeline, metrics):
    return BroadcastEngine(registry, pipeline, metrics)


@pytest.fixture
def connect(directory, sessions):
    """Register a live connection with a session that is authenticated by default."""

    def _connect(connection_id: str, *, authenticated: bool = True) -> RecordingConnection:
        session_id = f"sid-{connection_id}"
        sessions.save(session_id, Session(authenticated=authenticated))
        conn = RecordingConnection(connection_id, session_id)
        directory.register(conn)
        return conn

    return _connect
