"""
Connection directory.

Resolves a connection id to the live connection handle plus the session id
captured when the connection was accepted. Lookups for connections that have
gone away return None.
"""

from __future__ import annotations

import json
from typing import Any, Protocol

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect, WebSocketState

from .errors import ConnectionGoneError


class Connection(Protocol):
    @property
    def connection_id(self) -> str: ...

    @property
    def session_id(self) -> str: ...

    async def emit(self, event: str, payload: dict[str, Any]) -> None: ...


class WebSocketConnection:
    """A websocket client. Events go out as {"event": ..., "data": ...} frames."""

    __slots__ = ("_websocket", "_connection_id", "_session_id")

    def __init__(self, websocket: WebSocket, connection_id: str, session_id: str):
        self._websocket = websocket
        self._connection_id = connection_id
        self._session_id = session_id

    @property
    def connection_id(self) -> str:
        return self._connection_id

    @property
    def session_id(self) -> str:
        return self._session_id

    async def emit(self, event: str, payload: dict[str, Any]) -> None:
        if self._websocket.application_state != WebSocketState.CONNECTED:
            raise ConnectionGoneError(self._connection_id)
        try:
            await self._websocket.send_text(json.dumps({"event": event, "data": payload}))
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            raise ConnectionGoneError(self._connection_id) from exc


class ConnectionDirectory:
    """Live connections of this process, keyed by connection id."""

    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def register(self, connection: Connection) -> None:
        if connection.connection_id in self._connections:
            raise ValueError(f"Connection id already registered: {connection.connection_id}")
        self._connections[connection.connection_id] = connection

    def unregister(self, connection_id: str) -> None:
        self._connections.pop(connection_id, None)

    def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)
