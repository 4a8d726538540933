"""
Session store adapters.

Sessions are written by the web application (login/logout); this service only
reads them. The Redis layout matches connect-redis: a JSON document stored at
sess:<session id>.
"""

from __future__ import annotations

import asyncio
import json
from typing import Protocol

import redis.asyncio as redis
import structlog
from pydantic import BaseModel, ConfigDict, ValidationError
from redis.exceptions import RedisError

from .errors import SessionLookupError
from .keys import DEFAULT_SESSION_PREFIX, session_key

log = structlog.get_logger()


class Session(BaseModel):
    """A web session as seen at delivery time."""

    model_config = ConfigDict(extra="allow")

    authenticated: bool = False


class SessionStore(Protocol):
    async def load(self, session_id: str) -> Session | None: ...


class RedisSessionStore:
    """Read-only view over sessions persisted in Redis."""

    def __init__(self, client: redis.Redis, prefix: str = DEFAULT_SESSION_PREFIX):
        self._client = client
        self._prefix = prefix

    async def load(self, session_id: str) -> Session | None:
        """Return the session, or None if it does not exist or cannot be decoded."""
        try:
            raw = await self._client.get(session_key(session_id, self._prefix))
        except RedisError as exc:
            raise SessionLookupError(str(exc)) from exc

        if raw is None:
            return None

        try:
            return Session.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError):
            log.warning("sessions.decode_failed", session=session_id[:8])
            return None


class MemorySessionStore:
    """In-process session store for development and tests."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    async def load(self, session_id: str) -> Session | None:
        await asyncio.sleep(0)
        return self._sessions.get(session_id)

    def save(self, session_id: str, session: Session) -> None:
        self._sessions[session_id] = session

    def destroy(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
