"""
Key and identifier helpers shared by the registry, session store and gateway.

Persisted layout:
- socket:<connection_id>  hash, field = topic, value = reference count
- <topic>                 set of connection ids
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable

SOCKET_KEY_PREFIX = "socket:"
DEFAULT_SESSION_PREFIX = "sess:"


def socket_key(connection_id: str) -> str:
    return f"{SOCKET_KEY_PREFIX}{connection_id}"


def topic_key(topic: str) -> str:
    # Topics are stored verbatim so other writers of the same keyspace agree.
    return topic


def session_key(session_id: str, prefix: str = DEFAULT_SESSION_PREFIX) -> str:
    return f"{prefix}{session_id}"


def new_connection_id() -> str:
    """Generate an opaque, unique connection identifier."""
    return uuid.uuid4().hex


def normalize_topics(topics: str | Iterable[str]) -> list[str]:
    """
    Turn a single topic or a collection of topics into a de-duplicated list.

    Order of first occurrence is kept. Raises ValueError for empty or
    non-string entries.
    """
    if isinstance(topics, str):
        topics = [topics]

    result: dict[str, None] = {}
    for topic in topics:
        if not isinstance(topic, str) or not topic:
            raise ValueError(f"Invalid topic key: {topic!r}")
        result.setdefault(topic, None)
    return list(result)
