"""
Subscription registry.

Reference-counted mapping between topics and connection ids, kept in the
shared registry store. This is the only writer of both indices.
"""

from __future__ import annotations

import structlog

from .errors import OpResult, StoreError
from .keys import socket_key, topic_key
from .metrics import MetricsCollector
from .store import RegistryStore

log = structlog.get_logger()


class SubscriptionRegistry:
    """
    Tracks which connections are subscribed to which topics.

    Operations never raise on store failure. They log, count the error and
    return an OpResult the caller is free to ignore.
    """

    def __init__(self, store: RegistryStore, metrics: MetricsCollector | None = None):
        self._store = store
        self._metrics = metrics

    async def subscribe(self, topic: str, connection_id: str) -> OpResult:
        """Add the connection to the topic and bump its reference count."""
        try:
            count = await self._store.add_reference(
                topic_key(topic), socket_key(connection_id), connection_id, topic
            )
        except StoreError as exc:
            return self._failed("subscribe", exc, topic=topic, connection=connection_id)

        if self._metrics:
            self._metrics.inc("subscriptions_total")
        log.debug("registry.subscribed", topic=topic, connection=connection_id, count=count)
        return OpResult.success(count)

    async def unsubscribe(self, topic: str, connection_id: str) -> OpResult:
        """
        Drop one reference. The connection leaves the topic's subscriber set
        when the count reaches zero.

        Decrement and removal happen in one atomic store call, so a subscribe
        racing with this one cannot leave a positive count behind a removed
        membership. Unsubscribing a pair that is not subscribed is a no-op.
        """
        try:
            count = await self._store.release_reference(
                topic_key(topic), socket_key(connection_id), connection_id, topic
            )
        except StoreError as exc:
            return self._failed("unsubscribe", exc, topic=topic, connection=connection_id)

        if self._metrics:
            self._metrics.inc("unsubscriptions_total")
        log.debug("registry.unsubscribed", topic=topic, connection=connection_id, count=count)
        return OpResult.success(count)

    async def purge(self, connection_id: str) -> OpResult:
        """
        Remove the connection from every topic regardless of counts and delete
        its reverse-index hash in one atomic store call. Safe to repeat.
        """
        try:
            topics = await self._store.purge_connection(socket_key(connection_id), connection_id)
        except StoreError as exc:
            return self._failed("purge", exc, connection=connection_id)

        if self._metrics:
            self._metrics.inc("purges_total")
        log.info("registry.purged", connection=connection_id, topics=len(topics))
        return OpResult.success(topics)

    async def forget(self, topic: str, connection_id: str) -> OpResult:
        """Drop the connection from one topic's subscriber set, whatever its count."""
        try:
            await self._store.remove_member(topic_key(topic), connection_id)
        except StoreError as exc:
            return self._failed("forget", exc, topic=topic, connection=connection_id)
        return OpResult.success(None)

    async def subscribers(self, topic: str) -> set[str]:
        """Current subscriber ids of a topic. Raises StoreError on failure."""
        return await self._store.members(topic_key(topic))

    async def topics_for(self, connection_id: str) -> dict[str, int]:
        """Reference counts per topic for one connection. Raises StoreError on failure."""
        key = socket_key(connection_id)
        counts = {}
        for topic in await self._store.fields(key):
            counts[topic] = await self._store.count(key, topic)
        return counts

    def _failed(self, operation: str, exc: StoreError, **fields: str) -> OpResult:
        if self._metrics:
            self._metrics.inc("store_errors_total")
        log.error(f"registry.{operation}_failed", error=str(exc), **fields)
        return OpResult.failure(exc)
