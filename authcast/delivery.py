"""
Delivery pipeline: per-recipient authorization check and event emission.

Sessions can be revoked at any time after a subscribe succeeded (logout,
expiry), so every delivery re-reads the session captured at connect time.
A subscriber whose session is no longer valid gets one failure event and is
then purged from all of its topics.
"""

from __future__ import annotations

import enum
from typing import Any

import structlog

from .connections import Connection, ConnectionDirectory
from .errors import ConnectionGoneError, SessionLookupError
from .metrics import MetricsCollector
from .registry import SubscriptionRegistry
from .sessions import SessionStore

log = structlog.get_logger()

NOT_AUTHENTICATED = "not authenticated"


class DeliveryOutcome(str, enum.Enum):
    DELIVERED = "delivered"
    REJECTED = "rejected"
    STALE = "stale"
    FAILED = "failed"


def update_payload(document: Any) -> dict[str, Any]:
    return {"status": True, "method": "update", "data": document}


def failure_payload(reason: str) -> dict[str, Any]:
    return {"status": False, "data": reason}


class DeliveryPipeline:
    def __init__(
        self,
        registry: SubscriptionRegistry,
        directory: ConnectionDirectory,
        sessions: SessionStore,
        metrics: MetricsCollector | None = None,
    ):
        self._registry = registry
        self._directory = directory
        self._sessions = sessions
        self._metrics = metrics

    async def deliver(self, topic: str, connection_id: str, document: Any) -> DeliveryOutcome:
        """
        Deliver one document to one subscriber. Never raises.

        Errors nobody anticipated (a session backend or connection failing in
        an unexpected way) fail this recipient only, without a purge.
        """
        try:
            return await self._deliver(topic, connection_id, document)
        except Exception:
            log.exception("delivery.unexpected_error", topic=topic, connection=connection_id)
            return self._count(DeliveryOutcome.FAILED)

    async def _deliver(self, topic: str, connection_id: str, document: Any) -> DeliveryOutcome:
        connection = self._directory.get(connection_id)
        if connection is None:
            log.info("delivery.stale", topic=topic, connection=connection_id)
            await self._registry.purge(connection_id)
            # The hash may no longer list this topic; drop the membership directly.
            await self._registry.forget(topic, connection_id)
            return self._count(DeliveryOutcome.STALE)

        reason = await self._check_session(connection)
        if reason is not None:
            log.info("delivery.rejected", topic=topic, connection=connection_id, reason=reason)
            try:
                await connection.emit(topic, failure_payload(reason))
            except Exception as exc:
                log.warning("delivery.reject_emit_failed", connection=connection_id, error=str(exc))
            await self._registry.purge(connection_id)
            return self._count(DeliveryOutcome.REJECTED)

        try:
            await connection.emit(topic, update_payload(document))
        except ConnectionGoneError:
            log.info("delivery.connection_gone", topic=topic, connection=connection_id)
            await self._registry.purge(connection_id)
            return self._count(DeliveryOutcome.FAILED)
        except Exception:
            log.exception("delivery.emit_failed", topic=topic, connection=connection_id)
            return self._count(DeliveryOutcome.FAILED)

        return self._count(DeliveryOutcome.DELIVERED)

    async def _check_session(self, connection: Connection) -> str | None:
        """Return a failure reason, or None when the session is authenticated."""
        try:
            session = await self._sessions.load(connection.session_id)
        except SessionLookupError as exc:
            if self._metrics:
                self._metrics.inc("store_errors_total")
            log.error("delivery.session_lookup_failed", connection=connection.connection_id, error=str(exc))
            return str(exc) or NOT_AUTHENTICATED

        if session is None or not session.authenticated:
            return NOT_AUTHENTICATED
        return None

    def _count(self, outcome: DeliveryOutcome) -> DeliveryOutcome:
        if self._metrics:
            self._metrics.inc("deliveries_total", outcome=outcome.value)
        return outcome
