"""
Broadcast engine.

The single entry point application code uses to push a document update to
every current subscriber of one or more topics.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import structlog

from .delivery import DeliveryOutcome, DeliveryPipeline
from .errors import StoreError
from .keys import normalize_topics
from .metrics import MetricsCollector
from .registry import SubscriptionRegistry

log = structlog.get_logger()


@dataclass
class PublishReport:
    """What happened during one publish call."""

    topics: int = 0
    recipients: int = 0
    outcomes: dict[str, int] = field(
        default_factory=lambda: {outcome.value: 0 for outcome in DeliveryOutcome}
    )
    lookup_errors: int = 0

    @property
    def delivered(self) -> int:
        return self.outcomes[DeliveryOutcome.DELIVERED.value]

    def record(self, outcome: DeliveryOutcome) -> None:
        self.recipients += 1
        self.outcomes[outcome.value] += 1


class BroadcastEngine:
    def __init__(
        self,
        registry: SubscriptionRegistry,
        pipeline: DeliveryPipeline,
        metrics: MetricsCollector | None = None,
    ):
        self._registry = registry
        self._pipeline = pipeline
        self._metrics = metrics

    async def publish(self, topics: str | Iterable[str], document: Any) -> PublishReport:
        """
        Send `document` to all subscribers of each topic.

        Duplicate topics are published once. A failed subscriber lookup for
        one topic is logged and the remaining topics are still processed.
        Never raises on store or delivery failure.
        """
        report = PublishReport()
        for topic in normalize_topics(topics):
            report.topics += 1
            try:
                connection_ids = await self._registry.subscribers(topic)
            except StoreError as exc:
                report.lookup_errors += 1
                if self._metrics:
                    self._metrics.inc("store_errors_total")
                log.error("engine.lookup_failed", topic=topic, error=str(exc))
                continue

            if not connection_ids:
                continue

            outcomes = await asyncio.gather(
                *(
                    self._pipeline.deliver(topic, connection_id, document)
                    for connection_id in connection_ids
                )
            )
            for outcome in outcomes:
                report.record(outcome)

        if self._metrics:
            self._metrics.inc("publishes_total")
        log.debug(
            "engine.published",
            topics=report.topics,
            recipients=report.recipients,
            delivered=report.delivered,
        )
        return report

    async def publish_one(self, topic: str, document: Any) -> PublishReport:
        return await self.publish([topic], document)
