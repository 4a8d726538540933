"""
Operational counters for the broadcast engine.

Samples are keyed by metric name plus an optional label set, so delivery
outcomes share one family (``authcast_deliveries_total{outcome="stale"}``).
Exported as Prometheus text on ``GET /metrics``.
"""

from __future__ import annotations

import time
from collections import defaultdict

PREFIX = "authcast_"

HELP = {
    "subscriptions_total": "Subscribe requests applied to the registry.",
    "unsubscriptions_total": "Unsubscribe requests applied to the registry.",
    "purges_total": "Connections whose subscriptions were purged.",
    "publishes_total": "Publish calls handled.",
    "deliveries_total": "Per-recipient delivery attempts by outcome.",
    "store_errors_total": "Registry or session store operations that failed.",
    "connections_active": "Websocket connections currently registered.",
}

LabelSet = tuple[tuple[str, str], ...]


def _labels(labels: dict[str, str]) -> LabelSet:
    return tuple(sorted(labels.items()))


def _render(name: str, labels: LabelSet) -> str:
    if not labels:
        return name
    body = ",".join(f'{key}="{value}"' for key, value in labels)
    return f"{name}{{{body}}}"


class MetricsCollector:
    """Counters and gauges, optionally labelled."""

    def __init__(self) -> None:
        self._counters: dict[str, dict[LabelSet, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: dict[str, dict[LabelSet, float]] = defaultdict(dict)
        self._started = time.monotonic()

    def inc(self, name: str, value: int = 1, **labels: str) -> None:
        self._counters[name][_labels(labels)] += value

    def set_gauge(self, name: str, value: float, **labels: str) -> None:
        self._gauges[name][_labels(labels)] = value

    def get(self, name: str, **labels: str) -> int | float:
        """
        Read one sample.

        Without labels on a labelled family, returns the sum over the family.
        """
        if name in self._gauges:
            return self._gauges[name].get(_labels(labels), 0)
        samples = self._counters.get(name, {})
        if labels:
            return samples.get(_labels(labels), 0)
        return sum(samples.values())

    def to_prometheus(self) -> str:
        lines: list[str] = []
        families = [(name, "counter", self._counters[name]) for name in self._counters]
        families += [(name, "gauge", self._gauges[name]) for name in self._gauges]
        for name, kind, samples in sorted(families, key=lambda family: family[0]):
            full = f"{PREFIX}{name}"
            if name in HELP:
                lines.append(f"# HELP {full} {HELP[name]}")
            lines.append(f"# TYPE {full} {kind}")
            for labels, value in sorted(samples.items()):
                lines.append(f"{_render(full, labels)} {value}")
        lines.append(f"# TYPE {PREFIX}uptime_seconds gauge")
        lines.append(f"{PREFIX}uptime_seconds {time.monotonic() - self._started:.1f}")
        return "\n".join(lines) + "\n"
