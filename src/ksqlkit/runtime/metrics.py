# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Prometheus counters for subscriptions.

Each context owns one `KsqlMetrics` (its own CollectorRegistry unless one is
passed in). Handles get a `SubscriptionMetrics` view labelled with their entity,
kind and topic; every subscription opened from a handle feeds that view.

Labels stay low-cardinality: no group ids, no offsets.

    from prometheus_client import make_wsgi_app
    app = make_wsgi_app(registry=ctx.metrics.registry)
"""

from typing import Final

from prometheus_client import CollectorRegistry, Counter

_PREFIX: Final[str] = "ksqlkit"
_LABELS: Final[tuple[str, ...]] = ("entity", "kind", "topic")

_COUNTERS: Final[tuple[tuple[str, str], ...]] = (
    ("received", "Raw messages read by subscriptions"),
    ("delivered", "Records decoded and handed to the caller"),
    ("decode_failures", "Messages that failed to decode"),
    ("retries", "Decode retries"),
    ("skipped", "Messages dropped by the error policy"),
    ("dead_lettered", "Messages published to a dead-letter topic"),
    ("dead_letter_failures", "Dead-letter publishes that failed"),
)


class KsqlMetrics:
    """Counter families of one context."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self.families: dict[str, Counter] = {
            name: Counter(f"{_PREFIX}_{name}", doc, labelnames=list(_LABELS), registry=self.registry)
            for name, doc in _COUNTERS
        }

    def for_entity(self, entity: str, kind: str, topic: str) -> SubscriptionMetrics:
        return SubscriptionMetrics(self, entity=entity, kind=kind, topic=topic)


class EntityCounter:
    """One labelled child; `value` is read back from the registry."""

    __slots__ = ("_child", "_labels", "_registry", "_sample")

    def __init__(self, metrics: KsqlMetrics, name: str, labels: dict[str, str]) -> None:
        self._registry = metrics.registry
        self._sample = f"{_PREFIX}_{name}_total"
        self._labels = labels
        self._child = metrics.families[name].labels(**labels)

    def inc(self, n: int = 1) -> None:
        self._child.inc(n)

    @property
    def value(self) -> int:
        return int(self._registry.get_sample_value(self._sample, self._labels) or 0)


class SubscriptionMetrics:
    """
    Per-handle counters. Built without a `KsqlMetrics`, it registers into a
    private registry of its own (handy for standalone subscriptions and tests).
    """

    def __init__(
        self, metrics: KsqlMetrics | None = None, *, entity: str = "", kind: str = "", topic: str = ""
    ) -> None:
        m = metrics or KsqlMetrics()
        labels = {"entity": entity, "kind": kind, "topic": topic}
        self.received = EntityCounter(m, "received", labels)
        self.delivered = EntityCounter(m, "delivered", labels)
        self.decode_failures = EntityCounter(m, "decode_failures", labels)
        self.retries = EntityCounter(m, "retries", labels)
        self.skipped = EntityCounter(m, "skipped", labels)
        self.dead_lettered = EntityCounter(m, "dead_lettered", labels)
        self.dead_letter_failures = EntityCounter(m, "dead_letter_failures", labels)

    def snapshot(self) -> dict[str, int]:
        return {name: getattr(self, name).value for name, _ in _COUNTERS}
