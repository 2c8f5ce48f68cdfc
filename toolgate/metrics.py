"""Metrics sinks for tool dispatch.

The registry reports through two calls only: ``increment(name, labels)`` for
counters and ``observe(name, value, labels)`` for durations. Two sinks are
provided: an in-memory recorder and a Prometheus-backed one.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

from .config import ServerConfig

CALLS_METRIC = "tool_calls_total"
DURATION_METRIC = "tool_call_duration_seconds"
UNKNOWN_TOOL_LABEL = "unknown"

logger = logging.getLogger("toolgate.metrics")


class MetricsSink(Protocol):
    def increment(self, name: str, labels: Dict[str, str]) -> None: ...

    def observe(self, name: str, value: float, labels: Dict[str, str]) -> None: ...


class InMemoryMetrics:
    """Record metrics in memory; useful for tests and local debugging."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.counters: Dict[Tuple[str, Tuple[Tuple[str, str], ...]], int] = {}
        self.observations: Dict[str, List[Dict[str, Any]]] = {}

    def increment(self, name: str, labels: Dict[str, str]) -> None:
        key = (name, tuple(sorted(labels.items())))
        with self._lock:
            self.counters[key] = self.counters.get(key, 0) + 1

    def observe(self, name: str, value: float, labels: Dict[str, str]) -> None:
        metric = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "name": name,
            "value": value,
            "labels": dict(labels),
        }
        with self._lock:
            self.observations.setdefault(name, []).append(metric)
        logger.debug(f"Metric recorded: {name}={value}", extra={"extra_fields": metric})

    def count(self, name: str, **labels: str) -> int:
        """Sum of counter values whose labels include ``labels``."""
        wanted = set(labels.items())
        with self._lock:
            return sum(
                value
                for (metric, label_items), value in self.counters.items()
                if metric == name and wanted.issubset(label_items)
            )

    def get_observations(self, name: Optional[str] = None) -> Dict[str, List[Dict[str, Any]]]:
        """Get recorded observations."""
        with self._lock:
            if name:
                return {name: list(self.observations.get(name, []))}
            return {key: list(values) for key, values in self.observations.items()}


class PrometheusMetrics:
    """Expose dispatch metrics through ``prometheus_client`` collectors.

    Collectors live on a private ``CollectorRegistry`` so several registries
    can coexist in one process. Collectors for names other than the two
    dispatch metrics are created on first use, labelled by the keys seen then.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None, namespace: str = "toolgate") -> None:
        self.registry = registry or CollectorRegistry()
        self.namespace = namespace
        self._lock = threading.Lock()
        self._counters: Dict[str, Counter] = {
            CALLS_METRIC: Counter(
                CALLS_METRIC,
                "Tool calls by tool and outcome",
                ["tool", "status"],
                namespace=namespace,
                registry=self.registry,
            )
        }
        self._histograms: Dict[str, Histogram] = {
            DURATION_METRIC: Histogram(
                DURATION_METRIC,
                "Tool call latency by tool",
                ["tool"],
                namespace=namespace,
                registry=self.registry,
            )
        }

    def increment(self, name: str, labels: Dict[str, str]) -> None:
        counter = self._counter(name, labels)
        counter.labels(**labels).inc()

    def observe(self, name: str, value: float, labels: Dict[str, str]) -> None:
        histogram = self._histogram(name, labels)
        histogram.labels(**labels).observe(max(0.0, value))

    def render(self) -> bytes:
        """Prometheus text exposition of every collector on the registry."""
        return generate_latest(self.registry)

    def sample(self, name: str, labels: Dict[str, str]) -> Optional[float]:
        return self.registry.get_sample_value(f"{self.namespace}_{name}", labels)

    def _counter(self, name: str, labels: Dict[str, str]) -> Counter:
        with self._lock:
            if name not in self._counters:
                self._counters[name] = Counter(
                    name, name.replace("_", " "), sorted(labels), namespace=self.namespace, registry=self.registry
                )
            return self._counters[name]

    def _histogram(self, name: str, labels: Dict[str, str]) -> Histogram:
        with self._lock:
            if name not in self._histograms:
                self._histograms[name] = Histogram(
                    name, name.replace("_", " "), sorted(labels), namespace=self.namespace, registry=self.registry
                )
            return self._histograms[name]


def create_metrics(config: ServerConfig) -> MetricsSink:
    if config.metrics_backend == "prometheus":
        return PrometheusMetrics()
    return InMemoryMetrics()
