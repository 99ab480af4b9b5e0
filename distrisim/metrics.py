"""
Prometheus metrics for scenario replay.

Each session gets its own ``CollectorRegistry`` so several simulations can
run in one process. Gauges mirror the numeric entries of ``get_stats()``.
"""
import logging
from typing import Any, Dict, Iterator, Optional, Tuple

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

logger = logging.getLogger(__name__)


class SimulationMetrics:
    """Gauges and counters fed from one protocol's statistics."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.events_applied = Counter(
            'distrisim_events_applied_total',
            'Scenario events applied',
            ['concept'],
            registry=self.registry
        )

        self.messages = Gauge(
            'distrisim_messages',
            'Protocol messages by status',
            ['concept', 'status'],
            registry=self.registry
        )

        self.protocol_stat = Gauge(
            'distrisim_protocol_stat',
            'Numeric protocol statistic',
            ['concept', 'stat'],
            registry=self.registry
        )

        self.progress = Gauge(
            'distrisim_timeline_progress_percent',
            'Share of the scenario already applied',
            ['concept'],
            registry=self.registry
        )

        self.step_seconds = Histogram(
            'distrisim_step_seconds',
            'Wall time of one timeline step',
            ['concept'],
            buckets=(0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5),
            registry=self.registry
        )

    def observe(self, concept: str, stats: Dict[str, Any], progress: Optional[float] = None):
        """
        Update the gauges from a ``get_stats()`` result.

        Args:
            concept: Protocol concept id, used as label
            stats: Statistics of the protocol
            progress: Timeline progress in percent
        """
        for status, count in (stats.get("messages") or {}).items():
            self.messages.labels(concept=concept, status=status).set(count)
        for name, value in flatten_stats(stats):
            if name.startswith("messages."):
                continue
            self.protocol_stat.labels(concept=concept, stat=name).set(value)
        if progress is not None:
            self.progress.labels(concept=concept).set(progress)

    def record_step(self, concept: str, seconds: float):
        self.events_applied.labels(concept=concept).inc()
        self.step_seconds.labels(concept=concept).observe(seconds)

    def export(self) -> bytes:
        """Render the registry in the Prometheus text format."""
        return generate_latest(self.registry)


def flatten_stats(stats: Dict[str, Any], prefix: str = "") -> Iterator[Tuple[str, float]]:
    """
    Yield ``(dotted_name, value)`` for every numeric leaf of ``stats``.

    Booleans become 0/1; strings and lists are skipped.
    """
    for key, value in stats.items():
        name = f"{prefix}{key}"
        if isinstance(value, dict):
            yield from flatten_stats(value, prefix=f"{name}.")
        elif isinstance(value, bool):
            yield name, float(value)
        elif isinstance(value, (int, float)):
            yield name, float(value)
