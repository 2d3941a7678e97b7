"""
Metrics Collection Module
-------------------------
In-process counters, gauges and duration histograms for the rebalancing
loop. A summary is logged when the agent shuts down.
"""

import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

Tags = Optional[Dict[str, str]]


@dataclass
class Histogram:
    """Bounded window of observed values."""
    name: str
    values: List[float] = field(default_factory=list)
    window: int = 500

    def observe(self, value: float) -> None:
        self.values.append(value)
        del self.values[:-self.window]

    def summary(self) -> Dict[str, float]:
        if not self.values:
            return {"count": 0}
        ordered = sorted(self.values)
        return {
            "count": len(ordered),
            "min": ordered[0],
            "max": ordered[-1],
            "avg": sum(ordered) / len(ordered),
            "p95": ordered[int((len(ordered) - 1) * 0.95)],
        }


class MetricsCollector:
    """Metrics for one agent process, keyed by name plus sorted tags."""

    def __init__(self) -> None:
        self.counters: Dict[str, int] = {}
        self.gauges: Dict[str, float] = {}
        self.histograms: Dict[str, Histogram] = {}
        self.started = time.monotonic()

    @staticmethod
    def key(name: str, tags: Tags = None) -> str:
        if not tags:
            return name
        labels = ",".join(f"{k}={v}" for k, v in sorted(tags.items()))
        return f"{name}{{{labels}}}"

    def increment_counter(self, name: str, amount: int = 1, tags: Tags = None) -> None:
        key = self.key(name, tags)
        self.counters[key] = self.counters.get(key, 0) + amount

    def set_gauge(self, name: str, value: float, tags: Tags = None) -> None:
        self.gauges[self.key(name, tags)] = value

    def record_histogram(self, name: str, value: float, tags: Tags = None) -> None:
        key = self.key(name, tags)
        self.histograms.setdefault(key, Histogram(name=name)).observe(value)

    def get_all_metrics(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": time.monotonic() - self.started,
            "counters": dict(self.counters),
            "gauges": dict(self.gauges),
            "histograms": {key: h.summary() for key, h in self.histograms.items()},
        }


_metrics_instance: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Process-wide collector, created on first use."""
    global _metrics_instance
    if _metrics_instance is None:
        _metrics_instance = MetricsCollector()
    return _metrics_instance


def record_balance_poll(metrics: MetricsCollector, value: Optional[Decimal]) -> None:
    """Record a balance poll; None marks a failed fetch."""
    metrics.increment_counter("balance_polls_total")
    if value is None:
        metrics.increment_counter("balance_fetch_errors_total")
    else:
        metrics.set_gauge("last_balance", float(value))


def record_transaction(metrics: MetricsCollector, kind: str) -> None:
    """Record a confirmed transaction (deploy, register, swap)."""
    metrics.increment_counter("transactions_total", tags={"kind": kind})
    if kind == "swap":
        metrics.increment_counter("swaps_total")


def record_cycle_duration(metrics: MetricsCollector, duration: float) -> None:
    metrics.record_histogram("cycle_duration_seconds", duration)
