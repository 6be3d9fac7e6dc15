"""
Metrics collection and Prometheus-compatible exposition.

Counts change-feed events, delivered and coalesced notifications, and
Completion Service usage so credit consumption stays visible.
"""

from __future__ import annotations

import time
from collections import defaultdict
from typing import Any

PREFIX = "saathi_"


class MetricsCollector:
    """
    Counters and gauges for the sync layer, exported as Prometheus text.

    Names are given without the `saathi_` prefix; it is added on write.
    """

    def __init__(self) -> None:
        self._counters: dict[str, int] = defaultdict(int)
        self._gauges: dict[str, float] = {}
        self._start_time = time.time()

    def inc(self, name: str, value: int = 1) -> None:
        """Bump a counter, e.g. one more coalesced event."""
        self._counters[PREFIX + name] += value

    def set_gauge(self, name: str, value: float) -> None:
        """Replace a gauge's value."""
        self._gauges[PREFIX + name] = value

    def add_gauge(self, name: str, delta: float) -> None:
        """Move a gauge up or down, starting from zero if unset."""
        full = PREFIX + name
        self._gauges[full] = self._gauges.get(full, 0) + delta

    def get(self, name: str) -> int | float:
        """Current value of a gauge or counter; unknown names read as 0."""
        full = PREFIX + name
        if full in self._gauges:
            return self._gauges[full]
        return self._counters.get(full, 0)

    def to_prometheus(self) -> str:
        """Render every metric plus process uptime in Prometheus text format."""
        lines = []
        for name, value in sorted(self._counters.items()):
            lines.append(f"# TYPE {name} counter")
            lines.append(f"{name} {value}")
        for name, value in sorted(self._gauges.items()):
            lines.append(f"# TYPE {name} gauge")
            lines.append(f"{name} {value}")
        uptime = time.time() - self._start_time
        lines.append(f"# TYPE {PREFIX}uptime_seconds gauge")
        lines.append(f"{PREFIX}uptime_seconds {uptime:.1f}")
        return "\n".join(lines) + "\n"

    def to_dict(self) -> dict[str, Any]:
        """Snapshot for structured logs, keyed by full metric name."""
        return {
            "counters": dict(self._counters),
            "gauges": dict(self._gauges),
            "uptime_seconds": time.time() - self._start_time,
        }
