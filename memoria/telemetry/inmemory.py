"""In-memory telemetry backend for testing and development.

Drop-in replacement for PrometheusTelemetry that keeps every metric in
process memory so tests can assert on it.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass, field

from memoria.telemetry.base import Labels


@dataclass
class InMemoryTelemetry:
    """In-memory telemetry backend for testing and development."""

    counters: dict[str, Counter] = field(default_factory=lambda: defaultdict(Counter))
    gauges: dict[str, float] = field(default_factory=dict)
    histograms: dict[str, list[float]] = field(default_factory=lambda: defaultdict(list))
    timings: dict[str, list[float]] = field(default_factory=lambda: defaultdict(list))

    def incr(self, name: str, value: int = 1, labels: Labels = ()) -> None:
        key = self._make_key(name, labels)
        self.counters[key][name] += value

    def gauge(self, name: str, value: float, labels: Labels = ()) -> None:
        key = self._make_key(name, labels)
        self.gauges[key] = value

    def histogram(self, name: str, value: float, labels: Labels = ()) -> None:
        key = self._make_key(name, labels)
        self.histograms[key].append(value)

    def timing(self, name: str, value: float, labels: Labels = ()) -> None:
        key = self._make_key(name, labels)
        self.timings[key].append(value)

    def _make_key(self, name: str, labels: Labels | None) -> str:
        """Create a unique key for a metric with labels."""
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in labels)
        return f"{name}{{{label_str}}}"

    # ── Test helpers ─────────────────────────────────────────────────────

    def get_counter(self, name: str, labels: Labels = ()) -> int:
        key = self._make_key(name, labels)
        return int(self.counters[key][name])

    def get_gauge(self, name: str, labels: Labels = ()) -> float | None:
        key = self._make_key(name, labels)
        return self.gauges.get(key)

    def get_timing_values(self, name: str, labels: Labels = ()) -> list[float]:
        key = self._make_key(name, labels)
        return list(self.timings[key])

    def reset(self) -> None:
        """Clear all metrics."""
        self.counters.clear()
        self.gauges.clear()
        self.histograms.clear()
        self.timings.clear()
