"""Base telemetry port protocol."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

Labels = tuple[tuple[str, str], ...]


@runtime_checkable
class TelemetryPort(Protocol):
    """Protocol for telemetry backends (Prometheus, in-memory).

    - Counters: jobs enqueued/completed/failed, provider calls, memo decisions
    - Gauges: queue depth per job type
    - Histograms and timings: job and provider call durations
    """

    def incr(self, name: str, value: int = 1, labels: Labels = ()) -> None:
        """Increase a named counter by ``value`` with optional labels.

        Args:
            name: Metric name (e.g., "jobs_enqueued_total")
            value: Amount to increment (default 1)
            labels: Optional label tuples (e.g., (("type", "enrich"),))
        """

    def gauge(self, name: str, value: float, labels: Labels = ()) -> None:
        """Set a gauge value."""

    def histogram(self, name: str, value: float, labels: Labels = ()) -> None:
        """Observe a histogram value."""

    def timing(self, name: str, value: float, labels: Labels = ()) -> None:
        """Record timing of an operation in seconds."""
