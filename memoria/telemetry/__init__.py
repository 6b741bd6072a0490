"""Telemetry backends for pipeline observability.

Provides both in-memory (for testing) and Prometheus (for production) backends.
"""

from memoria.telemetry.base import TelemetryPort
from memoria.telemetry.inmemory import InMemoryTelemetry
from memoria.telemetry.prometheus import PrometheusConfig, PrometheusTelemetry

__all__ = [
    "TelemetryPort",
    "InMemoryTelemetry",
    "PrometheusConfig",
    "PrometheusTelemetry",
]
