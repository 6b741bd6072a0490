"""Prometheus metrics backend for pipeline observability.

Metrics are exposed at /metrics for scraping by a Prometheus server.

Usage:
    telemetry = PrometheusTelemetry(PrometheusConfig(port=9464))
    telemetry.start()
    telemetry.incr("jobs_enqueued_total", labels=(("type", "enrich"),))
    telemetry.timing("job_duration_seconds", 0.8, labels=(("type", "enrich"),))
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger
from prometheus_client import Counter, Gauge, Histogram, start_http_server

from memoria.telemetry.base import Labels

_PREFIX = "memoria_"


@dataclass
class PrometheusConfig:
    """Configuration for Prometheus telemetry backend."""

    enabled: bool = True
    port: int = 9464
    host: str = "127.0.0.1"  # localhost only by default


class PrometheusTelemetry:
    """Prometheus-backed telemetry with a /metrics endpoint.

    Standard pipeline metrics are registered up front so their label sets are
    fixed; any other name is registered lazily from the first call's labels.
    Binds to localhost unless ``config.host`` says otherwise.
    """

    def __init__(self, config: PrometheusConfig | None = None) -> None:
        self._config = config or PrometheusConfig()
        self._metrics: dict[str, Counter | Gauge | Histogram] = {}
        self._started = False
        if not self._config.enabled:
            logger.info("Prometheus telemetry disabled")
            return
        self._register_standard_metrics()

    def _register_standard_metrics(self) -> None:
        # Queue metrics
        for name, help_text in (
            ("jobs_enqueued_total", "Jobs accepted by the queue"),
            ("jobs_deduplicated_total", "Enqueue calls collapsed into an existing job"),
            ("jobs_completed_total", "Jobs whose handler succeeded"),
            ("jobs_expired_total", "Jobs abandoned after their expiry"),
        ):
            self._metrics[name] = Counter(_PREFIX + name, help_text, labelnames=["type"])
        self._metrics["jobs_failed_total"] = Counter(
            _PREFIX + "jobs_failed_total",
            "Job handler failures",
            labelnames=["type", "terminal"],  # terminal=true once retries are exhausted
        )
        self._metrics["job_duration_seconds"] = Histogram(
            _PREFIX + "job_duration_seconds",
            "Job handler duration in seconds",
            labelnames=["type"],
            buckets=[0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0],
        )
        self._metrics["queue_depth"] = Gauge(
            _PREFIX + "queue_depth",
            "Queued jobs per type",
            labelnames=["type"],
        )

        # Provider metrics
        self._metrics["provider_requests_total"] = Counter(
            _PREFIX + "provider_requests_total",
            "Model requests by capability and tier",
            labelnames=["capability", "tier"],  # tier=local/remote
        )

        # Stage metrics
        self._metrics["classification_total"] = Counter(
            _PREFIX + "classification_total", "Classification verdicts", labelnames=["result"]
        )
        self._metrics["enrichment_total"] = Counter(
            _PREFIX + "enrichment_total", "Enrichment outcomes by resulting tier", labelnames=["tier"]
        )
        self._metrics["embeddings_stored_total"] = Counter(
            _PREFIX + "embeddings_stored_total", "Message embeddings written", labelnames=["tier"]
        )
        self._metrics["memo_decisions_total"] = Counter(
            _PREFIX + "memo_decisions_total", "Memo evolution decisions", labelnames=["action"]
        )
        self._metrics["sessions_recovered_total"] = Counter(
            _PREFIX + "sessions_recovered_total", "Stale agent sessions failed by the sweep"
        )

    def start(self) -> None:
        """Start the Prometheus HTTP server."""
        if not self._config.enabled or self._started:
            return
        try:
            start_http_server(port=self._config.port, addr=self._config.host)
            self._started = True
            logger.info(
                "Prometheus metrics server started on http://{}:{}/metrics",
                self._config.host,
                self._config.port,
            )
        except OSError as e:
            logger.error("Failed to start Prometheus server: {}", e)
            self._config.enabled = False

    def incr(self, name: str, value: int = 1, labels: Labels = ()) -> None:
        if not self._config.enabled:
            return
        metric = self._metrics.get(name)
        if metric is None:
            metric = Counter(_PREFIX + name, f"Counter: {name}", labelnames=[k for k, _ in labels])
            self._metrics[name] = metric
        if labels:
            metric.labels(**dict(labels)).inc(value)
        else:
            metric.inc(value)

    def gauge(self, name: str, value: float, labels: Labels = ()) -> None:
        if not self._config.enabled:
            return
        metric = self._metrics.get(name)
        if metric is None:
            metric = Gauge(_PREFIX + name, f"Gauge: {name}", labelnames=[k for k, _ in labels])
            self._metrics[name] = metric
        if labels:
            metric.labels(**dict(labels)).set(value)
        else:
            metric.set(value)

    def histogram(self, name: str, value: float, labels: Labels = ()) -> None:
        if not self._config.enabled:
            return
        metric = self._metrics.get(name)
        if metric is None:
            metric = Histogram(_PREFIX + name, f"Histogram: {name}", labelnames=[k for k, _ in labels])
            self._metrics[name] = metric
        if labels:
            metric.labels(**dict(labels)).observe(value)
        else:
            metric.observe(value)

    def timing(self, name: str, value: float, labels: Labels = ()) -> None:
        """Record timing in seconds (alias for histogram)."""
        self.histogram(name, value, labels)
