"""
Shared metrics configuration for Streampulse services.
"""

from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry, generate_latest
from typing import Dict, Any, Optional


class MetricsCollector:
    """Centralized metrics collector for services."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        # Private registry so several collectors can coexist in one process
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        if self.service_name == "realtime":
            self._setup_realtime_metrics()

    def _setup_realtime_metrics(self):
        """Set up realtime-specific metrics."""
        self._metrics["active_connections"] = Gauge(
            "active_connections",
            "Number of active connections",
            registry=self.registry
        )

        self._metrics["messages_sent_total"] = Counter(
            "messages_sent_total",
            "Total messages delivered to connections",
            ["event"],
            registry=self.registry
        )

        self._metrics["delivery_failures_total"] = Counter(
            "delivery_failures_total",
            "Total failed deliveries to connections",
            ["event"],
            registry=self.registry
        )

        self._metrics["snapshot_lookups_total"] = Counter(
            "snapshot_lookups_total",
            "Snapshot cache lookups",
            ["result"],
            registry=self.registry
        )

        self._metrics["auth_attempts_total"] = Counter(
            "auth_attempts_total",
            "Connection authentication attempts",
            ["status"],
            registry=self.registry
        )

        self._metrics["swept_connections_total"] = Counter(
            "swept_connections_total",
            "Idle anonymous connections closed by the supervisor",
            registry=self.registry
        )

        self._metrics["reconnect_warnings_total"] = Counter(
            "reconnect_warnings_total",
            "Reconnect warnings raised to clients",
            registry=self.registry
        )

        self._metrics["connection_duration_seconds"] = Histogram(
            "connection_duration_seconds",
            "Connection duration in seconds",
            registry=self.registry
        )

    def render(self) -> bytes:
        """Render the registry in Prometheus text format."""
        return generate_latest(self.registry)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            metric = self._metrics[metric_name]
            (metric.labels(**labels) if labels else metric).inc()

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        if metric_name in self._metrics:
            metric = self._metrics[metric_name]
            (metric.labels(**labels) if labels else metric).set(value)

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        if metric_name in self._metrics:
            metric = self._metrics[metric_name]
            (metric.labels(**labels) if labels else metric).observe(value)

    def get_sample_value(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Read back a sample value from the registry."""
        return self.registry.get_sample_value(name, labels or {})


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
