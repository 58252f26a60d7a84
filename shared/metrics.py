"""
Prometheus metrics for the Document Gateway.

Each ``MetricsCollector`` owns a ``CollectorRegistry`` so that several service
instances (one per test, for example) never collide on metric names.
"""

import time
from contextlib import contextmanager
from typing import Any, Dict, Optional, Sequence

from prometheus_client import CollectorRegistry, Counter, Histogram, Info, generate_latest


class MetricsCollector:
    """Registry-scoped metrics for one service."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}

        info = Info("service", "Service information", registry=self.registry)
        info.info({"service": service_name, "version": "1.0.0"})

        self._counter("http_requests_total", "HTTP requests served", ["method", "endpoint", "status_code"])
        self._histogram("http_request_duration_seconds", "HTTP request latency", ["method", "endpoint"])
        self._counter("health_check_total", "Health check outcomes", ["status"])
        self._counter("errors_total", "Errors returned to clients", ["error_type", "service"])

        if service_name == "documents":
            self._setup_documents_metrics()

    def _counter(self, name: str, description: str, labels: Sequence[str] = ()) -> None:
        self._metrics[name] = Counter(name, description, list(labels), registry=self.registry)

    def _histogram(self, name: str, description: str, labels: Sequence[str] = ()) -> None:
        self._metrics[name] = Histogram(name, description, list(labels), registry=self.registry)

    def _setup_documents_metrics(self):
        self._counter("cache_requests_total", "List cache lookups by outcome", ["result"])
        self._counter("cache_invalidations_total", "Cache entries evicted by collection writes")
        self._counter("order_transitions_total", "Order status transitions applied", ["status"])
        self._counter("stock_adjustments_total", "Order stock decrements and restores", ["direction"])
        self._histogram("datastore_query_duration_seconds", "Datastore time spent on list requests", ["operation"])

    def render(self) -> bytes:
        """Render the registry in Prometheus text format."""
        return generate_latest(self.registry)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        self._metrics["http_requests_total"].labels(
            method=method, endpoint=endpoint, status_code=str(status_code)
        ).inc()
        self._metrics["http_request_duration_seconds"].labels(method=method, endpoint=endpoint).observe(duration)

    def record_health_check(self, status: str):
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str):
        self._metrics["errors_total"].labels(error_type=error_type, service=self.service_name).inc()

    @contextmanager
    def time_operation(self, metric_name: str, **labels):
        """Observe the wall time of the enclosed block on histogram ``metric_name``."""
        started = time.perf_counter()
        try:
            yield
        finally:
            metric = self._metrics.get(metric_name)
            if metric is not None:
                metric.labels(**labels).observe(time.perf_counter() - started)

    def increment_counter(self, metric_name: str, amount: float = 1, **labels):
        """Increment ``metric_name``; unknown names are ignored."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        if labels:
            metric = metric.labels(**labels)
        metric.inc(amount)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    return MetricsCollector(service_name, registry)
