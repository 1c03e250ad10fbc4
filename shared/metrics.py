"""
Shared metrics configuration for the Shopping Mesh services.
"""

from typing import Dict, Any, Optional

from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry


class MetricsCollector:
    """Centralized metrics collector for services.

    Each collector owns its registry so several services (or several test
    instances of one service) can live in one interpreter.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
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

        self._metrics["business_events_total"] = Counter(
            "business_events_total",
            "Total business events",
            ["event_type", "service"],
            registry=self.registry
        )

        self._metrics["messages_published_total"] = Counter(
            "messages_published_total",
            "Events handed to the broker by exchange, routing key and outcome",
            ["exchange", "routing_key", "outcome"],
            registry=self.registry
        )

        self._metrics["messages_consumed_total"] = Counter(
            "messages_consumed_total",
            "Deliveries settled by queue and settlement",
            ["queue", "settlement"],
            registry=self.registry
        )

        if self.service_name == "gateway":
            self._setup_gateway_metrics()
        elif self.service_name == "list-service":
            self._setup_list_metrics()

    def _setup_gateway_metrics(self):
        """Set up gateway-specific metrics."""
        self._metrics["proxy_requests_total"] = Counter(
            "proxy_requests_total",
            "Proxied requests by downstream service and outcome",
            ["service", "outcome"],
            registry=self.registry
        )

        self._metrics["circuit_breaker_open"] = Gauge(
            "circuit_breaker_open",
            "1 when the breaker for a downstream service is open",
            ["service"],
            registry=self.registry
        )

        self._metrics["aggregation_branches_total"] = Counter(
            "aggregation_branches_total",
            "Aggregated sub-requests by branch and availability",
            ["endpoint", "branch", "available"],
            registry=self.registry
        )

    def _setup_list_metrics(self):
        """Set up list-service-specific metrics."""
        self._metrics["reconciled_lists_total"] = Counter(
            "reconciled_lists_total",
            "Lists repaired after a catalog change event",
            ["outcome"],
            registry=self.registry
        )

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
        self._metrics["errors_total"].labels(
            error_type=error_type,
            service=service or self.service_name
        ).inc()

    def record_business_event(self, event_type: str, service: Optional[str] = None):
        """Record business event metrics."""
        self._metrics["business_events_total"].labels(
            event_type=event_type,
            service=service or self.service_name
        ).inc()

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).inc()

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).set(value)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
