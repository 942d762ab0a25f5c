"""
Shared metrics configuration for the Entitlement Sync service.
"""

from typing import Dict, Any, Optional

from prometheus_client import Counter, Histogram, Info, CollectorRegistry, generate_latest


class MetricsCollector:
    """Centralized metrics collector for the service.

    Each collector owns its registry so that several service instances
    (one per test, for example) never collide on metric names.
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

        self._setup_sync_metrics()

    def _setup_sync_metrics(self):
        """Set up entitlement-sync metrics."""
        self._metrics["sync_operations_total"] = Counter(
            "sync_operations_total",
            "Total sync trigger executions",
            ["trigger", "status"],
            registry=self.registry
        )

        self._metrics["sync_duration_seconds"] = Histogram(
            "sync_duration_seconds",
            "Sync trigger duration in seconds",
            ["trigger"],
            registry=self.registry
        )

        self._metrics["assignment_rows_changed_total"] = Counter(
            "assignment_rows_changed_total",
            "Assignment rows created, reactivated, deactivated or deleted",
            ["kind", "source", "change"],
            registry=self.registry
        )

        self._metrics["bulk_pairs_total"] = Counter(
            "bulk_pairs_total",
            "Bulk operation (user, item) pairs by outcome",
            ["operation", "outcome"],
            registry=self.registry
        )

    def export(self) -> bytes:
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

    def record_business_event(self, event_type: str, service: Optional[str] = None):
        """Record business event metrics."""
        service_name = service or self.service_name
        self._metrics["business_events_total"].labels(event_type=event_type, service=service_name).inc()

    def record_sync(self, trigger: str, status: str, duration: float):
        """Record one sync trigger execution."""
        self._metrics["sync_operations_total"].labels(trigger=trigger, status=status).inc()
        self._metrics["sync_duration_seconds"].labels(trigger=trigger).observe(duration)

    def record_row_changes(self, kind: str, source: str, change: str, count: int = 1):
        """Record assignment row mutations."""
        if count > 0:
            self._metrics["assignment_rows_changed_total"].labels(
                kind=kind, source=source, change=change
            ).inc(count)

    def record_bulk_pair(self, operation: str, outcome: str):
        """Record the outcome of a single bulk pair."""
        self._metrics["bulk_pairs_total"].labels(operation=operation, outcome=outcome).inc()


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
