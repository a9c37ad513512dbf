"""
Shared metrics configuration for the rule resolution service.
"""

from typing import Dict, Any, Optional
import time
import threading
from contextlib import contextmanager

from prometheus_client import Counter, Histogram, Info, CollectorRegistry, start_http_server


class MetricsCollector:
    """Centralized metrics collector for the rule service."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        # A private registry keeps several collectors (tests, CLI) from colliding
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up the rule service metrics."""

        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        self._metrics["rule_resolutions_total"] = Counter(
            "rule_resolutions_total",
            "Total rule resolutions",
            ["family", "outcome"],
            registry=self.registry
        )

        self._metrics["rule_decisions_total"] = Counter(
            "rule_decisions_total",
            "Total decisions rendered",
            ["family", "decision"],
            registry=self.registry
        )

        self._metrics["rule_decision_duration_seconds"] = Histogram(
            "rule_decision_duration_seconds",
            "Decision duration in seconds",
            ["family"],
            registry=self.registry
        )

        self._metrics["rule_cache_events_total"] = Counter(
            "rule_cache_events_total",
            "Rule cache hits, misses and invalidations",
            ["event"],
            registry=self.registry
        )

        self._metrics["rule_store_failures_total"] = Counter(
            "rule_store_failures_total",
            "Rule store failures",
            ["operation"],
            registry=self.registry
        )

        self._metrics["rule_parse_failures_total"] = Counter(
            "rule_parse_failures_total",
            "Stored rule documents skipped because they failed to parse",
            registry=self.registry
        )

        self._metrics["audit_write_failures_total"] = Counter(
            "audit_write_failures_total",
            "Decision audit writes that failed",
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def get_value(self, name: str, **labels) -> float:
        """Read the current sample value of a counter (0.0 if never touched)."""
        sample_name = name if name.endswith("_total") else f"{name}_total"
        value = self.registry.get_sample_value(sample_name, labels or None)
        return value or 0.0

    def start_metrics_server(self, port: int = 9090):
        """Start the Prometheus metrics server."""
        start_http_server(port, registry=self.registry)

    @contextmanager
    def time_operation(self, operation_name: str, **labels):
        """Context manager to time an operation."""
        start_time = time.time()
        try:
            yield
        finally:
            duration = time.time() - start_time
            self.observe_histogram(operation_name, duration, **labels)

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        with self._lock:
            if labels:
                metric.labels(**labels).inc()
            else:
                metric.inc()

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        if labels:
            metric.labels(**labels).observe(value)
        else:
            metric.observe(value)


def get_metrics_collector(service_name: str = "rules", registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
