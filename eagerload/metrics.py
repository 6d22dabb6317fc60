"""
Observability sink for the eagerload engine, backed by prometheus_client.
"""

from typing import Any, Dict, Protocol

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram, start_http_server


class ObservabilitySink(Protocol):
    """Receiver of engine events."""

    def record_batch_flushed(self, entity_type: str, size: int) -> None: ...

    def record_cache_hit(self, entity_type: str) -> None: ...

    def record_cache_miss(self, entity_type: str) -> None: ...

    def record_fetch_latency(self, entity_type: str, duration: float, outcome: str) -> None: ...

    def record_retry(self, entity_type: str, attempt: int) -> None: ...

    def record_error(self, entity_type: str, error_type: str) -> None: ...


class NullSink:
    """Sink that drops every event."""

    def record_batch_flushed(self, entity_type: str, size: int) -> None:
        pass

    def record_cache_hit(self, entity_type: str) -> None:
        pass

    def record_cache_miss(self, entity_type: str) -> None:
        pass

    def record_fetch_latency(self, entity_type: str, duration: float, outcome: str) -> None:
        pass

    def record_retry(self, entity_type: str, attempt: int) -> None:
        pass

    def record_error(self, entity_type: str, error_type: str) -> None:
        pass


BATCH_SIZE_BUCKETS = (1, 2, 5, 10, 25, 50, 100, 250, 500, 1000)


class MetricsCollector:
    """Prometheus metrics collector for engine events.

    Metrics register on the default registry unless a dedicated
    ``CollectorRegistry`` is passed; pass one whenever more than one collector
    with the same namespace lives in the process (tests in particular).
    """

    def __init__(self, namespace: str = "eagerload", registry: CollectorRegistry = REGISTRY):
        self.namespace = namespace
        self.registry = registry
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up engine metrics."""
        self._metrics["batches_flushed_total"] = Counter(
            "batches_flushed_total",
            "Total batches handed to a fetcher",
            ["entity_type"],
            namespace=self.namespace,
            registry=self.registry
        )

        self._metrics["batch_size"] = Histogram(
            "batch_size",
            "Number of unique keys per flushed batch",
            ["entity_type"],
            buckets=BATCH_SIZE_BUCKETS,
            namespace=self.namespace,
            registry=self.registry
        )

        self._metrics["cache_hits_total"] = Counter(
            "cache_hits_total",
            "Total result cache hits",
            ["entity_type"],
            namespace=self.namespace,
            registry=self.registry
        )

        self._metrics["cache_misses_total"] = Counter(
            "cache_misses_total",
            "Total result cache misses",
            ["entity_type"],
            namespace=self.namespace,
            registry=self.registry
        )

        self._metrics["fetch_duration_seconds"] = Histogram(
            "fetch_duration_seconds",
            "Fetcher call duration in seconds",
            ["entity_type", "outcome"],
            namespace=self.namespace,
            registry=self.registry
        )

        self._metrics["fetch_retries_total"] = Counter(
            "fetch_retries_total",
            "Total fetcher retries",
            ["entity_type"],
            namespace=self.namespace,
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total load errors",
            ["entity_type", "error_type"],
            namespace=self.namespace,
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def start_metrics_server(self, port: int = 9090):
        """Start the Prometheus metrics server."""
        start_http_server(port, registry=self.registry)

    def record_batch_flushed(self, entity_type: str, size: int) -> None:
        """Record a batch handed to a fetcher."""
        self._metrics["batches_flushed_total"].labels(entity_type=entity_type).inc()
        self._metrics["batch_size"].labels(entity_type=entity_type).observe(size)

    def record_cache_hit(self, entity_type: str) -> None:
        self._metrics["cache_hits_total"].labels(entity_type=entity_type).inc()

    def record_cache_miss(self, entity_type: str) -> None:
        self._metrics["cache_misses_total"].labels(entity_type=entity_type).inc()

    def record_fetch_latency(self, entity_type: str, duration: float, outcome: str) -> None:
        """Record fetcher call latency labelled by outcome (ok/error/cancelled)."""
        self._metrics["fetch_duration_seconds"].labels(
            entity_type=entity_type,
            outcome=outcome
        ).observe(duration)

    def record_retry(self, entity_type: str, attempt: int) -> None:
        self._metrics["fetch_retries_total"].labels(entity_type=entity_type).inc()

    def record_error(self, entity_type: str, error_type: str) -> None:
        self._metrics["errors_total"].labels(entity_type=entity_type, error_type=error_type).inc()

    def sample(self, name: str, **labels) -> float:
        """Read the current value of a counter for the given labels."""
        value = self.registry.get_sample_value(f"{self.namespace}_{name}", labels)
        return value or 0.0
