"""Metrics collection for the search service.

Provides a thin convenience wrapper around ``prometheus_client`` so the HTTP
layer, the fan-out coordinator and the cache can record consistent metrics.

Design notes
- Metrics and labels are predeclared to avoid cardinality explosions
- A single registry is kept per collector (can be injected for tests)
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest


class MetricsCollector:
    """Centralized metrics collection for the search service.

    Parameters
    - service_name: Logical name used for scoping
    - registry: Optional custom ``CollectorRegistry`` (e.g. for testing)

    Exposes typed helpers for common events to keep label sets consistent.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()

        self.request_count = Counter(
            'http_requests_total',
            'Total HTTP requests',
            ['method', 'endpoint', 'status'],
            registry=self.registry
        )

        self.request_duration = Histogram(
            'http_request_duration_seconds',
            'HTTP request duration',
            ['method', 'endpoint'],
            registry=self.registry
        )

        self.search_requests = Counter(
            'search_requests_total',
            'Total search requests',
            ['mode'],
            registry=self.registry
        )

        self.search_duration = Histogram(
            'search_duration_seconds',
            'End-to-end search duration',
            ['mode'],
            registry=self.registry
        )

        self.degraded_responses = Counter(
            'search_degraded_responses_total',
            'Search responses computed from fewer than all intended sources',
            ['mode'],
            registry=self.registry
        )

        self.source_calls = Counter(
            'search_source_calls_total',
            'Search source adapter calls partitioned by outcome',
            ['source', 'outcome'],
            registry=self.registry
        )

        self.source_duration = Histogram(
            'search_source_duration_seconds',
            'Search source adapter call duration',
            ['source'],
            buckets=(0.01, 0.025, 0.05, 0.1, 0.2, 0.4, 0.8, 1.6),
            registry=self.registry
        )

        self.suggestion_requests = Counter(
            'search_suggestion_requests_total',
            'Total typeahead suggestion requests',
            ['outcome'],
            registry=self.registry
        )

        self.cache_hits = Counter(
            'search_cache_hits_total',
            'Total cache hits',
            ['cache_type'],
            registry=self.registry
        )

        self.cache_misses = Counter(
            'search_cache_misses_total',
            'Total cache misses',
            ['cache_type'],
            registry=self.registry
        )

    def record_http_request(
        self,
        method: str,
        endpoint: str,
        status: int,
        duration: float
    ) -> None:
        """Record HTTP request metrics.

        duration is expected in seconds to match Prometheus histogram units.
        """
        self.request_count.labels(method=method, endpoint=endpoint, status=status).inc()
        self.request_duration.labels(method=method, endpoint=endpoint).observe(duration)

    def record_search(self, mode: str, duration: float, degraded: bool = False) -> None:
        """Record a completed search."""
        self.search_requests.labels(mode=mode).inc()
        self.search_duration.labels(mode=mode).observe(duration)
        if degraded:
            self.degraded_responses.labels(mode=mode).inc()

    def record_source_call(self, source: str, outcome: str, duration: float) -> None:
        """Record one adapter call; ``outcome`` is ``ok``, ``error`` or ``timeout``."""
        self.source_calls.labels(source=source, outcome=outcome).inc()
        self.source_duration.labels(source=source).observe(duration)

    def record_suggestion(self, outcome: str) -> None:
        self.suggestion_requests.labels(outcome=outcome).inc()

    def record_cache_hit(self, cache_type: str) -> None:
        """Record cache hit."""
        self.cache_hits.labels(cache_type=cache_type).inc()

    def record_cache_miss(self, cache_type: str) -> None:
        """Record cache miss."""
        self.cache_misses.labels(cache_type=cache_type).inc()

    def get_metrics(self) -> str:
        """Get metrics in Prometheus exposition format for scraping."""
        return generate_latest(self.registry).decode('utf-8')


_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector(service_name: str) -> MetricsCollector:
    """Get or create metrics collector for a service.

    Returns a process-wide singleton to avoid duplicate collectors/labels.
    """
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(service_name)
    return _metrics_collector
