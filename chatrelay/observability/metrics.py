"""
chatrelay - Prometheus Metrics

Metrics collection with the Prometheus client library.

Metrics exposed:
- chatrelay_requests_total: Counter of logical requests by provider, model, outcome
- chatrelay_request_duration_seconds: Histogram of request latency
- chatrelay_time_to_first_event_seconds: Histogram of latency until the first forwarded event
- chatrelay_attempts_total: Counter of upstream attempts by provider and outcome
- chatrelay_failovers_total: Counter of account switches by provider and reason
- chatrelay_events_total: Counter of emitted response events by kind
- chatrelay_protocol_errors_total: Counter of undecodable upstream deltas
- chatrelay_tokens_total: Counter of tokens reported by upstreams (prompt/completion)
- chatrelay_active_requests: Gauge of in-flight requests

Usage:
    from chatrelay.observability.metrics import get_metrics, render_metrics

    metrics = get_metrics()
    metrics.record_attempt(provider="openai", outcome="success")

    payload, content_type = render_metrics()
"""

from typing import Optional, Tuple

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    CollectorRegistry,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY,
)


class MetricsCollector:
    """
    Central metrics collector using Prometheus client.

    One collector per registry; tests pass a fresh CollectorRegistry.
    """

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        self.registry = registry

        self.requests_total = Counter(
            "chatrelay_requests_total",
            "Total number of logical requests",
            labelnames=["provider", "model", "outcome"],
            registry=registry,
        )

        # Streaming chat calls typically range from 0.5s to several minutes
        self.request_duration = Histogram(
            "chatrelay_request_duration_seconds",
            "Request duration in seconds",
            labelnames=["provider", "model"],
            buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 25.0, 50.0, 100.0, 300.0, float("inf")),
            registry=registry,
        )

        self.time_to_first_event = Histogram(
            "chatrelay_time_to_first_event_seconds",
            "Time until the first event is forwarded to the caller",
            labelnames=["provider", "model"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, float("inf")),
            registry=registry,
        )

        self.attempts_total = Counter(
            "chatrelay_attempts_total",
            "Total upstream attempts",
            labelnames=["provider", "outcome"],
            registry=registry,
        )

        self.failovers_total = Counter(
            "chatrelay_failovers_total",
            "Total account switches after a failed attempt",
            labelnames=["provider", "reason"],
            registry=registry,
        )

        self.events_total = Counter(
            "chatrelay_events_total",
            "Total response events forwarded to callers",
            labelnames=["provider", "kind"],
            registry=registry,
        )

        self.protocol_errors_total = Counter(
            "chatrelay_protocol_errors_total",
            "Upstream deltas that could not be decoded",
            labelnames=["provider"],
            registry=registry,
        )

        self.tokens_total = Counter(
            "chatrelay_tokens_total",
            "Total tokens reported by upstreams",
            labelnames=["provider", "model", "type"],  # type = prompt/completion
            registry=registry,
        )

        self.active_requests = Gauge(
            "chatrelay_active_requests",
            "Number of currently active requests",
            labelnames=["provider"],
            registry=registry,
        )

    def record_request(
        self,
        provider: str,
        model: str,
        outcome: str,
        duration_seconds: float,
    ):
        """Record a completed logical request."""
        self.requests_total.labels(provider=provider, model=model, outcome=outcome).inc()
        self.request_duration.labels(provider=provider, model=model).observe(duration_seconds)

    def record_attempt(self, provider: str, outcome: str):
        self.attempts_total.labels(provider=provider, outcome=outcome).inc()

    def record_failover(self, provider: str, reason: str):
        self.failovers_total.labels(provider=provider, reason=reason).inc()

    def record_event(self, provider: str, kind: str):
        self.events_total.labels(provider=provider, kind=kind).inc()

    def record_protocol_error(self, provider: str):
        self.protocol_errors_total.labels(provider=provider).inc()

    def record_tokens(
        self,
        provider: str,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
    ):
        """Record token usage."""
        self.tokens_total.labels(provider=provider, model=model, type="prompt").inc(prompt_tokens)
        self.tokens_total.labels(provider=provider, model=model, type="completion").inc(completion_tokens)

    def record_time_to_first_event(self, provider: str, model: str, seconds: float):
        self.time_to_first_event.labels(provider=provider, model=model).observe(seconds)

    def track_active_request(self, provider: str) -> "ActiveRequestTracker":
        """Context manager to track active requests."""
        return ActiveRequestTracker(self, provider)


class ActiveRequestTracker:
    """Context manager for tracking active requests."""

    def __init__(self, collector: MetricsCollector, provider: str):
        self.collector = collector
        self.provider = provider

    def __enter__(self):
        self.collector.active_requests.labels(provider=self.provider).inc()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.collector.active_requests.labels(provider=self.provider).dec()


# Module-level functions for convenience
_metrics_instance: Optional[MetricsCollector] = None


def setup_metrics(registry: CollectorRegistry = REGISTRY) -> MetricsCollector:
    """
    Setup metrics collection.

    Safe to call multiple times with the same registry - returns the existing instance.
    """
    global _metrics_instance

    if _metrics_instance is not None and _metrics_instance.registry is registry:
        return _metrics_instance

    _metrics_instance = MetricsCollector(registry)
    return _metrics_instance


def get_metrics() -> MetricsCollector:
    """Get the metrics collector instance, initializing on the default registry."""
    global _metrics_instance
    if _metrics_instance is None:
        _metrics_instance = MetricsCollector(REGISTRY)
    return _metrics_instance


def render_metrics(registry: Optional[CollectorRegistry] = None) -> Tuple[bytes, str]:
    """
    Render the Prometheus exposition payload.

    Returns (payload, content_type) for whatever HTTP layer embeds the relay.
    """
    if registry is None:
        registry = _metrics_instance.registry if _metrics_instance is not None else REGISTRY
    return generate_latest(registry), CONTENT_TYPE_LATEST
