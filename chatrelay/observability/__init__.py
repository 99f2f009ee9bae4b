"""
chatrelay - Observability Module

Observability stack:
- Prometheus metrics (Counter, Histogram, Gauge)
- Structured JSON logging with request context injection

Usage:
    from chatrelay.observability import get_metrics, get_logger

    logger = get_logger(__name__)
    metrics = get_metrics()
"""

from .metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
    render_metrics,
)
from .logging import (
    JSONFormatter,
    LogContext,
    StructuredLogger,
    TimedOperation,
    get_logger,
    request_log_context,
    setup_logging,
)

__all__ = [
    # Metrics
    "MetricsCollector",
    "get_metrics",
    "setup_metrics",
    "render_metrics",
    # Logging
    "JSONFormatter",
    "LogContext",
    "StructuredLogger",
    "TimedOperation",
    "get_logger",
    "request_log_context",
    "setup_logging",
]
