"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from image_queue.observability.logging import log_context, setup_logging
from image_queue.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from image_queue.observability.tracing import get_tracer, setup_tracing

__all__ = [
    "setup_logging",
    "log_context",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
]
