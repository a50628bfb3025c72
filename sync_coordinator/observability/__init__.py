"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from sync_coordinator.observability.logging import log_context, setup_logging
from sync_coordinator.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from sync_coordinator.observability.tracing import get_tracer, setup_tracing

__all__ = [
    "setup_logging",
    "log_context",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
]
