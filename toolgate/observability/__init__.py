"""
Observability module - Logging, Metrics, and Tracing.
"""

from toolgate.observability.logging import get_logger, log_context, setup_logging
from toolgate.observability.metrics import metrics
from toolgate.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
