"""Observability infrastructure for fscrape.

Provides structured logging and metrics collection.
"""

from .logger import LogContext, get_logger, log_context, setup_logging
from .metrics import MetricsCollector, SessionMetrics

__all__ = [
    "LogContext",
    "get_logger",
    "log_context",
    "setup_logging",
    "MetricsCollector",
    "SessionMetrics",
]
