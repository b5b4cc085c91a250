"""Logging and metrics for the cntx index."""

from .logging import LogContext, configure_from_settings, configure_logging, get_logger
from .metrics import MetricsCollector, MetricSummary, get_metrics_collector

__all__ = [
    "configure_logging",
    "configure_from_settings",
    "get_logger",
    "LogContext",
    "MetricsCollector",
    "MetricSummary",
    "get_metrics_collector",
]
