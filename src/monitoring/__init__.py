"""
Monitoring infrastructure for WedList.

This package provides:
- Lifecycle metrics (counters, gauges, latency histograms)
- Structured logging with redaction of confidential material

Usage:
    from monitoring import metrics, get_logger

    metrics.increment("oracle_encrypt_total")
    logger = get_logger(__name__)
"""

from monitoring.logging import LoggingContext, configure_logging, get_logger
from monitoring.metrics import MetricsCollector, metrics

__all__ = [
    "MetricsCollector",
    "metrics",
    "get_logger",
    "configure_logging",
    "LoggingContext",
]
