"""Logging, metrics and counters."""

from .observability import PipelineMetrics, configure_logging, get_logger
from .stats import StatsCounter

__all__ = ["PipelineMetrics", "StatsCounter", "configure_logging", "get_logger"]
