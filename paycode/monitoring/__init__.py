"""Logging, metrics and health checks."""
from .metrics import MetricsCollector, metrics

__all__ = ["MetricsCollector", "metrics"]
