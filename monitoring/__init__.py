"""
Metrics for the admission and detection layer.
"""

from .metrics import MetricsCollector, metrics_collector

__all__ = ["MetricsCollector", "metrics_collector"]
