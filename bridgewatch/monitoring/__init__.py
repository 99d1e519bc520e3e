"""
Monitoring package.

Prometheus metrics for the reconciliation engine.
"""

from bridgewatch.monitoring.metrics_rich import ReconMetrics

__all__ = [
    "ReconMetrics",
]
