"""
Monitoring package.

Prometheus metrics, health checks and the metrics HTTP server.
"""

from mt5control.monitoring.metrics import ControlMetrics, HealthChecker, start_metrics_server

__all__ = [
    "ControlMetrics",
    "HealthChecker",
    "start_metrics_server",
]
