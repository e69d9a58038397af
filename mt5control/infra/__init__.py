"""
Infrastructure package.

Logging configuration shared by every component.
"""

from mt5control.infra.logging_cfg import LOGGER_NAME, build_logger, log_event

__all__ = [
    "LOGGER_NAME",
    "build_logger",
    "log_event",
]
