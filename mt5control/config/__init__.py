"""
Configuration package.

Environment loading and startup validation.
"""

from mt5control.config.config import Settings
from mt5control.config.config_validator import ConfigValidator, validate_and_log

__all__ = [
    "Settings",
    "ConfigValidator",
    "validate_and_log",
]
