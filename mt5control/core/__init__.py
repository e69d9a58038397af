"""
Core utilities package.

Error taxonomy and small helpers shared by every component.
"""

from mt5control.core.errors import (
    AccountNotLinkedError,
    BrokerError,
    BrokerNotFoundError,
    ControlPlaneError,
    DeploymentPendingError,
    InvalidRobotIdError,
    LinkResolutionError,
    PartialCloseError,
    ReconciliationIncompleteError,
    RemoteTimeoutError,
)
from mt5control.core.utils import bounded, now_ms, to_float_safe

__all__ = [
    "AccountNotLinkedError",
    "BrokerError",
    "BrokerNotFoundError",
    "ControlPlaneError",
    "DeploymentPendingError",
    "InvalidRobotIdError",
    "LinkResolutionError",
    "PartialCloseError",
    "ReconciliationIncompleteError",
    "RemoteTimeoutError",
    "bounded",
    "now_ms",
    "to_float_safe",
]
