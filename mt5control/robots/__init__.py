"""
Robots package.

Robot lifecycle control, the signal evaluation seam and the background
scheduler.
"""

from mt5control.robots.lifecycle import (
    LifecycleConfig,
    RobotLifecycleManager,
    StartResult,
    StopAllResult,
    StopResult,
)
from mt5control.robots.scheduler import RobotScheduler, SchedulerConfig
from mt5control.robots.signals import (
    NoopSignalEvaluator,
    Signal,
    SignalBatch,
    SignalContext,
    SignalEvaluator,
)

__all__ = [
    "LifecycleConfig",
    "NoopSignalEvaluator",
    "RobotLifecycleManager",
    "RobotScheduler",
    "SchedulerConfig",
    "Signal",
    "SignalBatch",
    "SignalContext",
    "SignalEvaluator",
    "StartResult",
    "StopAllResult",
    "StopResult",
]
