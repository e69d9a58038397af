"""
Utility helpers.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Optional, TypeVar

from mt5control.core.errors import RemoteTimeoutError

T = TypeVar("T")


def now_ms() -> int:
    return int(time.time() * 1000)


def to_float_safe(value: Any, default: Optional[float] = None) -> Optional[float]:
    """Convert to float, returning default on None/garbage."""
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


async def bounded(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    """
    Await with a hard deadline.

    On expiry the inner task is cancelled (asyncio.wait_for semantics) so a late
    result can never be observed, and RemoteTimeoutError is raised instead.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise RemoteTimeoutError(operation, timeout) from exc
