"""
Error taxonomy for the control plane.

Every error raised by mt5control derives from ControlPlaneError so callers
can tell control-plane failures apart from programming errors.

    ControlPlaneError
    ├── AccountNotLinkedError        (user has no active link)
    ├── LinkResolutionError          (fatal for link-dependent operations)
    ├── DeploymentPendingError       (recoverable: caller polls again)
    ├── RemoteTimeoutError           (bounded remote call missed its deadline)
    ├── ReconciliationIncompleteError (open leg missing from history window)
    ├── PartialCloseError            (some positions failed to close)
    ├── InvalidRobotIdError          (robot id does not fit the order comment)
    └── BrokerError                  (remote API failure)
        └── BrokerNotFoundError      (remote object does not exist)
"""

from __future__ import annotations

from typing import Dict, List, Optional


class ControlPlaneError(Exception):
    """Base class for all control-plane errors."""


class LinkResolutionError(ControlPlaneError):
    """Remote account match is missing, ambiguous or conflicts with the stored id."""

    def __init__(self, login: str, server: str, reason: str, candidates: Optional[List[str]] = None) -> None:
        self.login = login
        self.server = server
        self.reason = reason
        self.candidates = list(candidates or [])
        detail = f"{reason} for login={login} server={server}"
        if self.candidates:
            detail += f" (candidates: {', '.join(self.candidates)})"
        super().__init__(detail)


class DeploymentPendingError(ControlPlaneError):
    """Remote account is not DEPLOYED yet; poll again later."""

    def __init__(self, remote_id: str, state: str) -> None:
        self.remote_id = remote_id
        self.state = state
        super().__init__(f"account {remote_id} is {state}, not DEPLOYED")


class RemoteTimeoutError(ControlPlaneError):
    """A bounded remote call exceeded its deadline and was abandoned."""

    def __init__(self, operation: str, timeout: float) -> None:
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} timed out after {timeout:.2f}s")


class ReconciliationIncompleteError(ControlPlaneError):
    """Deal history for a position has no opening leg."""

    def __init__(self, position_id: str) -> None:
        self.position_id = position_id
        super().__init__(f"position {position_id} has no opening deal in the history window")


class PartialCloseError(ControlPlaneError):
    """Some positions failed to close; `failures` maps position id to error text."""

    def __init__(self, failures: Dict[str, str]) -> None:
        self.failures = dict(failures)
        super().__init__(f"{len(self.failures)} position(s) failed to close")

    def itemize(self) -> List[str]:
        return [f"{pid}: {err}" for pid, err in sorted(self.failures.items())]


class BrokerError(ControlPlaneError):
    """Remote broker API failure."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class BrokerNotFoundError(BrokerError):
    """Remote object (account, position) does not exist."""


class AccountNotLinkedError(ControlPlaneError):
    """The user has no active broker account link."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"no broker account linked for user {user_id}")


class InvalidRobotIdError(ControlPlaneError):
    """Robot id too long to be carried in an order comment."""

    def __init__(self, robot_id: str, comment: str, limit: int) -> None:
        self.robot_id = robot_id
        self.comment = comment
        self.limit = limit
        super().__init__(f"robot id {robot_id!r}: order comment {comment!r} exceeds {limit} characters")
