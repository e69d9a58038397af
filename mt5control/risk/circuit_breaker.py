"""
Per-account circuit breakers for scheduled broker work.

A breaker trips after `error_threshold` consecutive broker errors for one
remote account and stays open for a cooldown that doubles on each repeated
trip (capped). While open, scheduled passes skip the account. User-initiated
control-plane calls never consult the breakers.

Single event loop only; no internal locks.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from mt5control.monitoring.metrics import ControlMetrics

log = logging.getLogger("mt5control")


@dataclass
class CircuitBreakerConfig:
    error_threshold: int = 5
    cooldown_sec: float = 60.0
    backoff_multiplier: float = 2.0
    max_backoff: float = 32.0


class CircuitBreaker:
    """Error-streak breaker for a single account."""

    def __init__(
        self,
        account_id: str,
        config: CircuitBreakerConfig,
        clock: Callable[[], float] = time.time,
        on_change: Optional[Callable[[str, bool], None]] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.account_id = account_id
        self.config = config
        self.error_streak = 0
        self._clock = clock
        self._open = False
        self._open_until = 0.0
        self._trip_count = 0
        self._on_change = on_change
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.warning(json.dumps({"event": event, "account_id": self.account_id, **kwargs}, default=str))

    @property
    def is_open(self) -> bool:
        """True while cooling down. Closes itself once the cooldown passes."""
        if self._open and self._clock() >= self._open_until:
            self._close()
        return self._open

    @property
    def cooldown_remaining(self) -> float:
        if not self._open:
            return 0.0
        return max(0.0, self._open_until - self._clock())

    @property
    def trip_count(self) -> int:
        return self._trip_count

    def record_error(self, where: str, error: BaseException) -> bool:
        """Count a broker error. Returns True if this error opened the breaker."""
        self.error_streak += 1
        if self.error_streak < self.config.error_threshold or self._open:
            return False
        self._open = True
        self._trip_count += 1
        factor = min(self.config.backoff_multiplier ** (self._trip_count - 1), self.config.max_backoff)
        cooldown = self.config.cooldown_sec * factor
        self._open_until = self._clock() + cooldown
        self._log_event(
            "circuit_open",
            where=where,
            err=str(error),
            streak=self.error_streak,
            trip_count=self._trip_count,
            cooldown_sec=cooldown,
        )
        if self._on_change:
            self._on_change(self.account_id, True)
        return True

    def record_success(self) -> None:
        self.error_streak = 0

    def _close(self) -> None:
        self._open = False
        self.error_streak = 0
        self._log_event("circuit_closed", trip_count=self._trip_count)
        if self._on_change:
            self._on_change(self.account_id, False)

    def force_close(self) -> None:
        self._open_until = 0.0
        if self._open:
            self._close()

    def get_state(self) -> Dict[str, Any]:
        return {
            "open": self._open,
            "error_streak": self.error_streak,
            "trip_count": self._trip_count,
            "cooldown_remaining": self.cooldown_remaining,
        }


class AccountBreakers:
    """Lazily created breaker per account id."""

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        metrics: Optional["ControlMetrics"] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self.metrics = metrics
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, account_id: str) -> CircuitBreaker:
        breaker = self._breakers.get(account_id)
        if breaker is None:
            breaker = CircuitBreaker(account_id, self.config, clock=self._clock, on_change=self._on_change)
            self._breakers[account_id] = breaker
        return breaker

    def is_open(self, account_id: str) -> bool:
        breaker = self._breakers.get(account_id)
        return breaker is not None and breaker.is_open

    def open_accounts(self) -> Dict[str, float]:
        """Open breakers with their remaining cooldown."""
        return {k: b.cooldown_remaining for k, b in sorted(self._breakers.items()) if b.is_open}

    def _on_change(self, account_id: str, is_open: bool) -> None:
        if self.metrics:
            self.metrics.circuit_open.labels(account=account_id).set(1 if is_open else 0)
