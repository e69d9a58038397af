"""
RobotScheduler: background passes over every linked account.

Passes (each on its own interval):
    evaluation  one evaluate_once() per enabled robot, through the same
                guarded order path as start()
    balance     refresh cached balance/equity for every resolved link
    trade_sync  reconcile deal history into the ledger

Each account is isolated: its failures are logged and counted on its
circuit breaker, never raised, and an open breaker skips the account until
the cooldown passes.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from mt5control.core.errors import BrokerError

if TYPE_CHECKING:
    from mt5control.accounts.balance_sync import BalanceSynchronizer
    from mt5control.execution.trade_sync import TradeSynchronizer
    from mt5control.ledger.models import BrokerAccountLink, RobotConfig
    from mt5control.ledger.store import LedgerStore
    from mt5control.monitoring.metrics import ControlMetrics, HealthChecker
    from mt5control.risk.circuit_breaker import AccountBreakers
    from mt5control.robots.lifecycle import RobotLifecycleManager

log = logging.getLogger("mt5control")

PASS_EVALUATION = "evaluation"
PASS_BALANCE = "balance"
PASS_TRADE_SYNC = "trade_sync"


@dataclass
class PassResult:
    kind: str
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    trades_executed: int = 0


@dataclass
class SchedulerConfig:
    evaluation_interval: float = 30.0
    balance_sync_interval: float = 300.0
    reconcile_interval: float = 120.0
    # Granularity of the due-check loop
    tick_sec: float = 1.0
    log_event_callback: Optional[Callable[..., None]] = None


class RobotScheduler:
    def __init__(
        self,
        ledger: "LedgerStore",
        lifecycle: "RobotLifecycleManager",
        balances: "BalanceSynchronizer",
        trade_sync: "TradeSynchronizer",
        breakers: "AccountBreakers",
        metrics: Optional["ControlMetrics"] = None,
        health: Optional["HealthChecker"] = None,
        config: Optional[SchedulerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ledger = ledger
        self.lifecycle = lifecycle
        self.balances = balances
        self.trade_sync = trade_sync
        self.breakers = breakers
        self.metrics = metrics
        self.health = health
        self.config = config or SchedulerConfig()
        self._clock = clock
        self._last_run: Dict[str, float] = {}
        self._running = False
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = logging.WARNING if event in ("scheduled_account_error", "account_skipped_circuit_open") else logging.INFO
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self, stop_event: asyncio.Event) -> None:
        """Run due passes until stop_event is set."""
        self._running = True
        self._log_event("scheduler_started", **{
            "evaluation_interval": self.config.evaluation_interval,
            "balance_sync_interval": self.config.balance_sync_interval,
            "reconcile_interval": self.config.reconcile_interval,
        })
        try:
            while not stop_event.is_set():
                await self.run_due()
                if self.health:
                    self.health.heartbeat()
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.config.tick_sec)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            self._log_event("scheduler_stopped")

    async def run_due(self) -> List[PassResult]:
        """Run every pass whose interval has elapsed (all of them on the first call)."""
        results = []
        intervals = (
            (PASS_EVALUATION, self.config.evaluation_interval, self.run_evaluation_pass),
            (PASS_BALANCE, self.config.balance_sync_interval, self.run_balance_pass),
            (PASS_TRADE_SYNC, self.config.reconcile_interval, self.run_trade_sync_pass),
        )
        for kind, interval, runner in intervals:
            now = self._clock()
            last = self._last_run.get(kind)
            if last is not None and now - last < interval:
                continue
            self._last_run[kind] = now
            results.append(await runner())
        return results

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def run_evaluation_pass(self) -> PassResult:
        result = PassResult(kind=PASS_EVALUATION)
        by_user: "OrderedDict[str, List[RobotConfig]]" = OrderedDict()
        for cfg in await self.ledger.list_robot_configs(enabled_only=True):
            by_user.setdefault(cfg.user_id, []).append(cfg)

        for user_id, configs in by_user.items():
            link = await self.ledger.get_link(user_id)
            if link is None:
                result.skipped.append(user_id)
                continue
            if self._skip_open_circuit(link, PASS_EVALUATION):
                result.skipped.append(link.account_id)
                continue
            try:
                for cfg in configs:
                    outcome = await self.lifecycle.evaluate_once(user_id, cfg.robot_id)
                    result.trades_executed += outcome.trades_executed
            except Exception as exc:
                self._account_failed(result, link, exc)
                continue
            self._account_ok(result, link)
        self._finish(result)
        return result

    async def run_balance_pass(self) -> PassResult:
        result = PassResult(kind=PASS_BALANCE)
        for link in await self.ledger.list_links():
            if link.remote_account_id is None:
                result.skipped.append(link.account_id)
                continue
            if self._skip_open_circuit(link, PASS_BALANCE):
                result.skipped.append(link.account_id)
                continue
            try:
                snapshot = await self.balances.refresh(link)
            except Exception as exc:
                self._account_failed(result, link, exc)
                continue
            if snapshot.source != "live":
                self._account_failed(result, link, BrokerError("balance refresh served from cache"))
                continue
            self._account_ok(result, link)
        self._finish(result)
        return result

    async def run_trade_sync_pass(self) -> PassResult:
        result = PassResult(kind=PASS_TRADE_SYNC)
        for link in await self.ledger.list_links():
            if link.remote_account_id is None:
                result.skipped.append(link.account_id)
                continue
            if self._skip_open_circuit(link, PASS_TRADE_SYNC):
                result.skipped.append(link.account_id)
                continue
            try:
                await self.trade_sync.sync_account(link)
            except Exception as exc:
                self._account_failed(result, link, exc)
                continue
            self._account_ok(result, link)
        self._finish(result)
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _skip_open_circuit(self, link: "BrokerAccountLink", kind: str) -> bool:
        if not self.breakers.is_open(link.account_id):
            return False
        breaker = self.breakers.get(link.account_id)
        self._log_event(
            "account_skipped_circuit_open",
            account_id=link.account_id,
            pass_kind=kind,
            cooldown_remaining=round(breaker.cooldown_remaining, 1),
        )
        return True

    def _account_ok(self, result: PassResult, link: "BrokerAccountLink") -> None:
        self.breakers.get(link.account_id).record_success()
        result.succeeded.append(link.account_id)

    def _account_failed(self, result: PassResult, link: "BrokerAccountLink", exc: BaseException) -> None:
        result.failed[link.account_id] = str(exc)
        self._log_event(
            "scheduled_account_error",
            account_id=link.account_id,
            pass_kind=result.kind,
            err=str(exc),
            err_type=type(exc).__name__,
        )
        self.breakers.get(link.account_id).record_error(result.kind, exc)

    def _finish(self, result: PassResult) -> None:
        if self.metrics:
            self.metrics.scheduler_passes.labels(kind=result.kind).inc()
        if self.health:
            self.health.set_component_health(
                f"scheduler_{result.kind}",
                True,
                detail=f"{len(result.failed)} account(s) failing" if result.failed else None,
            )
        self._log_event(
            "scheduler_pass_done",
            pass_kind=result.kind,
            succeeded=len(result.succeeded),
            failed=len(result.failed),
            skipped=len(result.skipped),
            trades_executed=result.trades_executed,
        )
