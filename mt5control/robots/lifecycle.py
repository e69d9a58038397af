"""
RobotLifecycleManager: start, stop and stop-all for per-user robots.

Architecture:
    The enabled flag on RobotConfig is the single switch. Every order goes
    through _place_guarded(), which re-reads the flag and the open-trade
    count immediately before placing. Stop paths flip the flag FIRST and only
    then touch the broker, so an evaluation pass that starts after a stop can
    never place an order.

    A per-(user, robot) asyncio.Lock is held across guard + place + ledger
    insert. Stop paths acquire it after disabling, which waits out any order
    that passed its guard just before the flag flipped; the subsequent close
    therefore sees that position.

Ordering:
    start:    validate id -> enable -> resolve link -> evaluate -> guarded orders
    stop:     disable -> barrier -> close tagged positions -> mark CLOSED
              (trades the broker still lists stay OPEN)
    stop_all: disable all (one write) -> barrier -> one bulk close ->
              mark every OPEN trade CLOSED

Idempotency:
    Re-issuing any operation converges to the same end state. Every stop of
    a known robot re-issues the tagged close; the broker treats a close with
    nothing left as a no-op.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, TYPE_CHECKING

from mt5control.broker.types import OrderRequest, robot_comment
from mt5control.core.errors import (
    BrokerError,
    DeploymentPendingError,
    PartialCloseError,
    RemoteTimeoutError,
)
from mt5control.core.utils import bounded
from mt5control.ledger.models import Trade, TradeStatus, robot_key
from mt5control.robots.signals import Signal, SignalContext

if TYPE_CHECKING:
    from mt5control.accounts.linker import AccountLinker, RemoteIdentity
    from mt5control.broker.types import BrokerGateway, CloseAllResult
    from mt5control.ledger.models import BrokerAccountLink, RobotConfig, StrategySettings
    from mt5control.ledger.store import LedgerStore
    from mt5control.monitoring.metrics import ControlMetrics
    from mt5control.robots.signals import SignalEvaluator

log = logging.getLogger("mt5control")


@dataclass
class StartResult:
    """Outcome of start() or of one scheduled evaluation pass."""
    trades_executed: int = 0
    signals: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trades_executed": self.trades_executed,
            "signals": list(self.signals),
            "errors": list(self.errors),
        }


@dataclass
class StopResult:
    trades_closed: int = 0
    positions_closed: int = 0
    close_errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trades_closed": self.trades_closed,
            "positions_closed": self.positions_closed,
            "close_errors": list(self.close_errors),
        }


@dataclass
class StopAllResult:
    robots_disabled: int = 0
    trades_closed: int = 0
    positions_closed: int = 0
    close_errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "robots_disabled": self.robots_disabled,
            "trades_closed": self.trades_closed,
            "positions_closed": self.positions_closed,
            "close_errors": list(self.close_errors),
        }


@dataclass
class LifecycleConfig:
    comment_prefix: str = "mt5c"
    # Account-wide default; a robot's StrategySettings may lower it
    max_concurrent_trades: int = 5
    close_timeout: float = 30.0
    order_timeout: float = 15.0
    log_event_callback: Optional[Callable[..., None]] = None


class RobotLifecycleManager:
    def __init__(
        self,
        ledger: "LedgerStore",
        linker: "AccountLinker",
        gateway: "BrokerGateway",
        evaluator: "SignalEvaluator",
        metrics: Optional["ControlMetrics"] = None,
        config: Optional[LifecycleConfig] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.ledger = ledger
        self.linker = linker
        self.gateway = gateway
        self.evaluator = evaluator
        self.metrics = metrics
        self.config = config or LifecycleConfig()
        self._clock = clock
        self._robot_locks: Dict[str, asyncio.Lock] = {}
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, **kwargs}, default=str))

    def _lock_for(self, user_id: str, robot_id: str) -> asyncio.Lock:
        key = robot_key(user_id, robot_id)
        lock = self._robot_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._robot_locks[key] = lock
        return lock

    # ------------------------------------------------------------------
    # start
    # ------------------------------------------------------------------

    async def start(
        self,
        user_id: str,
        robot_id: str,
        settings: Optional["StrategySettings"] = None,
    ) -> StartResult:
        """
        Enable the robot and run one evaluation pass.

        Raises:
            InvalidRobotIdError: robot_id does not fit the broker's order comment
            LinkResolutionError: the user's account cannot be resolved
        """
        robot_comment(self.config.comment_prefix, robot_id)
        cfg, created = await self.ledger.upsert_robot_config(user_id, robot_id, enabled=True, settings=settings)
        self._log_event("robot_started", user_id=user_id, robot_id=robot_id, created=created)
        if self.metrics:
            self.metrics.robot_starts.labels(robot=robot_id).inc()
        return await self.evaluate_once(user_id, robot_id)

    async def evaluate_once(self, user_id: str, robot_id: str) -> StartResult:
        """
        One evaluation pass for an enabled robot.

        Shared by start() and the scheduler. Deployment still in progress is
        an error entry, not a failure.
        """
        result = StartResult()
        cfg = await self.ledger.get_robot_config(user_id, robot_id)
        if cfg is None or not cfg.enabled:
            return result

        if await self.ledger.get_link(user_id) is None:
            result.errors.append("no broker account linked")
            return result
        try:
            link, identity = await self.linker.require_deployed(user_id)
        except DeploymentPendingError as exc:
            result.errors.append(str(exc))
            self._log_event("evaluation_deferred", user_id=user_id, robot_id=robot_id, state=exc.state)
            return result

        context = SignalContext(
            user_id=user_id,
            robot_id=robot_id,
            settings=cfg.settings,
            balance=link.balance,
            equity=link.equity,
            open_trades=await self.ledger.count_open_trades(user_id),
        )
        batch = await self.evaluator.evaluate(context)
        result.signals = [s.to_dict() for s in batch.signals]
        self._log_event(
            "signals_evaluated",
            user_id=user_id,
            robot_id=robot_id,
            count=len(batch.signals),
            confidence=batch.confidence,
            reason=batch.reason,
        )

        for signal in batch.signals:
            placed, error = await self._place_guarded(link, identity, cfg, signal)
            if placed:
                result.trades_executed += 1
            elif error:
                result.errors.append(error)
        return result

    async def _place_guarded(
        self,
        link: "BrokerAccountLink",
        identity: "RemoteIdentity",
        cfg: "RobotConfig",
        signal: Signal,
    ) -> Tuple[bool, Optional[str]]:
        """Place one order if the robot is still enabled and under its trade limit."""
        user_id, robot_id = cfg.user_id, cfg.robot_id
        async with self._lock_for(user_id, robot_id):
            if not await self.ledger.is_robot_enabled(user_id, robot_id):
                self._log_event("order_skipped_disabled", user_id=user_id, robot_id=robot_id, symbol=signal.symbol)
                self._count_failure("disabled")
                return False, None

            allowed = cfg.settings.symbols
            if allowed and signal.symbol not in allowed:
                self._count_failure("symbol_filtered")
                return False, f"{signal.symbol}: not in robot symbol filter ({', '.join(allowed)})"

            limit = self.config.max_concurrent_trades
            if cfg.settings.max_concurrent_trades is not None:
                limit = min(limit, cfg.settings.max_concurrent_trades)
            open_trades = await self.ledger.count_open_trades(user_id)
            if open_trades >= limit:
                self._count_failure("max_trades")
                return False, f"{signal.symbol}: max concurrent trades reached ({open_trades}/{limit})"

            order = OrderRequest(
                symbol=signal.symbol,
                side=signal.side,
                volume=signal.volume,
                comment=robot_comment(self.config.comment_prefix, robot_id),
                stop_loss=signal.stop_loss,
                take_profit=signal.take_profit,
            )
            try:
                placed = await bounded(
                    self.gateway.place_order(identity.remote_id, order),
                    self.config.order_timeout,
                    "place_order",
                )
            except RemoteTimeoutError as exc:
                # Outcome unknown; trade sync picks the position up from deal history
                self._count_failure("timeout")
                self._log_event("order_timeout", user_id=user_id, robot_id=robot_id, symbol=signal.symbol)
                return False, f"{signal.symbol}: {exc}"
            except BrokerError as exc:
                self._count_failure("rejected")
                self._log_event("order_rejected", user_id=user_id, robot_id=robot_id, symbol=signal.symbol, err=str(exc))
                return False, f"{signal.symbol}: {exc}"

            trade_id = placed.position_id or placed.order_id
            if trade_id is not None:
                await self.ledger.record_open_trade(Trade(
                    trade_id=trade_id,
                    user_id=user_id,
                    account_id=link.account_id,
                    robot_id=robot_id,
                    symbol=signal.symbol,
                    direction=signal.side,
                    volume=signal.volume,
                    open_price=placed.price,
                    open_time=self._clock(),
                    status=TradeStatus.OPEN,
                ))
            self._log_event(
                "order_placed",
                user_id=user_id,
                robot_id=robot_id,
                symbol=signal.symbol,
                side=signal.side.value,
                volume=signal.volume,
                position_id=trade_id,
            )
            if self.metrics:
                self.metrics.orders_placed.labels(symbol=signal.symbol, side=signal.side.value).inc()
            return True, None

    def _count_failure(self, reason: str) -> None:
        if self.metrics:
            self.metrics.orders_failed.labels(reason=reason).inc()

    # ------------------------------------------------------------------
    # stop
    # ------------------------------------------------------------------

    async def stop(self, user_id: str, robot_id: str) -> StopResult:
        """
        Disable the robot, close its tagged positions, mark its trades CLOSED.

        The broker close is issued on every call once the robot exists, so a
        retry after a failed close reaches positions the ledger never saw. A
        ledger trade is only marked CLOSED when the broker closed it or no
        longer lists it.
        """
        was_enabled = await self.ledger.set_robot_enabled(user_id, robot_id, False)
        self._log_event("robot_stopped", user_id=user_id, robot_id=robot_id, was_enabled=was_enabled)
        if self.metrics:
            self.metrics.robot_stops.labels(kind="stop").inc()
        if was_enabled is None:
            return StopResult()

        # Wait out an order that passed its guard before the flag flipped
        async with self._lock_for(user_id, robot_id):
            pass

        open_ids = [
            t.trade_id
            for t in await self.ledger.list_trades(user_id, status=TradeStatus.OPEN)
            if t.robot_id == robot_id
        ]
        link = await self.ledger.get_link(user_id)
        if link is None or link.remote_account_id is None:
            if not open_ids:
                return StopResult()
            return StopResult(close_errors=[f"no broker account linked; {len(open_ids)} trade(s) left open"])

        result = StopResult()
        try:
            closed = await bounded(
                self.gateway.close_all_positions(link.remote_account_id, robot_id=robot_id),
                self.config.close_timeout,
                "close_all_positions",
            )
        except (RemoteTimeoutError, BrokerError) as exc:
            # Remote state unknown: leave the ledger OPEN for the next stop or sync
            result.close_errors.append(str(exc))
            self._record_close_errors(user_id, robot_id, result.close_errors)
            return result

        result.positions_closed = closed.closed_count
        try:
            closed.raise_for_failures()
        except PartialCloseError as exc:
            result.close_errors.extend(exc.itemize())

        keep_open = await self._unconfirmed(link.remote_account_id, open_ids, closed, result)
        if result.close_errors:
            self._record_close_errors(user_id, robot_id, result.close_errors)

        marked = await self.ledger.close_open_trades(
            user_id,
            robot_id=robot_id,
            skip_ids=keep_open,
            close_time=self._clock(),
        )
        result.trades_closed = len(marked)
        self._log_event("robot_positions_closed", user_id=user_id, robot_id=robot_id, **result.to_dict())
        return result

    async def _unconfirmed(
        self,
        remote_id: str,
        open_ids: List[str],
        closed: "CloseAllResult",
        result: StopResult,
    ) -> Set[str]:
        """Ledger trade ids the bulk close neither closed nor saw disappear."""
        keep = set(closed.failed)
        pending = set(open_ids) - set(closed.closed_ids) - keep
        if not pending:
            return keep
        try:
            live = await bounded(
                self.gateway.get_open_positions(remote_id),
                self.config.close_timeout,
                "get_open_positions",
            )
        except (RemoteTimeoutError, BrokerError) as exc:
            result.close_errors.append(f"could not confirm {len(pending)} untagged trade(s): {exc}")
            return keep | pending
        live_ids = {p.id for p in live}
        for trade_id in sorted(pending & live_ids):
            result.close_errors.append(f"{trade_id}: still open at broker without this robot's tag")
            keep.add(trade_id)
        return keep

    async def stop_all(self, user_id: str) -> StopAllResult:
        """
        Disable every robot of the user, bulk-close at the broker, close the ledger.

        Every OPEN trade is marked CLOSED even where the remote close failed;
        that case is logged as a warning.
        """
        disabled = await self.ledger.disable_all_robots(user_id)
        self._log_event("robots_stop_all", user_id=user_id, disabled=disabled)
        if self.metrics:
            self.metrics.robot_stops.labels(kind="stop_all").inc()

        for cfg in await self.ledger.list_robot_configs(user_id):
            async with self._lock_for(user_id, cfg.robot_id):
                pass

        result = StopAllResult(robots_disabled=len(disabled))
        link = await self.ledger.get_link(user_id)
        if link is not None and link.remote_account_id is not None:
            try:
                closed = await bounded(
                    self.gateway.close_all_positions(link.remote_account_id),
                    self.config.close_timeout,
                    "close_all_positions",
                )
            except (RemoteTimeoutError, BrokerError) as exc:
                result.close_errors.append(str(exc))
            else:
                result.positions_closed = closed.closed_count
                try:
                    closed.raise_for_failures()
                except PartialCloseError as exc:
                    result.close_errors.extend(exc.itemize())

        marked = await self.ledger.close_open_trades(user_id, close_time=self._clock())
        result.trades_closed = len(marked)
        if result.close_errors:
            self._record_close_errors(user_id, None, result.close_errors)
            if marked:
                log.warning(json.dumps({
                    "event": "stop_all_closed_with_remote_errors",
                    "user_id": user_id,
                    "trades_marked_closed": marked,
                    "close_errors": result.close_errors,
                }))
        self._log_event("robots_stop_all_done", user_id=user_id, **result.to_dict())
        return result

    def _record_close_errors(self, user_id: str, robot_id: Optional[str], errors: List[str]) -> None:
        log.warning(json.dumps({
            "event": "close_errors",
            "user_id": user_id,
            "robot_id": robot_id,
            "errors": errors,
        }))
        if self.metrics:
            self.metrics.close_errors.inc(len(errors))
