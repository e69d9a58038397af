"""
TradeSynchronizer: converges the local trade ledger to broker history.

One sync pass for an account:
    1. fetch deal history for the configured window
    2. reconcile deals into trades and upsert them by position id
    3. mark trades that were OPEN before the position snapshot and are
       missing from it as CLOSED (closed outside the control plane, or
       history not yet visible)

Step 3 keys on position id, never on symbol, so two positions on the same
symbol are tracked independently.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from mt5control.core.utils import bounded
from mt5control.execution.reconciler import PositionReconciler
from mt5control.ledger.models import TradeStatus

if TYPE_CHECKING:
    from mt5control.broker.types import BrokerGateway
    from mt5control.ledger.models import BrokerAccountLink, Trade
    from mt5control.ledger.store import LedgerStore
    from mt5control.monitoring.metrics import ControlMetrics

log = logging.getLogger("mt5control")


@dataclass
class SyncResult:
    """Counts from one sync pass."""
    deals: int = 0
    inserted: int = 0
    updated: int = 0
    incomplete: int = 0
    closed_missing: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deals": self.deals,
            "inserted": self.inserted,
            "updated": self.updated,
            "incomplete": self.incomplete,
            "closed_missing": list(self.closed_missing),
        }


@dataclass
class TradeStats:
    total_trades: int = 0
    open_trades: int = 0
    closed_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    total_profit: float = 0.0
    avg_profit: float = 0.0
    max_profit: float = 0.0
    max_loss: float = 0.0
    win_rate: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class TradeSyncConfig:
    history_window_days: int = 30
    # Deadline for each remote read in a pass
    fetch_timeout: float = 30.0
    log_event_callback: Optional[Callable[..., None]] = None


class TradeSynchronizer:
    def __init__(
        self,
        gateway: "BrokerGateway",
        ledger: "LedgerStore",
        reconciler: PositionReconciler,
        metrics: Optional["ControlMetrics"] = None,
        config: Optional[TradeSyncConfig] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.gateway = gateway
        self.ledger = ledger
        self.reconciler = reconciler
        self.metrics = metrics
        self.config = config or TradeSyncConfig()
        self._clock = clock
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, **kwargs}, default=str))

    async def sync_account(self, link: "BrokerAccountLink", since: Optional[datetime] = None) -> SyncResult:
        """
        Run one sync pass for a resolved link.

        Remote errors propagate; the ledger is only written after both
        remote reads succeed.
        """
        if link.remote_account_id is None:
            raise ValueError(f"account {link.account_id} has no remote identity")
        remote_id = link.remote_account_id
        now = self._clock()
        since = since or now - timedelta(days=self.config.history_window_days)

        # Candidates are fixed before the position snapshot; trades recorded
        # while it is in flight stay OPEN until a later pass.
        candidates = [
            t.trade_id
            for t in await self.ledger.list_trades(link.user_id, status=TradeStatus.OPEN)
            if t.account_id == link.account_id
        ]

        started = time.monotonic()
        deals = await bounded(
            self.gateway.get_deal_history(remote_id, since),
            self.config.fetch_timeout,
            "get_deal_history",
        )
        live = await bounded(
            self.gateway.get_open_positions(remote_id),
            self.config.fetch_timeout,
            "get_open_positions",
        )
        if self.metrics:
            self.metrics.remote_call_latency.labels(operation="trade_sync").observe(time.monotonic() - started)

        outcome = self.reconciler.reconcile_detailed(deals, user_id=link.user_id, account_id=link.account_id)
        applied = await self.ledger.apply_trades(outcome.trades)

        live_ids = {p.id for p in live}
        missing = [trade_id for trade_id in candidates if trade_id not in live_ids]
        closed_missing = await self.ledger.mark_trades_closed(missing, close_time=now)

        result = SyncResult(
            deals=len(deals),
            inserted=len(applied.inserted),
            updated=len(applied.updated),
            incomplete=len(outcome.incomplete),
            closed_missing=closed_missing,
        )
        if self.metrics:
            self.metrics.reconciled_trades.labels(status="closed").inc(len(outcome.closed))
            self.metrics.reconciled_trades.labels(status="open").inc(len(outcome.open))
        self._log_event("trade_sync_done", account_id=link.account_id, **result.to_dict())
        return result


def compute_trade_stats(trades: List["Trade"]) -> TradeStats:
    """Aggregate statistics; profit figures use closed trades only."""
    closed = [t for t in trades if t.status is TradeStatus.CLOSED]
    stats = TradeStats(
        total_trades=len(trades),
        open_trades=sum(1 for t in trades if t.status is TradeStatus.OPEN),
        closed_trades=len(closed),
    )
    if not closed:
        return stats
    profits = [t.net_profit for t in closed]
    stats.winning_trades = sum(1 for p in profits if p > 0)
    stats.losing_trades = sum(1 for p in profits if p < 0)
    stats.total_profit = round(sum(profits), 2)
    stats.avg_profit = round(stats.total_profit / len(closed), 2)
    stats.max_profit = round(max(max(profits), 0.0), 2)
    stats.max_loss = round(min(min(profits), 0.0), 2)
    stats.win_rate = round(stats.winning_trades / len(closed) * 100, 2)
    return stats
