"""
PositionReconciler: folds broker deal history into canonical trades.

Deals are grouped by position id; each group is folded strictly in the order
the broker delivered it (no timestamp re-sort). Output order is the order in
which positions first appear, and nothing reads the wall clock, so the same
deal list always yields the same trades.

Fold rules:
    IN          volume summed, open price volume-weighted, open time and
                direction from the first IN leg
    OUT/INOUT/  close price and close time from the latest exit leg
    OUT_BY
    any deal    profit, commission and swap summed

A position with an exit leg is CLOSED; one with only IN legs is OPEN. A
position whose IN legs fell outside the history window is emitted as an
incomplete CLOSED trade with open_price None.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from mt5control.broker.types import Deal, robot_from_comment
from mt5control.core.errors import ReconciliationIncompleteError
from mt5control.ledger.models import Direction, Trade, TradeStatus

log = logging.getLogger("mt5control")


@dataclass
class Position:
    """In-flight fold state for one broker position."""
    position_id: str
    symbol: Optional[str] = None
    direction: Optional[Direction] = None
    volume: float = 0.0
    # Sum of price * volume over IN legs
    _notional: float = 0.0
    open_time: Optional[datetime] = None
    close_price: Optional[float] = None
    close_time: Optional[datetime] = None
    exit_direction: Optional[Direction] = None
    profit: float = 0.0
    commission: float = 0.0
    swap: float = 0.0
    robot_id: Optional[str] = None
    has_entry: bool = False
    has_exit: bool = False

    @property
    def open_price(self) -> Optional[float]:
        if not self.has_entry or self.volume <= 0:
            return None
        return self._notional / self.volume

    def fold(self, deal: Deal, comment_prefix: str) -> None:
        if self.symbol is None and deal.symbol:
            self.symbol = deal.symbol
        self.profit += deal.profit
        self.commission += deal.commission
        self.swap += deal.swap
        if self.robot_id is None:
            self.robot_id = robot_from_comment(comment_prefix, deal.comment)

        if deal.is_entry:
            if not self.has_entry:
                self.open_time = deal.time
                self.direction = deal.direction
            self.has_entry = True
            self.volume += deal.volume
            self._notional += (deal.price or 0.0) * deal.volume
        elif deal.is_exit:
            self.has_exit = True
            self.close_price = deal.price
            self.close_time = deal.time
            if self.exit_direction is None:
                self.exit_direction = deal.direction
            if not self.has_entry:
                # Only exit legs seen so far; carry their volume
                self.volume += deal.volume

    def finalize(self, user_id: str, account_id: str) -> Trade:
        """
        Produce the canonical trade.

        Raises:
            ReconciliationIncompleteError: no opening leg was folded
        """
        if not self.has_entry:
            raise ReconciliationIncompleteError(self.position_id)
        return Trade(
            trade_id=self.position_id,
            user_id=user_id,
            account_id=account_id,
            robot_id=self.robot_id,
            symbol=self.symbol or "",
            direction=self.direction or Direction.BUY,
            volume=self.volume,
            open_price=self.open_price,
            open_time=self.open_time,
            close_price=self.close_price if self.has_exit else None,
            close_time=self.close_time if self.has_exit else None,
            profit=self.profit,
            commission=self.commission,
            swap=self.swap,
            status=TradeStatus.CLOSED if self.has_exit else TradeStatus.OPEN,
        )

    def finalize_incomplete(self, user_id: str, account_id: str) -> Trade:
        """Trade for an exit-only position; direction is inferred from the exit side."""
        direction = self.exit_direction.opposite if self.exit_direction else Direction.BUY
        return Trade(
            trade_id=self.position_id,
            user_id=user_id,
            account_id=account_id,
            robot_id=self.robot_id,
            symbol=self.symbol or "",
            direction=direction,
            volume=self.volume,
            open_price=None,
            open_time=None,
            close_price=self.close_price,
            close_time=self.close_time,
            profit=self.profit,
            commission=self.commission,
            swap=self.swap,
            status=TradeStatus.CLOSED,
            incomplete=True,
        )


@dataclass
class ReconcileResult:
    trades: List[Trade] = field(default_factory=list)
    ignored_deals: int = 0
    incomplete: List[str] = field(default_factory=list)

    @property
    def closed(self) -> List[Trade]:
        return [t for t in self.trades if t.status is TradeStatus.CLOSED]

    @property
    def open(self) -> List[Trade]:
        return [t for t in self.trades if t.status is TradeStatus.OPEN]


@dataclass
class ReconcilerConfig:
    comment_prefix: str = "mt5c"
    log_event_callback: Optional[Callable[..., None]] = None


class PositionReconciler:
    def __init__(self, config: Optional[ReconcilerConfig] = None) -> None:
        self.config = config or ReconcilerConfig()
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, **kwargs}, default=str))

    def reconcile(self, deals: Iterable[Deal], *, user_id: str, account_id: str) -> List[Trade]:
        """Fold deals into trades. See module docstring for the rules."""
        return self.reconcile_detailed(deals, user_id=user_id, account_id=account_id).trades

    def reconcile_detailed(self, deals: Iterable[Deal], *, user_id: str, account_id: str) -> ReconcileResult:
        result = ReconcileResult()
        positions: Dict[str, Position] = {}
        for deal in deals:
            if not deal.is_trade:
                result.ignored_deals += 1
                continue
            pos = positions.get(deal.position_id)
            if pos is None:
                pos = Position(position_id=deal.position_id)
                positions[deal.position_id] = pos
            pos.fold(deal, self.config.comment_prefix)

        for pos in positions.values():
            try:
                trade = pos.finalize(user_id, account_id)
            except ReconciliationIncompleteError as exc:
                self._log_event(
                    "reconcile_incomplete",
                    position_id=exc.position_id,
                    account_id=account_id,
                )
                result.incomplete.append(exc.position_id)
                trade = pos.finalize_incomplete(user_id, account_id)
            result.trades.append(trade)
        return result


def reconcile(
    deals: Iterable[Deal],
    *,
    user_id: str,
    account_id: str,
    comment_prefix: str = "mt5c",
) -> List[Trade]:
    """Module-level convenience wrapper around PositionReconciler."""
    reconciler = PositionReconciler(ReconcilerConfig(comment_prefix=comment_prefix))
    return reconciler.reconcile(deals, user_id=user_id, account_id=account_id)
