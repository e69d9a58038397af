"""
Test doubles and builders shared across the test modules.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from mt5control.broker.types import (
    AccountInfo,
    CloseAllResult,
    Deal,
    LivePosition,
    OrderRequest,
    OrderResult,
    RemoteAccount,
    robot_comment,
)
from mt5control.config.config import Settings
from mt5control.core.errors import BrokerError
from mt5control.robots.signals import SignalBatch

PREFIX = "mt5c"


class FakeBrokerGateway:
    """In-memory BrokerGateway with knobs for delays and failures."""

    def __init__(self, comment_prefix: str = PREFIX) -> None:
        self.comment_prefix = comment_prefix
        self.accounts: List[RemoteAccount] = []
        self.info: Dict[str, AccountInfo] = {}
        self.positions: Dict[str, List[LivePosition]] = {}
        self.deals: Dict[str, List[Deal]] = {}
        self.calls: List[Tuple[str, tuple]] = []

        self.info_delay = 0.0
        self.info_error: Optional[Exception] = None
        self.info_cancelled = False
        self.order_error: Optional[Exception] = None
        self.close_error: Optional[Exception] = None
        self.close_delay = 0.0
        # position id -> error text for close failures
        self.fail_close: Dict[str, str] = {}
        self.deals_error: Optional[Exception] = None
        self._next_id = 1000

    def calls_to(self, name: str) -> List[tuple]:
        return [args for op, args in self.calls if op == name]

    def add_account(self, remote_id: str, login: str, server: str, state: str = "DEPLOYED") -> RemoteAccount:
        acc = RemoteAccount(id=remote_id, login=login, server=server, state=state, connection_status="CONNECTED")
        self.accounts.append(acc)
        return acc

    def add_position(self, remote_id: str, position_id: str, symbol: str = "EURUSD",
                     robot_id: Optional[str] = None, comment: Optional[str] = None) -> LivePosition:
        pos = LivePosition(
            id=position_id,
            symbol=symbol,
            type="POSITION_TYPE_BUY",
            volume=0.1,
            open_price=1.1,
            comment=robot_comment(self.comment_prefix, robot_id) if robot_id else comment,
        )
        self.positions.setdefault(remote_id, []).append(pos)
        return pos

    async def list_accounts(self) -> List[RemoteAccount]:
        self.calls.append(("list_accounts", ()))
        return list(self.accounts)

    async def create_account(self, login: str, password: str, server: str, name: Optional[str] = None) -> RemoteAccount:
        self.calls.append(("create_account", (login, server)))
        acc = RemoteAccount(id=f"created-{len(self.accounts) + 1}", login=login, server=server, state="CREATED")
        self.accounts.append(acc)
        return acc

    async def deploy(self, remote_id: str) -> None:
        self.calls.append(("deploy", (remote_id,)))
        for acc in self.accounts:
            if acc.id == remote_id:
                acc.state = "DEPLOYING"

    async def undeploy(self, remote_id: str) -> None:
        self.calls.append(("undeploy", (remote_id,)))
        for acc in self.accounts:
            if acc.id == remote_id:
                acc.state = "UNDEPLOYED"

    async def get_account_info(self, remote_id: str) -> AccountInfo:
        self.calls.append(("get_account_info", (remote_id,)))
        if self.info_delay:
            try:
                await asyncio.sleep(self.info_delay)
            except asyncio.CancelledError:
                self.info_cancelled = True
                raise
        if self.info_error is not None:
            raise self.info_error
        return self.info[remote_id]

    async def get_open_positions(self, remote_id: str) -> List[LivePosition]:
        self.calls.append(("get_open_positions", (remote_id,)))
        return list(self.positions.get(remote_id, []))

    async def get_deal_history(self, remote_id: str, since: datetime, until: Optional[datetime] = None) -> List[Deal]:
        self.calls.append(("get_deal_history", (remote_id, since)))
        if self.deals_error is not None:
            raise self.deals_error
        return list(self.deals.get(remote_id, []))

    async def place_order(self, remote_id: str, order: OrderRequest) -> OrderResult:
        self.calls.append(("place_order", (remote_id, order)))
        if self.order_error is not None:
            raise self.order_error
        self._next_id += 1
        pid = str(self._next_id)
        self.positions.setdefault(remote_id, []).append(LivePosition(
            id=pid,
            symbol=order.symbol,
            type=f"POSITION_TYPE_{order.side.value.upper()}",
            volume=order.volume,
            open_price=1.1,
            comment=order.comment,
        ))
        return OrderResult(order_id=pid, position_id=pid, price=1.1, string_code="TRADE_RETCODE_DONE")

    async def close_position(self, remote_id: str, position_id: str) -> None:
        self.calls.append(("close_position", (remote_id, position_id)))
        if position_id in self.fail_close:
            raise BrokerError(self.fail_close[position_id])
        self.positions[remote_id] = [p for p in self.positions.get(remote_id, []) if p.id != position_id]

    async def close_all_positions(self, remote_id: str, robot_id: Optional[str] = None) -> CloseAllResult:
        self.calls.append(("close_all_positions", (remote_id, robot_id)))
        if self.close_delay:
            await asyncio.sleep(self.close_delay)
        if self.close_error is not None:
            raise self.close_error
        targets = list(self.positions.get(remote_id, []))
        if robot_id is not None:
            tag = robot_comment(self.comment_prefix, robot_id)
            targets = [p for p in targets if p.comment == tag]
        result = CloseAllResult()
        for pos in targets:
            if pos.id in self.fail_close:
                result.failed[pos.id] = self.fail_close[pos.id]
                continue
            self.positions[remote_id] = [p for p in self.positions[remote_id] if p.id != pos.id]
            result.closed_ids.append(pos.id)
        return result


def make_deal(
    deal_id: str,
    position_id: Optional[str],
    entry: Optional[str],
    side: str = "buy",
    price: float = 1.1,
    volume: float = 0.1,
    profit: float = 0.0,
    commission: float = 0.0,
    swap: float = 0.0,
    minute: int = 0,
    symbol: str = "EURUSD",
    comment: Optional[str] = None,
    deal_type: Optional[str] = None,
) -> Deal:
    return Deal(
        id=deal_id,
        type=deal_type or f"DEAL_TYPE_{side.upper()}",
        symbol=symbol,
        entry_type=f"DEAL_ENTRY_{entry}" if entry else None,
        position_id=position_id,
        volume=volume,
        price=price,
        profit=profit,
        commission=commission,
        swap=swap,
        time=datetime(2024, 3, 1, 10, minute, tzinfo=timezone.utc),
        comment=comment,
    )


def make_settings(**overrides: Any) -> Settings:
    base = dict(
        metaapi_token="token",
        provisioning_url="https://prov.test",
        client_url="https://client.test",
        region="london",
        http_timeout=10.0,
        balance_max_wait=3.0,
        close_timeout=30.0,
        order_timeout=15.0,
        history_window_days=30,
        order_comment_prefix=PREFIX,
        max_concurrent_trades=5,
        evaluation_interval=30.0,
        balance_sync_interval=300.0,
        reconcile_interval=120.0,
        api_error_threshold=5,
        ledger_path=None,
        metrics_port=9096,
        metrics_token=None,
        log_file=None,
        log_level="INFO",
        scheduler_enabled=True,
    )
    base.update(overrides)
    return Settings(**base)


class ScriptedEvaluator:
    """SignalEvaluator returning the same signals on every call; optional hook runs first."""

    def __init__(self, signals=None, before_return=None) -> None:
        self.signals = list(signals or [])
        self.before_return = before_return
        self.contexts: List[Any] = []

    async def evaluate(self, context):
        self.contexts.append(context)
        if self.before_return is not None:
            await self.before_return(context)
        return SignalBatch(signals=list(self.signals), confidence=0.8, reason="scripted")
