"""
Broker-facing types and the gateway protocol.

The control plane only talks to the broker through BrokerGateway; the
MetaApi REST client is one implementation, the test fake is another.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from mt5control.core.errors import InvalidRobotIdError, PartialCloseError
from mt5control.core.utils import to_float_safe
from mt5control.ledger.models import Direction, parse_timestamp

DEAL_TYPE_BUY = "DEAL_TYPE_BUY"
DEAL_TYPE_SELL = "DEAL_TYPE_SELL"
TRADE_DEAL_TYPES = frozenset({DEAL_TYPE_BUY, DEAL_TYPE_SELL})

DEAL_ENTRY_IN = "DEAL_ENTRY_IN"
DEAL_ENTRY_OUT = "DEAL_ENTRY_OUT"
DEAL_ENTRY_INOUT = "DEAL_ENTRY_INOUT"
DEAL_ENTRY_OUT_BY = "DEAL_ENTRY_OUT_BY"
EXIT_ENTRY_TYPES = frozenset({DEAL_ENTRY_OUT, DEAL_ENTRY_INOUT, DEAL_ENTRY_OUT_BY})


@dataclass
class RemoteAccount:
    """Account as listed by the provisioning API."""
    id: str
    login: str
    server: str
    state: str = "UNDEPLOYED"
    connection_status: str = "DISCONNECTED"
    name: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "RemoteAccount":
        return cls(
            id=str(data.get("_id") or data.get("id")),
            login=str(data.get("login", "")),
            server=str(data.get("server", "")),
            state=str(data.get("state", "UNDEPLOYED")),
            connection_status=str(data.get("connectionStatus", "DISCONNECTED")),
            name=data.get("name"),
        )


@dataclass
class AccountInfo:
    balance: float
    equity: float
    currency: Optional[str] = None
    margin: float = 0.0
    free_margin: float = 0.0
    leverage: Optional[float] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "AccountInfo":
        return cls(
            balance=to_float_safe(data.get("balance"), 0.0),
            equity=to_float_safe(data.get("equity"), 0.0),
            currency=data.get("currency"),
            margin=to_float_safe(data.get("margin"), 0.0),
            free_margin=to_float_safe(data.get("freeMargin"), 0.0),
            leverage=to_float_safe(data.get("leverage")),
        )


@dataclass
class Deal:
    """One execution from broker deal history."""
    id: str
    type: str
    symbol: Optional[str] = None
    entry_type: Optional[str] = None
    position_id: Optional[str] = None
    volume: float = 0.0
    price: Optional[float] = None
    profit: float = 0.0
    commission: float = 0.0
    swap: float = 0.0
    time: Optional[datetime] = None
    comment: Optional[str] = None

    @property
    def is_trade(self) -> bool:
        """Buy/sell executions; balance, credit and fee deals are not."""
        return self.type in TRADE_DEAL_TYPES and bool(self.position_id)

    @property
    def is_entry(self) -> bool:
        return self.entry_type == DEAL_ENTRY_IN

    @property
    def is_exit(self) -> bool:
        return self.entry_type in EXIT_ENTRY_TYPES

    @property
    def direction(self) -> Optional[Direction]:
        return Direction.parse(self.type)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Deal":
        position_id = data.get("positionId")
        return cls(
            id=str(data.get("id")),
            type=str(data.get("type", "")),
            symbol=data.get("symbol"),
            entry_type=data.get("entryType"),
            position_id=str(position_id) if position_id not in (None, "") else None,
            volume=to_float_safe(data.get("volume"), 0.0),
            price=to_float_safe(data.get("price")),
            profit=to_float_safe(data.get("profit"), 0.0),
            commission=to_float_safe(data.get("commission"), 0.0),
            swap=to_float_safe(data.get("swap"), 0.0),
            time=parse_timestamp(data.get("time")),
            comment=data.get("comment"),
        )


@dataclass
class LivePosition:
    """Currently open position at the broker."""
    id: str
    symbol: str
    type: str
    volume: float
    open_price: Optional[float] = None
    current_price: Optional[float] = None
    profit: float = 0.0
    swap: float = 0.0
    commission: float = 0.0
    comment: Optional[str] = None
    time: Optional[datetime] = None

    @property
    def direction(self) -> Optional[Direction]:
        return Direction.parse(self.type)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "LivePosition":
        return cls(
            id=str(data.get("id")),
            symbol=str(data.get("symbol", "")),
            type=str(data.get("type", "")),
            volume=to_float_safe(data.get("volume"), 0.0),
            open_price=to_float_safe(data.get("openPrice")),
            current_price=to_float_safe(data.get("currentPrice")),
            profit=to_float_safe(data.get("profit"), 0.0),
            swap=to_float_safe(data.get("swap"), 0.0),
            commission=to_float_safe(data.get("commission"), 0.0),
            comment=data.get("comment"),
            time=parse_timestamp(data.get("time")),
        )


@dataclass
class OrderRequest:
    symbol: str
    side: Direction
    volume: float
    comment: str
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None


@dataclass
class OrderResult:
    order_id: Optional[str]
    position_id: Optional[str]
    price: Optional[float] = None
    string_code: Optional[str] = None


@dataclass
class CloseAllResult:
    """Outcome of a bulk close. `failed` maps position id to error text."""
    closed_ids: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def closed_count(self) -> int:
        return len(self.closed_ids)

    @property
    def errors(self) -> List[str]:
        return [f"{pid}: {err}" for pid, err in sorted(self.failed.items())]

    def raise_for_failures(self) -> None:
        """Raise PartialCloseError if any position failed to close."""
        if self.failed:
            raise PartialCloseError(self.failed)


# MT5 silently truncates longer order comments
MAX_COMMENT_LENGTH = 31


def robot_comment(prefix: str, robot_id: str) -> str:
    """
    Order comment that tags a position with its robot.

    Raises:
        InvalidRobotIdError: the comment would not survive the broker's limit
    """
    comment = f"{prefix}-{robot_id}"
    if len(comment) > MAX_COMMENT_LENGTH:
        raise InvalidRobotIdError(robot_id, comment, MAX_COMMENT_LENGTH)
    return comment


def robot_from_comment(prefix: str, comment: Optional[str]) -> Optional[str]:
    """Inverse of robot_comment; None for foreign or manual orders."""
    if not comment:
        return None
    head = f"{prefix}-"
    if not comment.startswith(head) or len(comment) == len(head):
        return None
    return comment[len(head):]


class BrokerGateway(Protocol):
    """Remote broker operations used by the control plane."""

    async def list_accounts(self) -> List[RemoteAccount]: ...

    async def create_account(self, login: str, password: str, server: str, name: Optional[str] = None) -> RemoteAccount: ...

    async def deploy(self, remote_id: str) -> None: ...

    async def undeploy(self, remote_id: str) -> None: ...

    async def get_account_info(self, remote_id: str) -> AccountInfo: ...

    async def get_open_positions(self, remote_id: str) -> List[LivePosition]: ...

    async def get_deal_history(self, remote_id: str, since: datetime, until: Optional[datetime] = None) -> List[Deal]: ...

    async def place_order(self, remote_id: str, order: OrderRequest) -> OrderResult: ...

    async def close_position(self, remote_id: str, position_id: str) -> None: ...

    async def close_all_positions(self, remote_id: str, robot_id: Optional[str] = None) -> CloseAllResult: ...
