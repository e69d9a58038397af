"""
Ledger records: account links, robot configs and trades.

All records serialize to plain dicts (to_dict / from_dict) for the JSON
ledger. Field order is stable so serialized trades are byte-identical for
identical inputs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class DeploymentState(str, Enum):
    """
    Remote account deployment.

    UNDEPLOYED ──deploy()──> DEPLOYING ──(remote)──> DEPLOYED
    """
    UNDEPLOYED = "UNDEPLOYED"
    DEPLOYING = "DEPLOYING"
    DEPLOYED = "DEPLOYED"

    @classmethod
    def from_remote(cls, raw: Optional[str]) -> "DeploymentState":
        # Broker reports CREATED, DEPLOY_FAILED, UNDEPLOYING, ... as well
        value = (raw or "").upper()
        if value == "DEPLOYED":
            return cls.DEPLOYED
        if value == "DEPLOYING":
            return cls.DEPLOYING
        return cls.UNDEPLOYED


class ConnectionState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"

    @classmethod
    def from_remote(cls, raw: Optional[str]) -> "ConnectionState":
        value = (raw or "").upper()
        if value == "CONNECTED":
            return cls.CONNECTED
        if value == "CONNECTING":
            return cls.CONNECTING
        return cls.DISCONNECTED


class LinkStatus(str, Enum):
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"


class TradeStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class Direction(str, Enum):
    BUY = "buy"
    SELL = "sell"

    @property
    def opposite(self) -> "Direction":
        return Direction.SELL if self is Direction.BUY else Direction.BUY

    @classmethod
    def parse(cls, raw: Optional[str]) -> Optional["Direction"]:
        """Accept 'buy', 'BUY', 'DEAL_TYPE_BUY', 'POSITION_TYPE_SELL', ..."""
        value = (raw or "").upper()
        if value.endswith("BUY"):
            return cls.BUY
        if value.endswith("SELL"):
            return cls.SELL
        return None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


@dataclass
class BrokerAccountLink:
    """Local account record mapped to a remote broker account."""
    account_id: str
    user_id: str
    login: str
    server: str
    remote_account_id: Optional[str] = None
    deployment_state: DeploymentState = DeploymentState.UNDEPLOYED
    connection_state: ConnectionState = ConnectionState.DISCONNECTED
    balance: float = 0.0
    equity: float = 0.0
    currency: Optional[str] = None
    # Epoch seconds of the fetch that produced balance/equity
    last_sync: Optional[float] = None
    status: LinkStatus = LinkStatus.DISCONNECTED
    created_at: float = 0.0
    deleted_at: Optional[float] = None

    @property
    def is_resolved(self) -> bool:
        return self.remote_account_id is not None

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "user_id": self.user_id,
            "login": self.login,
            "server": self.server,
            "remote_account_id": self.remote_account_id,
            "deployment_state": self.deployment_state.value,
            "connection_state": self.connection_state.value,
            "balance": self.balance,
            "equity": self.equity,
            "currency": self.currency,
            "last_sync": self.last_sync,
            "status": self.status.value,
            "created_at": self.created_at,
            "deleted_at": self.deleted_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BrokerAccountLink":
        return cls(
            account_id=str(data["account_id"]),
            user_id=str(data["user_id"]),
            login=str(data["login"]),
            server=str(data["server"]),
            remote_account_id=data.get("remote_account_id"),
            deployment_state=DeploymentState(data.get("deployment_state", "UNDEPLOYED")),
            connection_state=ConnectionState(data.get("connection_state", "DISCONNECTED")),
            balance=float(data.get("balance", 0.0)),
            equity=float(data.get("equity", 0.0)),
            currency=data.get("currency"),
            last_sync=data.get("last_sync"),
            status=LinkStatus(data.get("status", "DISCONNECTED")),
            created_at=float(data.get("created_at", 0.0)),
            deleted_at=data.get("deleted_at"),
        )


@dataclass
class StrategySettings:
    """Per-robot strategy knobs handed to the signal evaluator."""
    risk_percent: float = 1.0
    # None falls back to the account-wide limit from Settings
    max_concurrent_trades: Optional[int] = None
    # Empty allows every symbol
    symbols: List[str] = field(default_factory=list)
    timeframe: str = "m15"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "risk_percent": self.risk_percent,
            "max_concurrent_trades": self.max_concurrent_trades,
            "symbols": list(self.symbols),
            "timeframe": self.timeframe,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "StrategySettings":
        data = data or {}
        max_trades = data.get("max_concurrent_trades")
        return cls(
            risk_percent=float(data.get("risk_percent", 1.0)),
            max_concurrent_trades=int(max_trades) if max_trades is not None else None,
            symbols=[str(s) for s in data.get("symbols", [])],
            timeframe=str(data.get("timeframe", "m15")),
        )


@dataclass
class RobotConfig:
    """Enablement record for one (user, robot) pair."""
    user_id: str
    robot_id: str
    enabled: bool = False
    settings: StrategySettings = field(default_factory=StrategySettings)
    updated_at: float = 0.0

    @property
    def key(self) -> str:
        return robot_key(self.user_id, self.robot_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "robot_id": self.robot_id,
            "enabled": self.enabled,
            "settings": self.settings.to_dict(),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RobotConfig":
        return cls(
            user_id=str(data["user_id"]),
            robot_id=str(data["robot_id"]),
            enabled=bool(data.get("enabled", False)),
            settings=StrategySettings.from_dict(data.get("settings")),
            updated_at=float(data.get("updated_at", 0.0)),
        )


def robot_key(user_id: str, robot_id: str) -> str:
    return f"{user_id}:{robot_id}"


@dataclass
class Trade:
    """
    Canonical ledger record, keyed by the broker position id.

    Status only moves OPEN -> CLOSED. `incomplete` marks records built from a
    truncated history window (no opening deal seen), whose open_price is None.
    """
    trade_id: str
    user_id: str
    account_id: str
    robot_id: Optional[str]
    symbol: str
    direction: Direction
    volume: float
    open_price: Optional[float]
    open_time: Optional[datetime]
    close_price: Optional[float] = None
    close_time: Optional[datetime] = None
    profit: float = 0.0
    commission: float = 0.0
    swap: float = 0.0
    status: TradeStatus = TradeStatus.OPEN
    incomplete: bool = False

    @property
    def is_closed(self) -> bool:
        return self.status is TradeStatus.CLOSED

    @property
    def net_profit(self) -> float:
        return self.profit + self.commission + self.swap

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trade_id": self.trade_id,
            "user_id": self.user_id,
            "account_id": self.account_id,
            "robot_id": self.robot_id,
            "symbol": self.symbol,
            "direction": self.direction.value,
            "volume": self.volume,
            "open_price": self.open_price,
            "open_time": _iso(self.open_time),
            "close_price": self.close_price,
            "close_time": _iso(self.close_time),
            "profit": self.profit,
            "commission": self.commission,
            "swap": self.swap,
            "status": self.status.value,
            "incomplete": self.incomplete,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Trade":
        return cls(
            trade_id=str(data["trade_id"]),
            user_id=str(data["user_id"]),
            account_id=str(data["account_id"]),
            robot_id=data.get("robot_id"),
            symbol=str(data["symbol"]),
            direction=Direction(data["direction"]),
            volume=float(data.get("volume", 0.0)),
            open_price=data.get("open_price"),
            open_time=_parse_dt(data.get("open_time")),
            close_price=data.get("close_price"),
            close_time=_parse_dt(data.get("close_time")),
            profit=float(data.get("profit", 0.0)),
            commission=float(data.get("commission", 0.0)),
            swap=float(data.get("swap", 0.0)),
            status=TradeStatus(data.get("status", "OPEN")),
            incomplete=bool(data.get("incomplete", False)),
        )


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse broker ISO-8601 timestamps ('...Z' included)."""
    return _parse_dt(value)
