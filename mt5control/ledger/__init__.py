"""
Ledger package.

Account links, robot configs and the canonical trade ledger.
"""

from mt5control.ledger.models import (
    BrokerAccountLink,
    ConnectionState,
    DeploymentState,
    Direction,
    LinkStatus,
    RobotConfig,
    StrategySettings,
    Trade,
    TradeStatus,
)
from mt5control.ledger.store import ApplyResult, LedgerStore

__all__ = [
    "ApplyResult",
    "BrokerAccountLink",
    "ConnectionState",
    "DeploymentState",
    "Direction",
    "LedgerStore",
    "LinkStatus",
    "RobotConfig",
    "StrategySettings",
    "Trade",
    "TradeStatus",
]
