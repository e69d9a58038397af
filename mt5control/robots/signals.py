"""
Signal evaluation seam.

Strategy logic is outside the control plane. An evaluator receives the
robot's settings and account context and returns zero or more proposed
orders plus a confidence and a reason. The lifecycle manager decides whether
and how they are executed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from mt5control.ledger.models import Direction, StrategySettings


@dataclass(frozen=True)
class Signal:
    """One proposed market order."""
    symbol: str
    side: Direction
    volume: float
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    confidence: float = 0.0
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "side": self.side.value,
            "volume": self.volume,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "confidence": self.confidence,
            "reason": self.reason,
        }


@dataclass
class SignalBatch:
    signals: List[Signal] = field(default_factory=list)
    confidence: float = 0.0
    reason: str = ""


@dataclass(frozen=True)
class SignalContext:
    user_id: str
    robot_id: str
    settings: StrategySettings
    balance: float = 0.0
    equity: float = 0.0
    open_trades: int = 0


class SignalEvaluator(Protocol):
    async def evaluate(self, context: SignalContext) -> SignalBatch: ...


class NoopSignalEvaluator:
    """Evaluator that never proposes a trade."""

    async def evaluate(self, context: SignalContext) -> SignalBatch:
        return SignalBatch(reason="no evaluator configured")
