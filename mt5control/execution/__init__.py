"""
Execution package.

Deal-to-trade reconciliation and ledger synchronization.
"""

from mt5control.execution.reconciler import PositionReconciler, ReconcilerConfig, reconcile
from mt5control.execution.trade_sync import (
    SyncResult,
    TradeStats,
    TradeSyncConfig,
    TradeSynchronizer,
    compute_trade_stats,
)

__all__ = [
    "PositionReconciler",
    "ReconcilerConfig",
    "SyncResult",
    "TradeStats",
    "TradeSyncConfig",
    "TradeSynchronizer",
    "compute_trade_stats",
    "reconcile",
]
