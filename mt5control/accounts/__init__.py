"""
Accounts package.

Remote account linking and balance synchronization.
"""

from mt5control.accounts.balance_sync import BalanceSnapshot, BalanceSynchronizer, BalanceSyncConfig
from mt5control.accounts.linker import AccountLinker, AccountLinkerConfig, RemoteIdentity

__all__ = [
    "AccountLinker",
    "AccountLinkerConfig",
    "BalanceSnapshot",
    "BalanceSyncConfig",
    "BalanceSynchronizer",
    "RemoteIdentity",
]
