"""
mt5control: control plane for MT5 trading robots.

Links user brokerage accounts to a MetaApi-style broker API, keeps the local
trade ledger consistent with broker deal history, and starts/stops per-user
trading robots.
"""

__version__ = "0.3.0"
