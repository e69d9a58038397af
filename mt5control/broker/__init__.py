"""
Broker package.

Gateway protocol, wire types and the MetaApi REST client.
"""

from mt5control.broker.metaapi_client import MetaApiClient
from mt5control.broker.types import (
    AccountInfo,
    BrokerGateway,
    CloseAllResult,
    Deal,
    LivePosition,
    OrderRequest,
    OrderResult,
    RemoteAccount,
    robot_comment,
    robot_from_comment,
)

__all__ = [
    "AccountInfo",
    "BrokerGateway",
    "CloseAllResult",
    "Deal",
    "LivePosition",
    "MetaApiClient",
    "OrderRequest",
    "OrderResult",
    "RemoteAccount",
    "robot_comment",
    "robot_from_comment",
]
