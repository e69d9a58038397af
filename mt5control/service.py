"""
ControlPlane: the caller-facing facade.

Wires ledger, broker gateway, linker, balance sync, reconciler, trade sync,
lifecycle manager and scheduler from Settings, and exposes the operations
as plain async methods returning dicts (or Trade lists). Every response
carries counts and an explicit error list where remote work is involved.

Usage:
    plane = build_control_plane(Settings.load())
    await plane.open()
    await plane.link_account("u1", "12345678", "Broker-Live")
    await plane.start("u1", "scalper")
    ...
    await plane.close()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from mt5control.accounts.balance_sync import BalanceSyncConfig, BalanceSynchronizer
from mt5control.accounts.linker import AccountLinker
from mt5control.broker.metaapi_client import MetaApiClient
from mt5control.core.errors import AccountNotLinkedError, BrokerError, BrokerNotFoundError, RemoteTimeoutError
from mt5control.execution.reconciler import PositionReconciler, ReconcilerConfig
from mt5control.execution.trade_sync import TradeSyncConfig, TradeSynchronizer, compute_trade_stats
from mt5control.infra.logging_cfg import log_event
from mt5control.ledger.models import ConnectionState, DeploymentState, LinkStatus, Trade, TradeStatus
from mt5control.ledger.store import LedgerStore
from mt5control.risk.circuit_breaker import AccountBreakers, CircuitBreakerConfig
from mt5control.robots.lifecycle import LifecycleConfig, RobotLifecycleManager
from mt5control.robots.scheduler import RobotScheduler, SchedulerConfig
from mt5control.robots.signals import NoopSignalEvaluator

if TYPE_CHECKING:
    from mt5control.broker.types import BrokerGateway
    from mt5control.config.config import Settings
    from mt5control.ledger.models import StrategySettings
    from mt5control.monitoring.metrics import ControlMetrics, HealthChecker
    from mt5control.robots.signals import SignalEvaluator

log = logging.getLogger("mt5control")


@dataclass
class ControlPlane:
    ledger: LedgerStore
    gateway: "BrokerGateway"
    linker: AccountLinker
    balances: BalanceSynchronizer
    trade_sync: TradeSynchronizer
    lifecycle: RobotLifecycleManager
    scheduler: RobotScheduler
    balance_max_wait: float = 3.0

    async def open(self) -> None:
        await self.ledger.load()

    async def close(self) -> None:
        await self.balances.wait_pending_writes()
        closer = getattr(self.gateway, "close", None)
        if closer is not None:
            await closer()

    # ------------------------------------------------------------------
    # Robots
    # ------------------------------------------------------------------

    async def start(
        self,
        user_id: str,
        robot_id: str,
        settings: Optional["StrategySettings"] = None,
    ) -> Dict[str, Any]:
        return (await self.lifecycle.start(user_id, robot_id, settings=settings)).to_dict()

    async def stop(self, user_id: str, robot_id: str) -> Dict[str, Any]:
        return (await self.lifecycle.stop(user_id, robot_id)).to_dict()

    async def stop_all(self, user_id: str) -> Dict[str, Any]:
        return (await self.lifecycle.stop_all(user_id)).to_dict()

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def balance(self, user_id: str, max_wait: Optional[float] = None) -> Dict[str, Any]:
        link = await self.ledger.get_link(user_id)
        if link is None:
            raise AccountNotLinkedError(user_id)
        wait = self.balance_max_wait if max_wait is None else max_wait
        return (await self.balances.get_balance(link, max_wait=wait)).to_dict()

    async def link_account(self, user_id: str, login: str, server: str) -> Dict[str, Any]:
        """
        Register credentials and resolve the remote account.

        Returns the link state; `remote_id` is None when no remote account
        matches yet (provision_account creates one).
        """
        link = await self.ledger.create_link(user_id, login, server)
        identity = await self.linker.resolve_link(user_id)
        state = None
        if identity is not None:
            state = await self.linker.ensure_deployed(identity, user_id=user_id)
        return {
            "account_id": link.account_id,
            "remote_id": identity.remote_id if identity else None,
            "deployment_state": state.value if state else None,
            "status": "resolved" if identity else "not_found",
        }

    async def provision_account(self, user_id: str, login: str, password: str, server: str) -> Dict[str, Any]:
        identity, state = await self.linker.provision(user_id, login, password, server)
        link = await self.ledger.get_link(user_id)
        return {
            "account_id": link.account_id if link else None,
            "remote_id": identity.remote_id,
            "deployment_state": state.value,
        }

    async def disconnect_account(self, user_id: str) -> Dict[str, Any]:
        """Stop every robot, undeploy the remote account and soft-delete the link."""
        link = await self.ledger.get_link(user_id)
        if link is None:
            raise AccountNotLinkedError(user_id)
        stopped = await self.lifecycle.stop_all(user_id)
        errors = list(stopped.close_errors)
        if link.remote_account_id is not None:
            try:
                await self.gateway.undeploy(link.remote_account_id)
            except BrokerNotFoundError:
                log_event(log, "undeploy_account_gone", remote_id=link.remote_account_id)
            except (BrokerError, RemoteTimeoutError) as exc:
                errors.append(f"undeploy: {exc}")
        await self.ledger.update_link_state(
            user_id,
            deployment_state=DeploymentState.UNDEPLOYED,
            connection_state=ConnectionState.DISCONNECTED,
            status=LinkStatus.DISCONNECTED,
        )
        await self.ledger.soft_delete_link(user_id)
        log_event(log, "account_disconnected", user_id=user_id, errors=errors)
        return {
            "robots_disabled": stopped.robots_disabled,
            "trades_closed": stopped.trades_closed,
            "errors": errors,
        }

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------

    async def trades(self, user_id: str, status: Optional[TradeStatus] = None) -> List[Trade]:
        return await self.ledger.list_trades(user_id, status=status)

    async def sync_trades(self, user_id: str) -> Dict[str, Any]:
        link = await self.ledger.get_link(user_id)
        if link is None:
            raise AccountNotLinkedError(user_id)
        if link.remote_account_id is None:
            await self.linker.require_link(user_id)
            link = await self.ledger.get_link(user_id)
        return (await self.trade_sync.sync_account(link)).to_dict()

    async def trade_stats(self, user_id: str) -> Dict[str, Any]:
        return compute_trade_stats(await self.ledger.list_trades(user_id)).to_dict()


def build_control_plane(
    cfg: "Settings",
    gateway: Optional["BrokerGateway"] = None,
    evaluator: Optional["SignalEvaluator"] = None,
    metrics: Optional["ControlMetrics"] = None,
    health: Optional["HealthChecker"] = None,
    ledger: Optional[LedgerStore] = None,
) -> ControlPlane:
    """Wire every component from Settings. Collaborators may be injected."""
    if gateway is None:
        gateway = MetaApiClient(
            token=cfg.metaapi_token or "",
            provisioning_url=cfg.provisioning_url,
            client_url=cfg.client_url,
            comment_prefix=cfg.order_comment_prefix,
            timeout=cfg.http_timeout,
        )
    ledger = ledger or LedgerStore(cfg.ledger_path)
    linker = AccountLinker(gateway, ledger)
    balances = BalanceSynchronizer(
        gateway, ledger, metrics=metrics, config=BalanceSyncConfig(max_wait=cfg.balance_max_wait),
    )
    reconciler = PositionReconciler(ReconcilerConfig(comment_prefix=cfg.order_comment_prefix))
    trade_sync = TradeSynchronizer(
        gateway,
        ledger,
        reconciler,
        metrics=metrics,
        config=TradeSyncConfig(history_window_days=cfg.history_window_days, fetch_timeout=cfg.close_timeout),
    )
    lifecycle = RobotLifecycleManager(
        ledger,
        linker,
        gateway,
        evaluator or NoopSignalEvaluator(),
        metrics=metrics,
        config=LifecycleConfig(
            comment_prefix=cfg.order_comment_prefix,
            max_concurrent_trades=cfg.max_concurrent_trades,
            close_timeout=cfg.close_timeout,
            order_timeout=cfg.order_timeout,
        ),
    )
    breakers = AccountBreakers(
        CircuitBreakerConfig(error_threshold=cfg.api_error_threshold, cooldown_sec=cfg.evaluation_interval * 2),
        metrics=metrics,
    )
    scheduler = RobotScheduler(
        ledger,
        lifecycle,
        balances,
        trade_sync,
        breakers,
        metrics=metrics,
        health=health,
        config=SchedulerConfig(
            evaluation_interval=cfg.evaluation_interval,
            balance_sync_interval=cfg.balance_sync_interval,
            reconcile_interval=cfg.reconcile_interval,
        ),
    )
    return ControlPlane(
        ledger=ledger,
        gateway=gateway,
        linker=linker,
        balances=balances,
        trade_sync=trade_sync,
        lifecycle=lifecycle,
        scheduler=scheduler,
        balance_max_wait=cfg.balance_max_wait,
    )
