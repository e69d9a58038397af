"""
LedgerStore: persisted accounts, robot configs and trades.

Architecture:
    LedgerFile is the synchronous JSON layer (temp file + atomic replace).
    LedgerStore owns the in-memory tables and exposes async methods that
    mutate them under one asyncio.Lock and write the whole document through
    run_in_executor. `path=None` keeps everything in memory (tests, dry runs).

    Document layout:
        {
          "version": 1,
          "accounts": {user_id: BrokerAccountLink},
          "robot_configs": {"user:robot": RobotConfig},
          "trades": {position_id: Trade}
        }

Thread Safety:
    Every read and write goes through the lock, so a method observes and
    produces a consistent snapshot. Returned records are copies; mutating
    them does not touch the ledger.

Trade write rules:
    - Status never moves CLOSED -> OPEN.
    - A known robot_id is never replaced by None.
    - An incomplete record (truncated history) never overwrites a complete one.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from mt5control.core.errors import AccountNotLinkedError, LinkResolutionError
from mt5control.ledger.models import (
    BrokerAccountLink,
    ConnectionState,
    DeploymentState,
    LinkStatus,
    RobotConfig,
    StrategySettings,
    Trade,
    TradeStatus,
    robot_key,
)

log = logging.getLogger("mt5control")

LEDGER_VERSION = 1


class LedgerFile:
    """Synchronous JSON persistence for the ledger document."""

    def __init__(self, path: str) -> None:
        self.path = Path(path)
        self.tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            return json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            log.error(f"ledger_load_error:{exc}")
            raise

    def save(self, data: Dict[str, Any]) -> None:
        try:
            self.tmp.write_text(json.dumps(data, indent=2, sort_keys=True))
            self.tmp.replace(self.path)
        except OSError as exc:
            log.error(f"ledger_save_error:{exc}")
            raise


@dataclass
class ApplyResult:
    """Outcome of writing a batch of reconciled trades."""
    inserted: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)

    @property
    def changed(self) -> int:
        return len(self.inserted) + len(self.updated)


class LedgerStore:
    """Async ledger over LedgerFile. See module docstring."""

    def __init__(self, path: Optional[str] = None, clock: Callable[[], float] = time.time) -> None:
        self._file = LedgerFile(path) if path else None
        self._clock = clock
        self._lock = asyncio.Lock()
        self._accounts: Dict[str, BrokerAccountLink] = {}
        self._robots: Dict[str, RobotConfig] = {}
        self._trades: Dict[str, Trade] = {}

    @property
    def persistent(self) -> bool:
        return self._file is not None

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def load(self) -> None:
        """Load the document from disk. No-op for in-memory ledgers."""
        if self._file is None:
            return
        async with self._lock:
            loop = asyncio.get_running_loop()
            data = await loop.run_in_executor(None, self._file.load)
            self._accounts = {
                k: BrokerAccountLink.from_dict(v) for k, v in data.get("accounts", {}).items()
            }
            self._robots = {
                k: RobotConfig.from_dict(v) for k, v in data.get("robot_configs", {}).items()
            }
            self._trades = {k: Trade.from_dict(v) for k, v in data.get("trades", {}).items()}
        log.info(json.dumps({
            "event": "ledger_loaded",
            "accounts": len(self._accounts),
            "robot_configs": len(self._robots),
            "trades": len(self._trades),
        }))

    def _document(self) -> Dict[str, Any]:
        return {
            "version": LEDGER_VERSION,
            "accounts": {k: v.to_dict() for k, v in self._accounts.items()},
            "robot_configs": {k: v.to_dict() for k, v in self._robots.items()},
            "trades": {k: v.to_dict() for k, v in self._trades.items()},
        }

    async def _persist(self) -> None:
        # Caller holds self._lock
        if self._file is None:
            return
        data = self._document()
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, lambda: self._file.save(data))

    # ------------------------------------------------------------------
    # Account links
    # ------------------------------------------------------------------

    async def create_link(
        self,
        user_id: str,
        login: str,
        server: str,
        account_id: Optional[str] = None,
    ) -> BrokerAccountLink:
        """
        Register broker credentials for a user.

        Re-registering the same (login, server) returns the existing link.
        A different account requires disconnecting the current one first.
        """
        login = str(login)
        async with self._lock:
            existing = self._accounts.get(user_id)
            if existing is not None and existing.is_active:
                if existing.login == login and existing.server == server:
                    return copy.deepcopy(existing)
                raise ValueError(
                    f"user {user_id} already has an active account link "
                    f"({existing.login}@{existing.server}); disconnect it first"
                )
            link = BrokerAccountLink(
                account_id=account_id or f"acc-{uuid.uuid4().hex[:12]}",
                user_id=user_id,
                login=login,
                server=server,
                created_at=self._clock(),
            )
            self._accounts[user_id] = link
            await self._persist()
            return copy.deepcopy(link)

    async def get_link(self, user_id: str, include_deleted: bool = False) -> Optional[BrokerAccountLink]:
        async with self._lock:
            link = self._accounts.get(user_id)
            if link is None or (not link.is_active and not include_deleted):
                return None
            return copy.deepcopy(link)

    async def get_link_by_account(self, account_id: str) -> Optional[BrokerAccountLink]:
        async with self._lock:
            for link in self._accounts.values():
                if link.account_id == account_id and link.is_active:
                    return copy.deepcopy(link)
            return None

    async def list_links(self) -> List[BrokerAccountLink]:
        """Active links in user_id order."""
        async with self._lock:
            return [
                copy.deepcopy(self._accounts[k])
                for k in sorted(self._accounts)
                if self._accounts[k].is_active
            ]

    async def set_remote_id(self, user_id: str, remote_id: str) -> BrokerAccountLink:
        """
        Persist the resolved remote account id.

        Writing the same id again is a no-op. A different id is never written
        over an existing one; LinkResolutionError(reason="conflict") is raised.
        """
        async with self._lock:
            link = self._require_link(user_id)
            if link.remote_account_id == remote_id:
                return copy.deepcopy(link)
            if link.remote_account_id is not None:
                raise LinkResolutionError(
                    link.login,
                    link.server,
                    "conflict",
                    candidates=[link.remote_account_id, remote_id],
                )
            link.remote_account_id = remote_id
            await self._persist()
            return copy.deepcopy(link)

    async def update_link_state(
        self,
        user_id: str,
        *,
        deployment_state: Optional[DeploymentState] = None,
        connection_state: Optional[ConnectionState] = None,
        status: Optional[LinkStatus] = None,
    ) -> BrokerAccountLink:
        async with self._lock:
            link = self._require_link(user_id)
            if deployment_state is not None:
                link.deployment_state = deployment_state
            if connection_state is not None:
                link.connection_state = connection_state
            if status is not None:
                link.status = status
            await self._persist()
            return copy.deepcopy(link)

    async def update_balance(
        self,
        user_id: str,
        *,
        balance: float,
        equity: float,
        currency: Optional[str],
        synced_at: float,
    ) -> bool:
        """
        Compare-and-set balance write.

        Balance and equity are written together, and only when `synced_at`
        (the fetch start time) is newer than the stored last_sync, so an
        older fetch that finishes late cannot regress the cache.

        Returns:
            True if the values were written
        """
        async with self._lock:
            link = self._accounts.get(user_id)
            if link is None or not link.is_active:
                return False
            if link.last_sync is not None and synced_at <= link.last_sync:
                return False
            link.balance = balance
            link.equity = equity
            if currency:
                link.currency = currency
            link.last_sync = synced_at
            await self._persist()
            return True

    async def soft_delete_link(self, user_id: str) -> bool:
        async with self._lock:
            link = self._accounts.get(user_id)
            if link is None or not link.is_active:
                return False
            link.deleted_at = self._clock()
            link.status = LinkStatus.DISCONNECTED
            link.connection_state = ConnectionState.DISCONNECTED
            await self._persist()
            return True

    def _require_link(self, user_id: str) -> BrokerAccountLink:
        link = self._accounts.get(user_id)
        if link is None or not link.is_active:
            raise AccountNotLinkedError(user_id)
        return link

    # ------------------------------------------------------------------
    # Robot configs
    # ------------------------------------------------------------------

    async def upsert_robot_config(
        self,
        user_id: str,
        robot_id: str,
        enabled: bool,
        settings: Optional[StrategySettings] = None,
    ) -> Tuple[RobotConfig, bool]:
        """
        Create or update the (user, robot) row.

        Returns:
            (config, created) where created is True for a new row
        """
        key = robot_key(user_id, robot_id)
        async with self._lock:
            cfg = self._robots.get(key)
            created = cfg is None
            if cfg is None:
                cfg = RobotConfig(user_id=user_id, robot_id=robot_id)
                self._robots[key] = cfg
            cfg.enabled = enabled
            if settings is not None:
                cfg.settings = copy.deepcopy(settings)
            cfg.updated_at = self._clock()
            await self._persist()
            return copy.deepcopy(cfg), created

    async def set_robot_enabled(self, user_id: str, robot_id: str, enabled: bool) -> Optional[bool]:
        """
        Flip the enabled flag on an existing row.

        Returns:
            Previous flag, or None if the row does not exist (no row is created)
        """
        key = robot_key(user_id, robot_id)
        async with self._lock:
            cfg = self._robots.get(key)
            if cfg is None:
                return None
            previous = cfg.enabled
            if previous != enabled:
                cfg.enabled = enabled
                cfg.updated_at = self._clock()
                await self._persist()
            return previous

    async def disable_all_robots(self, user_id: str) -> List[str]:
        """Disable every robot of a user in one write. Returns the ids that were enabled."""
        async with self._lock:
            disabled = []
            now = self._clock()
            for key in sorted(self._robots):
                cfg = self._robots[key]
                if cfg.user_id == user_id and cfg.enabled:
                    cfg.enabled = False
                    cfg.updated_at = now
                    disabled.append(cfg.robot_id)
            if disabled:
                await self._persist()
            return disabled

    async def get_robot_config(self, user_id: str, robot_id: str) -> Optional[RobotConfig]:
        async with self._lock:
            cfg = self._robots.get(robot_key(user_id, robot_id))
            return copy.deepcopy(cfg) if cfg is not None else None

    async def is_robot_enabled(self, user_id: str, robot_id: str) -> bool:
        async with self._lock:
            cfg = self._robots.get(robot_key(user_id, robot_id))
            return bool(cfg and cfg.enabled)

    async def list_robot_configs(self, user_id: Optional[str] = None, enabled_only: bool = False) -> List[RobotConfig]:
        async with self._lock:
            out = []
            for key in sorted(self._robots):
                cfg = self._robots[key]
                if user_id is not None and cfg.user_id != user_id:
                    continue
                if enabled_only and not cfg.enabled:
                    continue
                out.append(copy.deepcopy(cfg))
            return out

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------

    async def record_open_trade(self, trade: Trade) -> bool:
        """Insert a freshly placed trade. Returns False if the id already exists."""
        async with self._lock:
            if trade.trade_id in self._trades:
                return False
            self._trades[trade.trade_id] = copy.deepcopy(trade)
            await self._persist()
            return True

    async def apply_trades(self, trades: Iterable[Trade]) -> ApplyResult:
        """Upsert reconciled trades by position id (see write rules above)."""
        result = ApplyResult()
        async with self._lock:
            for incoming in trades:
                existing = self._trades.get(incoming.trade_id)
                if existing is None:
                    self._trades[incoming.trade_id] = copy.deepcopy(incoming)
                    result.inserted.append(incoming.trade_id)
                    continue
                merged = _merge_trade(existing, incoming)
                if merged.to_dict() == existing.to_dict():
                    result.unchanged.append(incoming.trade_id)
                else:
                    self._trades[incoming.trade_id] = merged
                    result.updated.append(incoming.trade_id)
            if result.changed:
                await self._persist()
        return result

    async def close_open_trades(
        self,
        user_id: str,
        robot_id: Optional[str] = None,
        skip_ids: Iterable[str] = (),
        close_time: Optional[datetime] = None,
    ) -> List[str]:
        """
        Mark OPEN trades CLOSED.

        Args:
            user_id: Owner
            robot_id: Only this robot's trades; None closes every robot's
            skip_ids: Position ids to leave OPEN (close failed remotely)
            close_time: Recorded close time when none is known yet

        Returns:
            Ids of trades transitioned to CLOSED
        """
        skip = {str(s) for s in skip_ids}
        async with self._lock:
            closed = []
            for trade_id in sorted(self._trades):
                trade = self._trades[trade_id]
                if trade.user_id != user_id or trade.status is not TradeStatus.OPEN:
                    continue
                if robot_id is not None and trade.robot_id != robot_id:
                    continue
                if trade_id in skip:
                    continue
                trade.status = TradeStatus.CLOSED
                if trade.close_time is None:
                    trade.close_time = close_time
                closed.append(trade_id)
            if closed:
                await self._persist()
            return closed

    async def mark_trades_closed(self, trade_ids: Iterable[str], close_time: Optional[datetime] = None) -> List[str]:
        """Mark the given OPEN trades CLOSED. Unknown or already closed ids are ignored."""
        async with self._lock:
            closed = []
            for trade_id in trade_ids:
                trade = self._trades.get(str(trade_id))
                if trade is None or trade.status is not TradeStatus.OPEN:
                    continue
                trade.status = TradeStatus.CLOSED
                if trade.close_time is None:
                    trade.close_time = close_time
                closed.append(trade.trade_id)
            if closed:
                await self._persist()
            return closed

    async def get_trade(self, trade_id: str) -> Optional[Trade]:
        async with self._lock:
            trade = self._trades.get(trade_id)
            return copy.deepcopy(trade) if trade is not None else None

    async def list_trades(self, user_id: str, status: Optional[TradeStatus] = None) -> List[Trade]:
        """User's trades, newest open_time first (ties by trade id)."""
        async with self._lock:
            rows = [
                copy.deepcopy(t) for t in self._trades.values()
                if t.user_id == user_id and (status is None or t.status is status)
            ]
        rows.sort(key=lambda t: t.trade_id)
        rows.sort(key=lambda t: t.open_time.timestamp() if t.open_time else float("-inf"), reverse=True)
        return rows

    async def count_open_trades(self, user_id: str, robot_id: Optional[str] = None) -> int:
        async with self._lock:
            return sum(
                1 for t in self._trades.values()
                if t.user_id == user_id
                and t.status is TradeStatus.OPEN
                and (robot_id is None or t.robot_id == robot_id)
            )


def _merge_trade(existing: Trade, incoming: Trade) -> Trade:
    if existing.status is TradeStatus.CLOSED and incoming.status is TradeStatus.OPEN:
        return copy.deepcopy(existing)
    if incoming.incomplete and not existing.incomplete:
        merged = copy.deepcopy(existing)
        if incoming.status is TradeStatus.CLOSED:
            merged.status = TradeStatus.CLOSED
            merged.close_price = incoming.close_price
            merged.close_time = incoming.close_time
        return merged
    merged = copy.deepcopy(incoming)
    if merged.robot_id is None:
        merged.robot_id = existing.robot_id
    return merged
