"""
BalanceSynchronizer: read-through cache of balance and equity.

The cache lives on the account link row (balance, equity, currency,
last_sync). A live read is bounded by max_wait; on expiry the in-flight fetch
is cancelled and the cached row is served with source="cached". Remote
errors are served the same way. Neither is an error for the caller.

Ordering:
    last_sync is the time the fetch STARTED. The ledger only accepts a write
    whose last_sync is newer than the stored one, so an older fetch that
    completes after a newer one cannot regress the cache.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set, TYPE_CHECKING

from mt5control.core.errors import BrokerError, RemoteTimeoutError
from mt5control.core.utils import bounded

if TYPE_CHECKING:
    from mt5control.broker.types import BrokerGateway
    from mt5control.ledger.models import BrokerAccountLink
    from mt5control.ledger.store import LedgerStore
    from mt5control.monitoring.metrics import ControlMetrics

log = logging.getLogger("mt5control")

SOURCE_LIVE = "live"
SOURCE_CACHED = "cached"


@dataclass
class BalanceSnapshot:
    balance: float
    equity: float
    currency: Optional[str]
    source: str
    last_sync: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "balance": self.balance,
            "equity": self.equity,
            "currency": self.currency,
            "source": self.source,
            "last_sync": self.last_sync,
        }


@dataclass
class BalanceSyncConfig:
    # Default hard deadline for get_balance
    max_wait: float = 3.0
    # Floor for ledger reads and writes once max_wait is spent
    ledger_grace: float = 0.05
    log_event_callback: Optional[Callable[..., None]] = None


class BalanceSynchronizer:
    def __init__(
        self,
        gateway: "BrokerGateway",
        ledger: "LedgerStore",
        metrics: Optional["ControlMetrics"] = None,
        config: Optional[BalanceSyncConfig] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.gateway = gateway
        self.ledger = ledger
        self.metrics = metrics
        self.config = config or BalanceSyncConfig()
        self._clock = clock
        self._log_event = self.config.log_event_callback or self._default_log
        self._pending_writes: Set["asyncio.Future[bool]"] = set()

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = logging.WARNING if event in ("balance_fetch_timeout", "balance_fetch_error") else logging.INFO
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    async def get_balance(self, link: "BrokerAccountLink", max_wait: Optional[float] = None) -> BalanceSnapshot:
        """
        Live balance bounded by max_wait, cached values otherwise.

        The deadline covers the whole call. A cache write still running when
        it expires completes in the background and the live values are
        returned; a cache read that cannot finish within `ledger_grace` falls
        back to the fields on `link`.

        Args:
            link: Account link (its cached fields are the fallback)
            max_wait: Hard deadline in seconds (config default if None)
        """
        if link.remote_account_id is None:
            return self._cached(link)

        deadline = self.config.max_wait if max_wait is None else max_wait
        loop = asyncio.get_running_loop()
        expires = loop.time() + deadline
        started = self._clock()
        try:
            info = await bounded(
                self.gateway.get_account_info(link.remote_account_id),
                deadline,
                "get_account_info",
            )
        except RemoteTimeoutError:
            self._log_event(
                "balance_fetch_timeout",
                account_id=link.account_id,
                max_wait=deadline,
            )
            return await self._fallback(link, expires)
        except BrokerError as exc:
            self._log_event(
                "balance_fetch_error",
                account_id=link.account_id,
                err=str(exc),
            )
            return await self._fallback(link, expires)

        if self.metrics:
            self.metrics.remote_call_latency.labels(operation="get_account_info").observe(
                max(0.0, self._clock() - started)
            )

        write = asyncio.ensure_future(self.ledger.update_balance(
            link.user_id,
            balance=info.balance,
            equity=info.equity,
            currency=info.currency,
            synced_at=started,
        ))
        self._pending_writes.add(write)
        write.add_done_callback(self._write_done)
        try:
            applied = await asyncio.wait_for(asyncio.shield(write), timeout=self._remaining(expires))
        except asyncio.TimeoutError:
            self._log_event("balance_write_deferred", account_id=link.account_id, started=started)
            applied = True

        if not applied:
            # A newer fetch already landed; serve what the ledger holds
            self._log_event("balance_write_superseded", account_id=link.account_id, started=started)
            return await self._fallback(link, expires, source=SOURCE_LIVE)

        if self.metrics:
            self.metrics.balance_reads.labels(source=SOURCE_LIVE).inc()
        return BalanceSnapshot(
            balance=info.balance,
            equity=info.equity,
            currency=info.currency or link.currency,
            source=SOURCE_LIVE,
            last_sync=started,
        )

    async def refresh(self, link: "BrokerAccountLink") -> BalanceSnapshot:
        """Scheduled refresh: same path, without a user-facing deadline override."""
        return await self.get_balance(link)

    async def wait_pending_writes(self) -> None:
        """Wait for cache writes that outlived their get_balance call."""
        if self._pending_writes:
            await asyncio.gather(*self._pending_writes, return_exceptions=True)

    def _remaining(self, expires: float) -> float:
        return max(expires - asyncio.get_running_loop().time(), self.config.ledger_grace)

    def _write_done(self, write: "asyncio.Future[bool]") -> None:
        self._pending_writes.discard(write)
        if not write.cancelled() and write.exception() is not None:
            log.error(json.dumps({"event": "balance_write_failed", "err": str(write.exception())}))

    async def _fallback(
        self,
        link: "BrokerAccountLink",
        expires: float,
        source: str = SOURCE_CACHED,
    ) -> BalanceSnapshot:
        try:
            fresh = await asyncio.wait_for(self.ledger.get_link(link.user_id), timeout=self._remaining(expires))
        except asyncio.TimeoutError:
            fresh = None
        return self._cached(fresh or link, source=source)

    def _cached(self, link: "BrokerAccountLink", source: str = SOURCE_CACHED) -> BalanceSnapshot:
        if self.metrics:
            self.metrics.balance_reads.labels(source=source).inc()
        return BalanceSnapshot(
            balance=link.balance,
            equity=link.equity,
            currency=link.currency,
            source=source,
            last_sync=link.last_sync,
        )
