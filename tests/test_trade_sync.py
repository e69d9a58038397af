"""
Tests for TradeSynchronizer and compute_trade_stats.
"""

from datetime import datetime, timezone

import pytest

from helpers import make_deal
from mt5control.core.errors import BrokerError
from mt5control.execution.reconciler import PositionReconciler, ReconcilerConfig
from mt5control.execution.trade_sync import TradeSynchronizer, compute_trade_stats
from mt5control.ledger.models import Direction, Trade, TradeStatus

NOW = datetime(2024, 3, 2, 12, 0, tzinfo=timezone.utc)


def _trade(trade_id, status=TradeStatus.OPEN, profit=0.0, commission=0.0, robot_id="r1"):
    return Trade(
        trade_id=trade_id,
        user_id="u1",
        account_id="acc-1",
        robot_id=robot_id,
        symbol="EURUSD",
        direction=Direction.BUY,
        volume=0.1,
        open_price=1.1,
        open_time=datetime(2024, 3, 1, tzinfo=timezone.utc),
        profit=profit,
        commission=commission,
        status=status,
    )


@pytest.fixture
def sync(gateway, ledger):
    reconciler = PositionReconciler(ReconcilerConfig(comment_prefix="mt5c"))
    return TradeSynchronizer(gateway, ledger, reconciler, clock=lambda: NOW)


async def _linked(ledger):
    await ledger.create_link("u1", "12345", "Broker-Live", account_id="acc-1")
    await ledger.set_remote_id("u1", "remote-a")
    return await ledger.get_link("u1")


class TestSyncAccount:
    @pytest.mark.asyncio
    async def test_history_converges_ledger(self, gateway, ledger, sync):
        link = await _linked(ledger)
        await ledger.record_open_trade(_trade("1", robot_id="r1"))
        gateway.deals["remote-a"] = [
            make_deal("d1", "1", "IN", comment="mt5c-r1"),
            make_deal("d2", "1", "OUT", side="sell", price=1.12, profit=20.0, minute=3),
            make_deal("d3", "2", "IN", side="sell", comment="mt5c-r2"),
        ]
        gateway.add_position("remote-a", "2", robot_id="r2")

        result = await sync.sync_account(link)

        assert result.deals == 3
        assert result.inserted == 1
        assert result.updated == 1
        closed = await ledger.get_trade("1")
        assert closed.status is TradeStatus.CLOSED
        assert closed.profit == pytest.approx(20.0)
        assert closed.robot_id == "r1"
        still_open = await ledger.get_trade("2")
        assert still_open.status is TradeStatus.OPEN
        assert still_open.robot_id == "r2"

    @pytest.mark.asyncio
    async def test_open_trade_missing_at_broker_is_closed(self, gateway, ledger, sync):
        link = await _linked(ledger)
        await ledger.record_open_trade(_trade("5"))
        await ledger.record_open_trade(_trade("6"))
        # Same symbol, only one still live
        gateway.add_position("remote-a", "6")

        result = await sync.sync_account(link)

        assert result.closed_missing == ["5"]
        trade = await ledger.get_trade("5")
        assert trade.status is TradeStatus.CLOSED
        assert trade.close_time == NOW
        assert (await ledger.get_trade("6")).status is TradeStatus.OPEN

    @pytest.mark.asyncio
    async def test_order_recorded_during_snapshot_stays_open(self, gateway, ledger, sync, monkeypatch):
        link = await _linked(ledger)
        take_snapshot = gateway.get_open_positions

        async def snapshot_then_order(remote_id):
            positions = await take_snapshot(remote_id)
            # An order lands after the broker answered but before the ledger is compared
            gateway.add_position(remote_id, "1001", robot_id="r1")
            await ledger.record_open_trade(_trade("1001"))
            return positions

        monkeypatch.setattr(gateway, "get_open_positions", snapshot_then_order)
        racing = await sync.sync_account(link)

        assert racing.closed_missing == []
        assert (await ledger.get_trade("1001")).status is TradeStatus.OPEN

        monkeypatch.setattr(gateway, "get_open_positions", take_snapshot)
        gateway.deals["remote-a"] = [make_deal("d1", "1001", "IN", comment="mt5c-r1")]
        await sync.sync_account(link)

        assert (await ledger.get_trade("1001")).status is TradeStatus.OPEN
        assert await ledger.count_open_trades("u1") == 1

    @pytest.mark.asyncio
    async def test_second_pass_changes_nothing(self, gateway, ledger, sync):
        link = await _linked(ledger)
        gateway.deals["remote-a"] = [
            make_deal("d1", "1", "IN"),
            make_deal("d2", "1", "OUT", side="sell", profit=5.0),
        ]

        await sync.sync_account(link)
        second = await sync.sync_account(link)

        assert second.inserted == 0
        assert second.updated == 0
        assert second.closed_missing == []

    @pytest.mark.asyncio
    async def test_window_start_passed_to_broker(self, gateway, ledger, sync):
        link = await _linked(ledger)

        await sync.sync_account(link)

        (remote_id, since), = gateway.calls_to("get_deal_history")
        assert remote_id == "remote-a"
        assert (NOW - since).days == 30

    @pytest.mark.asyncio
    async def test_remote_error_leaves_ledger_untouched(self, gateway, ledger, sync):
        link = await _linked(ledger)
        await ledger.record_open_trade(_trade("5"))
        gateway.deals_error = BrokerError("upstream 502", status_code=502)

        with pytest.raises(BrokerError):
            await sync.sync_account(link)

        assert (await ledger.get_trade("5")).status is TradeStatus.OPEN

    @pytest.mark.asyncio
    async def test_unresolved_link_rejected(self, ledger, sync):
        await ledger.create_link("u1", "12345", "Broker-Live")
        link = await ledger.get_link("u1")

        with pytest.raises(ValueError):
            await sync.sync_account(link)


class TestTradeStats:
    def test_empty(self):
        stats = compute_trade_stats([])

        assert stats.total_trades == 0
        assert stats.win_rate == 0.0

    def test_closed_trades_drive_profit_figures(self):
        trades = [
            _trade("1", TradeStatus.CLOSED, profit=30.0, commission=-1.0),
            _trade("2", TradeStatus.CLOSED, profit=-10.0),
            _trade("3", TradeStatus.CLOSED, profit=15.0),
            _trade("4", TradeStatus.OPEN, profit=100.0),
        ]

        stats = compute_trade_stats(trades).to_dict()

        assert stats["total_trades"] == 4
        assert stats["open_trades"] == 1
        assert stats["closed_trades"] == 3
        assert stats["winning_trades"] == 2
        assert stats["losing_trades"] == 1
        assert stats["total_profit"] == pytest.approx(34.0)
        assert stats["avg_profit"] == pytest.approx(11.33)
        assert stats["max_profit"] == pytest.approx(29.0)
        assert stats["max_loss"] == pytest.approx(-10.0)
        assert stats["win_rate"] == pytest.approx(66.67)

    def test_all_winners_has_zero_max_loss(self):
        stats = compute_trade_stats([_trade("1", TradeStatus.CLOSED, profit=5.0)])

        assert stats.max_loss == 0.0
        assert stats.win_rate == 100.0
