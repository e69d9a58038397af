"""
Tests for RobotLifecycleManager.

Tests cover:
- start is idempotent on the config row
- Orders tagged with the robot comment and recorded OPEN
- No order after stop, including a stop that lands mid-evaluation
- Per-robot close with partial failure
- stop_all: one bulk close, every OPEN trade closed
- Concurrent trade limit and symbol filter
- Retried stop reaches positions the ledger never recorded
- Deployment pending / unlinked account reported as errors
"""

from datetime import datetime, timezone

import pytest

from helpers import ScriptedEvaluator
from mt5control.accounts.linker import AccountLinker
from mt5control.core.errors import BrokerError, InvalidRobotIdError
from mt5control.ledger.models import Direction, StrategySettings, Trade, TradeStatus
from mt5control.monitoring.metrics import ControlMetrics
from mt5control.robots.lifecycle import LifecycleConfig, RobotLifecycleManager
from mt5control.robots.signals import Signal


def _signal(symbol="EURUSD", side=Direction.BUY, volume=0.1):
    return Signal(symbol=symbol, side=side, volume=volume, confidence=0.8, reason="scripted")


def _manager(gateway, ledger, evaluator, metrics=None, **config):
    cfg = LifecycleConfig(comment_prefix="mt5c", **config)
    return RobotLifecycleManager(ledger, AccountLinker(gateway, ledger), gateway, evaluator, metrics, cfg)


async def _link(gateway, ledger, state="DEPLOYED"):
    gateway.add_account("remote-a", "12345", "Broker-Live", state=state)
    await ledger.create_link("u1", "12345", "Broker-Live", account_id="acc-1")


async def _open_trade(ledger, trade_id, robot_id):
    await ledger.record_open_trade(Trade(
        trade_id=trade_id,
        user_id="u1",
        account_id="acc-1",
        robot_id=robot_id,
        symbol="EURUSD",
        direction=Direction.BUY,
        volume=0.1,
        open_price=1.1,
        open_time=datetime(2024, 3, 1, tzinfo=timezone.utc),
    ))


class TestStart:
    @pytest.mark.asyncio
    async def test_start_twice_keeps_one_config_row(self, gateway, ledger):
        await _link(gateway, ledger)
        manager = _manager(gateway, ledger, ScriptedEvaluator())

        await manager.start("u1", "r1")
        await manager.start("u1", "r1")

        rows = await ledger.list_robot_configs("u1")
        assert len(rows) == 1
        assert rows[0].enabled is True

    @pytest.mark.asyncio
    async def test_start_places_tagged_order_and_records_trade(self, gateway, ledger):
        await _link(gateway, ledger)
        metrics = ControlMetrics()
        manager = _manager(gateway, ledger, ScriptedEvaluator([_signal()]), metrics=metrics)

        result = await manager.start("u1", "r1")

        assert result.trades_executed == 1
        assert result.errors == []
        assert result.signals[0]["symbol"] == "EURUSD"
        (remote_id, order), = gateway.calls_to("place_order")
        assert remote_id == "remote-a"
        assert order.comment == "mt5c-r1"
        trade = await ledger.get_trade("1001")
        assert trade.status is TradeStatus.OPEN
        assert trade.robot_id == "r1"
        assert metrics.registry.get_sample_value(
            "mt5c_orders_placed_total", {"symbol": "EURUSD", "side": "buy"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_unlinked_user_gets_error_entry(self, gateway, ledger):
        manager = _manager(gateway, ledger, ScriptedEvaluator([_signal()]))

        result = await manager.start("u1", "r1")

        assert result.trades_executed == 0
        assert result.errors == ["no broker account linked"]
        assert gateway.calls_to("place_order") == []

    @pytest.mark.asyncio
    async def test_deployment_pending_is_reported_not_raised(self, gateway, ledger):
        await _link(gateway, ledger, state="UNDEPLOYED")
        evaluator = ScriptedEvaluator([_signal()])
        manager = _manager(gateway, ledger, evaluator)

        result = await manager.start("u1", "r1")

        assert result.trades_executed == 0
        assert len(result.errors) == 1
        assert "DEPLOYING" in result.errors[0]
        assert gateway.calls_to("deploy") == [("remote-a",)]
        assert evaluator.contexts == []

    @pytest.mark.asyncio
    async def test_concurrent_trade_limit(self, gateway, ledger):
        await _link(gateway, ledger)
        signals = [_signal("EURUSD"), _signal("GBPUSD"), _signal("USDJPY")]
        manager = _manager(gateway, ledger, ScriptedEvaluator(signals))
        settings = StrategySettings(max_concurrent_trades=2)

        result = await manager.start("u1", "r1", settings=settings)

        assert result.trades_executed == 2
        assert result.errors == ["USDJPY: max concurrent trades reached (2/2)"]
        assert await ledger.count_open_trades("u1") == 2

    @pytest.mark.asyncio
    async def test_symbol_filter_blocks_other_symbols(self, gateway, ledger):
        await _link(gateway, ledger)
        manager = _manager(gateway, ledger, ScriptedEvaluator([_signal("EURUSD"), _signal("XAUUSD")]))

        result = await manager.start("u1", "r1", settings=StrategySettings(symbols=["EURUSD"]))

        assert result.trades_executed == 1
        assert result.errors == ["XAUUSD: not in robot symbol filter (EURUSD)"]
        assert [order.symbol for _, order in gateway.calls_to("place_order")] == ["EURUSD"]

    @pytest.mark.asyncio
    async def test_robot_id_too_long_for_comment_is_rejected(self, gateway, ledger):
        await _link(gateway, ledger)
        manager = _manager(gateway, ledger, ScriptedEvaluator([_signal()]))

        with pytest.raises(InvalidRobotIdError):
            await manager.start("u1", "3f2b8c1e-5d4a-4b6f-9e7c-1a2b3c4d5e6f")

        assert await ledger.list_robot_configs("u1") == []
        assert gateway.calls_to("place_order") == []

    @pytest.mark.asyncio
    async def test_rejected_order_is_an_error_entry(self, gateway, ledger):
        await _link(gateway, ledger)
        gateway.order_error = BrokerError("TRADE_RETCODE_NO_MONEY")
        manager = _manager(gateway, ledger, ScriptedEvaluator([_signal()]))

        result = await manager.start("u1", "r1")

        assert result.trades_executed == 0
        assert result.errors == ["EURUSD: TRADE_RETCODE_NO_MONEY"]
        assert await ledger.count_open_trades("u1") == 0


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_closes_tagged_positions_and_trades(self, gateway, ledger):
        await _link(gateway, ledger)
        manager = _manager(gateway, ledger, ScriptedEvaluator([_signal()]))
        await manager.start("u1", "r1")
        gateway.add_position("remote-a", "manual-1", comment="by hand")

        result = await manager.stop("u1", "r1")

        assert result.positions_closed == 1
        assert result.trades_closed == 1
        assert result.close_errors == []
        assert gateway.calls_to("close_all_positions") == [("remote-a", "r1")]
        assert [p.id for p in gateway.positions["remote-a"]] == ["manual-1"]
        assert (await ledger.get_trade("1001")).status is TradeStatus.CLOSED

    @pytest.mark.asyncio
    async def test_stop_again_reissues_close_without_errors(self, gateway, ledger):
        await _link(gateway, ledger)
        manager = _manager(gateway, ledger, ScriptedEvaluator())
        await manager.start("u1", "r1")
        await manager.stop("u1", "r1")
        gateway.calls.clear()

        result = await manager.stop("u1", "r1")

        assert result.to_dict() == {"trades_closed": 0, "positions_closed": 0, "close_errors": []}
        assert gateway.calls_to("close_all_positions") == [("remote-a", "r1")]
        assert gateway.calls_to("place_order") == []

    @pytest.mark.asyncio
    async def test_retry_after_failed_close_reaches_unrecorded_position(self, gateway, ledger):
        await _link(gateway, ledger)
        manager = _manager(gateway, ledger, ScriptedEvaluator())
        await manager.start("u1", "r1")
        # Order that timed out at placement: live at the broker, unknown to the ledger
        gateway.add_position("remote-a", "777", robot_id="r1")
        gateway.close_error = BrokerError("broker 503", status_code=503)

        first = await manager.stop("u1", "r1")
        gateway.close_error = None
        second = await manager.stop("u1", "r1")

        assert first.close_errors == ["broker 503"]
        assert second.positions_closed == 1
        assert second.close_errors == []
        assert len(gateway.calls_to("close_all_positions")) == 2
        assert gateway.positions["remote-a"] == []

    @pytest.mark.asyncio
    async def test_untagged_live_position_keeps_trade_open(self, gateway, ledger):
        await _link(gateway, ledger)
        manager = _manager(gateway, ledger, ScriptedEvaluator())
        await manager.start("u1", "r1")
        await _open_trade(ledger, "900", "r1")
        await _open_trade(ledger, "901", "r1")
        # Broker kept a truncated comment, so the tagged close cannot match it
        gateway.add_position("remote-a", "900", comment="mt5c-r1-trunc")

        result = await manager.stop("u1", "r1")

        assert result.positions_closed == 0
        assert result.trades_closed == 1
        assert result.close_errors == ["900: still open at broker without this robot's tag"]
        assert (await ledger.get_trade("900")).status is TradeStatus.OPEN
        assert (await ledger.get_trade("901")).status is TradeStatus.CLOSED

    @pytest.mark.asyncio
    async def test_stop_unknown_robot_creates_nothing(self, gateway, ledger):
        await _link(gateway, ledger)
        manager = _manager(gateway, ledger, ScriptedEvaluator())

        result = await manager.stop("u1", "ghost")

        assert result.trades_closed == 0
        assert await ledger.list_robot_configs("u1") == []

    @pytest.mark.asyncio
    async def test_no_order_after_stop(self, gateway, ledger):
        await _link(gateway, ledger)
        manager = _manager(gateway, ledger, ScriptedEvaluator([_signal()]))
        await manager.start("u1", "r1")
        await manager.stop("u1", "r1")
        gateway.calls.clear()

        result = await manager.evaluate_once("u1", "r1")

        assert result.trades_executed == 0
        assert gateway.calls_to("place_order") == []

    @pytest.mark.asyncio
    async def test_stop_landing_during_evaluation_blocks_the_order(self, gateway, ledger):
        await _link(gateway, ledger)

        async def stop_mid_evaluation(context):
            await ledger.set_robot_enabled(context.user_id, context.robot_id, False)

        manager = _manager(gateway, ledger, ScriptedEvaluator([_signal()], before_return=stop_mid_evaluation))

        result = await manager.start("u1", "r1")

        assert result.trades_executed == 0
        assert gateway.calls_to("place_order") == []

    @pytest.mark.asyncio
    async def test_partial_close_leaves_failed_position_open(self, gateway, ledger):
        await _link(gateway, ledger)
        manager = _manager(gateway, ledger, ScriptedEvaluator([_signal("EURUSD"), _signal("GBPUSD")]))
        await manager.start("u1", "r1")
        gateway.fail_close["1002"] = "market closed"

        result = await manager.stop("u1", "r1")

        assert result.positions_closed == 1
        assert result.trades_closed == 1
        assert result.close_errors == ["1002: market closed"]
        assert (await ledger.get_trade("1001")).status is TradeStatus.CLOSED
        assert (await ledger.get_trade("1002")).status is TradeStatus.OPEN

    @pytest.mark.asyncio
    async def test_close_timeout_leaves_trades_open(self, gateway, ledger):
        await _link(gateway, ledger)
        manager = _manager(gateway, ledger, ScriptedEvaluator([_signal()]), close_timeout=0.05)
        await manager.start("u1", "r1")
        gateway.close_delay = 1.0

        result = await manager.stop("u1", "r1")

        assert result.trades_closed == 0
        assert len(result.close_errors) == 1
        assert "timed out" in result.close_errors[0]
        assert (await ledger.get_trade("1001")).status is TradeStatus.OPEN
        assert not await ledger.is_robot_enabled("u1", "r1")


class TestStopAll:
    @pytest.mark.asyncio
    async def test_one_bulk_close_for_all_robots(self, gateway, ledger):
        await _link(gateway, ledger)
        await ledger.upsert_robot_config("u1", "A", enabled=True)
        await ledger.upsert_robot_config("u1", "B", enabled=True)
        gateway.add_position("remote-a", "p1", robot_id="A")
        gateway.add_position("remote-a", "p2", robot_id="A")
        gateway.add_position("remote-a", "p3", comment="manual")
        await _open_trade(ledger, "p1", "A")
        await _open_trade(ledger, "p2", "A")
        manager = _manager(gateway, ledger, ScriptedEvaluator())

        result = await manager.stop_all("u1")

        assert result.robots_disabled == 2
        assert result.positions_closed == 3
        assert result.trades_closed == 2
        assert result.close_errors == []
        assert gateway.calls_to("close_all_positions") == [("remote-a", None)]
        assert gateway.positions["remote-a"] == []
        assert await ledger.list_robot_configs("u1", enabled_only=True) == []

    @pytest.mark.asyncio
    async def test_remote_failure_still_closes_ledger(self, gateway, ledger):
        await _link(gateway, ledger)
        await ledger.upsert_robot_config("u1", "A", enabled=True)
        await _open_trade(ledger, "p1", "A")
        gateway.close_error = BrokerError("gateway unavailable", status_code=503)
        metrics = ControlMetrics()
        manager = _manager(gateway, ledger, ScriptedEvaluator(), metrics=metrics)

        result = await manager.stop_all("u1")

        assert result.trades_closed == 1
        assert result.close_errors == ["gateway unavailable"]
        assert (await ledger.get_trade("p1")).status is TradeStatus.CLOSED
        assert metrics.registry.get_sample_value("mt5c_close_errors_total") == 1.0

    @pytest.mark.asyncio
    async def test_stop_all_is_repeatable(self, gateway, ledger):
        await _link(gateway, ledger)
        await ledger.upsert_robot_config("u1", "A", enabled=True)
        manager = _manager(gateway, ledger, ScriptedEvaluator())

        await manager.stop_all("u1")
        second = await manager.stop_all("u1")

        assert second.robots_disabled == 0
        assert second.trades_closed == 0
