"""
Tests for the live trading loop: ticks, failure isolation and auto-pause.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from core.errors import DataValidationError, ExecutionError
from core.models import Bar, TradeAction
from core.state import BotStatus
from core.trading_loop import TradingLoop
from data.bar_feed import StaticBarFeed
from execution.port import ExecutionPort, SimulatedExecutionPort
from monitoring.logger import get_manager
from strategies.registry import get_strategy_config

SYMBOL = "BTC/USDT"
NOW = datetime(2024, 3, 1, tzinfo=timezone.utc)


def _bars(n=250, close=20_000.0):
    start = NOW - timedelta(hours=n)
    return [Bar(start + timedelta(hours=i), close, close, close, close, 1.0) for i in range(n)]


def _feed(n=250):
    return StaticBarFeed({SYMBOL: _bars(n)})


class FailingPort(ExecutionPort):
    def __init__(self):
        self.calls = 0

    async def buy(self, ctx, usd_amount):
        self.calls += 1
        raise ExecutionError("exchange rejected order")

    async def sell(self, ctx, asset_amount):
        self.calls += 1
        raise ExecutionError("exchange rejected order")


class SlowFeed(StaticBarFeed):
    def __init__(self, bars):
        super().__init__(bars)
        self.active = 0
        self.max_active = 0

    async def get_bars(self, symbol, timeframe, limit):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        await asyncio.sleep(0.01)
        self.active -= 1
        return await super().get_bars(symbol, timeframe, limit)


def _loop(feed=None, port=None, strategies=None, **kwargs):
    return TradingLoop(
        feed or _feed(),
        port or SimulatedExecutionPort(0.001, id_prefix="paper"),
        strategies or [get_strategy_config("fear-greed-moderate")],
        SYMBOL,
        10_000.0,
        known_ath=60_000.0,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_tick_buys_in_extreme_fear_and_updates_account():
    loop = _loop()
    [record] = await loop.tick(NOW)
    assert record.action is TradeAction.BUY
    assert record.amount == pytest.approx(2_250.0)

    account = loop.accounts["fear-greed-moderate"]
    assert account.position.cost_basis == pytest.approx(2_250.0)
    assert account.cash == pytest.approx(10_000.0 - 2_250.0 * 1.001)
    assert account.last_buy_time == NOW
    assert len(loop.trades) == 1
    assert loop.state.snapshot()["ticks"] == 1


@pytest.mark.asyncio
async def test_throttle_uses_tick_time():
    loop = _loop()
    await loop.tick(NOW)
    [second] = await loop.tick(NOW + timedelta(hours=1))
    assert second.action is TradeAction.HOLD
    [third] = await loop.tick(NOW + timedelta(hours=25))
    assert third.action is TradeAction.BUY


@pytest.mark.asyncio
async def test_failed_order_leaves_account_untouched():
    port = FailingPort()
    loop = _loop(port=port)
    account = loop.accounts["fear-greed-moderate"]
    before = account.to_dict()

    with pytest.raises(ExecutionError):
        await loop.tick(NOW)
    assert port.calls == 1
    assert account.to_dict() == before
    assert loop.trades == []


@pytest.mark.asyncio
async def test_buy_leaves_room_for_a_high_fee():
    port = SimulatedExecutionPort(0.02, id_prefix="paper")
    loop = _loop(port=port, strategies=[get_strategy_config("hodl")])
    await loop.tick(NOW)

    [trade] = loop.trades
    assert trade.value_usd == pytest.approx(10_000.0 / 1.02)
    assert trade.fee == pytest.approx(10_000.0 / 1.02 * 0.02)
    account = loop.accounts["hodl"]
    assert account.cash == pytest.approx(0.0, abs=1e-6)
    assert account.position.amount == pytest.approx(trade.amount)


@pytest.mark.asyncio
async def test_loop_pauses_after_consecutive_errors():
    loop = _loop(port=FailingPort(), interval_seconds=0, max_consecutive_errors=3)
    await asyncio.wait_for(loop.run(), timeout=5)
    assert loop.state.status is BotStatus.ERROR
    assert loop.state.consecutive_errors == 3
    assert "exchange rejected order" in loop.state.last_error


@pytest.mark.asyncio
async def test_stop_ends_run_after_current_tick():
    loop = _loop(interval_seconds=60)
    task = asyncio.create_task(loop.run())
    await asyncio.sleep(0.05)
    loop.stop()
    await asyncio.wait_for(task, timeout=1)
    assert loop.state.status is BotStatus.STOPPED
    assert loop.state.snapshot()["ticks"] == 1


@pytest.mark.asyncio
async def test_ticks_never_overlap():
    feed = SlowFeed({SYMBOL: _bars()})
    loop = _loop(feed=feed)
    await asyncio.gather(loop.tick(NOW), loop.tick(NOW + timedelta(hours=1)))
    assert feed.max_active == 1
    assert len(loop.decisions) == 2


@pytest.mark.asyncio
async def test_each_strategy_has_its_own_account_and_combined_snapshot():
    strategies = [
        get_strategy_config("hodl").with_overrides(allocation_percent=40),
        get_strategy_config("fear-greed-moderate").with_overrides(allocation_percent=60),
    ]
    loop = _loop(strategies=strategies)
    await loop.tick(NOW)

    assert loop.accounts["hodl"].initial_cash == pytest.approx(4_000.0)
    assert loop.accounts["fear-greed-moderate"].initial_cash == pytest.approx(6_000.0)
    assert loop.accounts["hodl"].position.cost_basis == pytest.approx(3_960.0)

    combined = loop.tracker.latest()
    assert combined.strategy_id is None
    assert combined.initial_value == pytest.approx(10_000.0)
    assert combined.total_value == pytest.approx(
        sum(a.total_value(20_000.0) for a in loop.accounts.values()))
    assert loop.tracker.strategies() == ["fear-greed-moderate", "hodl"]


@pytest.mark.asyncio
async def test_short_history_still_decides():
    loop = _loop(feed=_feed(30))
    [record] = await loop.tick(NOW)
    assert {s.factor for s in record.signals} == {"ath", "rsi"}


@pytest.mark.asyncio
async def test_empty_feed_is_an_error():
    loop = _loop(feed=StaticBarFeed({SYMBOL: []}, prices={SYMBOL: 1.0}))
    with pytest.raises(DataValidationError):
        await loop.tick(NOW)


@pytest.mark.asyncio
async def test_decisions_are_logged():
    manager = get_manager()
    manager.clear_recent()
    await _loop().tick(NOW)
    assert manager.get_recent(kind="decision")[0]["payload"]["action"] == "buy"
    assert manager.get_recent(kind="trade")[0]["payload"]["strategy_id"] == "fear-greed-moderate"


def test_duplicate_strategy_ids_rejected():
    cfg = get_strategy_config("dca")
    with pytest.raises(ValueError):
        _loop(strategies=[cfg, cfg])
