import logging
from datetime import datetime, timedelta, timezone

import pytest

from core.models import MarketConditions, Regime
from core.state import BotStatus, Environment, LoopState
from execution.ledger import PortfolioAccount
from monitoring.logger import LoggerManager, scrub_secrets
from monitoring.metrics import PerformanceTracker

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _market(price):
    return MarketConditions(price, 50.0, None, None, -10.0, Regime.NEUTRAL, 0, T0)


class ListHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


def test_scrub_secrets_redacts_nested_keys():
    payload = {"exchange": {"apiKey": "abc", "secret": "xyz", "id": "binance"}, "token": "t", "n": 1}
    scrubbed = scrub_secrets(payload)
    assert scrubbed["exchange"]["secret"] == "<REDACTED>"
    assert scrubbed["exchange"]["id"] == "binance"
    assert scrubbed["token"] == "<REDACTED>"
    assert scrubbed["n"] == 1
    assert payload["token"] == "t"


def test_holds_log_at_debug_trades_at_info():
    manager = LoggerManager(name="test.monitor.levels")
    manager.configure(level="DEBUG", console=False)
    handler = ListHandler()
    manager.add_handler(handler)

    manager.log_decision({"strategy_id": "dca", "action": "hold"})
    manager.log_decision({"strategy_id": "dca", "action": "buy"})
    manager.log_trade({"strategy_id": "dca", "action": "buy"})
    manager.log_error("loop.tick_failed", "boom", {"password": "p"})

    assert [r.levelno for r in handler.records] == [logging.DEBUG, logging.INFO, logging.INFO, logging.ERROR]
    assert handler.records[-1].payload == {"password": "<REDACTED>"}
    assert [r["kind"] for r in manager.get_recent()] == ["error", "trade", "decision", "decision"]
    assert len(manager.get_recent(limit=1, kind="decision")) == 1


def test_rotating_file_handler(tmp_path):
    manager = LoggerManager(name="test.monitor.file")
    log_file = tmp_path / "logs" / "engine.log"
    manager.configure(level="INFO", log_file=str(log_file), console=False)
    manager.log_event("loop.start", {"symbol": "BTC/USDT"})
    for h in manager.get_logger().handlers:
        h.flush()
    assert 'loop.start {"symbol":"BTC/USDT"}' in log_file.read_text(encoding="utf-8")


def test_tracker_per_strategy_and_combined():
    a = PortfolioAccount("a", 1_000.0)
    b = PortfolioAccount("b", 3_000.0)
    a.apply_buy_fill(1.0, 500.0, 0.5, T0)

    tracker = PerformanceTracker()
    snap = tracker.record(a, _market(600.0), T0)
    assert snap.unrealized_profit == pytest.approx(100.0)
    assert snap.return_percent == pytest.approx((499.5 + 600.0 - 1_000.0) / 1_000.0 * 100)

    combined = tracker.record_combined([a, b], _market(600.0), T0)
    assert combined.strategy_id is None
    assert combined.initial_value == 4_000.0
    assert combined.total_value == pytest.approx(499.5 + 600.0 + 3_000.0)
    assert tracker.strategies() == ["a"]


def test_tracker_drawdown_and_retention():
    account = PortfolioAccount("a", 0.0)
    account.cash = 100.0
    tracker = PerformanceTracker(retention=3)
    for i, cash in enumerate([100.0, 120.0, 90.0, 110.0]):
        account.cash = cash
        tracker.record(account, _market(1.0), T0 + timedelta(hours=i))
    assert len(tracker.history("a")) == 3
    assert tracker.max_drawdown("a") == pytest.approx(25.0)
    assert tracker.export("a")[0]["total_value"] == 120.0


def test_loop_state_trips_after_max_errors():
    state = LoopState(Environment.PAPER, max_consecutive_errors=2)
    state.set_status(BotStatus.RUNNING, "start")
    assert state.record_error("first") is False
    state.record_success(T0)
    assert state.consecutive_errors == 0
    assert state.record_error("a") is False
    assert state.record_error("b") is True
    assert state.status is BotStatus.ERROR
    assert state.snapshot()["last_error"] == "b"
    assert len(state.history()) == 2

    with pytest.raises(ValueError):
        LoopState(max_consecutive_errors=0)
