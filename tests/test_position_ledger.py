"""
Unit tests for cost-basis accounting in execution.ledger.
"""

from datetime import datetime, timezone

import pytest

from core.errors import LedgerError
from execution.ledger import PortfolioAccount, Position, PositionStatus, apply_buy, apply_sell
from execution.port import SimulatedExecutionPort, SymbolContext

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_buy_fee_is_charged_to_cash_not_cost_basis():
    port = SimulatedExecutionPort(fee_rate=0.001)
    fill = port.fill_buy(SymbolContext("BTC/USDT", 50_000.0, T0), 100.0)
    assert fill.amount == pytest.approx(0.002)
    assert fill.fee == pytest.approx(0.1)

    account = PortfolioAccount("s", 1_000.0)
    account.apply_buy_fill(fill.amount, fill.cost, fill.fee, T0)
    assert account.position.cost_basis == pytest.approx(100.0)
    assert account.cash == pytest.approx(899.9)
    assert account.last_buy_time == T0


def test_average_entry_recomputed_on_buy_only():
    pos = Position(strategy_id="s")
    apply_buy(pos, 1.0, 100.0)
    apply_buy(pos, 1.0, 200.0)
    assert pos.avg_entry_price == pytest.approx(150.0)

    result = apply_sell(pos, 1.0, 300.0)
    assert result.cost_basis_portion == pytest.approx(150.0)
    assert result.profit == pytest.approx(150.0)
    assert result.profit_percent == pytest.approx(100.0)
    assert pos.avg_entry_price == pytest.approx(150.0)
    assert pos.cost_basis == pytest.approx(150.0)
    assert pos.realized_profit == pytest.approx(150.0)
    assert pos.status is PositionStatus.PARTIAL


def test_round_trip_closes_position():
    pos = Position(strategy_id="s")
    apply_buy(pos, 2.0, 100.0)
    apply_sell(pos, 0.5, 40.0, fee=1.0)
    result = apply_sell(pos, 1.5, 90.0, fee=1.0)

    assert pos.amount == 0.0
    assert pos.cost_basis == 0.0
    assert pos.avg_entry_price is None
    assert pos.status is PositionStatus.CLOSED
    assert result.cost_basis_portion == pytest.approx(75.0)
    # (40 - 25 - 1) + (90 - 75 - 1)
    assert pos.realized_profit == pytest.approx(28.0)
    assert (pos.total_buys, pos.total_sells) == (1, 2)


def test_reopen_after_close():
    pos = Position(strategy_id="s")
    apply_buy(pos, 1.0, 100.0)
    apply_sell(pos, 1.0, 110.0)
    apply_buy(pos, 1.0, 80.0)
    assert pos.status is PositionStatus.OPEN
    assert pos.avg_entry_price == pytest.approx(80.0)


def test_oversell_is_rejected_and_leaves_position_untouched():
    pos = Position(strategy_id="s")
    apply_buy(pos, 1.0, 100.0)
    before = pos.to_dict()
    with pytest.raises(LedgerError):
        apply_sell(pos, 1.5, 150.0)
    assert pos.to_dict() == before


def test_non_positive_buy_rejected():
    with pytest.raises(LedgerError):
        apply_buy(Position(), 0.0, 100.0)
    with pytest.raises(LedgerError):
        apply_buy(Position(), 1.0, -5.0)


def test_buy_beyond_cash_leaves_account_untouched():
    account = PortfolioAccount("s", 100.0)
    with pytest.raises(LedgerError):
        account.apply_buy_fill(1.0, 100.0, 0.5, T0)
    assert account.cash == 100.0
    assert account.position.amount == 0.0
    assert account.last_buy_time is None


def test_sell_credits_proceeds_minus_fee():
    account = PortfolioAccount("s", 1_000.0)
    account.apply_buy_fill(1.0, 500.0, 0.0, T0)
    result = account.apply_sell_fill(0.5, 300.0, 0.3, T0)
    assert account.cash == pytest.approx(500.0 + 299.7)
    assert result.profit == pytest.approx(300.0 - 250.0 - 0.3)


def test_portfolio_state_view():
    account = PortfolioAccount("s", 1_000.0)
    account.apply_buy_fill(0.01, 500.0, 0.0, T0)
    state = account.portfolio_state(60_000.0)
    assert state.crypto_value == pytest.approx(600.0)
    assert state.total_value == pytest.approx(1_100.0)
    assert state.unrealized_pnl_percent == pytest.approx(20.0)
    assert state.position_percent == pytest.approx(600.0 / 1_100.0 * 100)
    assert state.last_buy_time == T0


def test_negative_initial_cash_rejected():
    with pytest.raises(LedgerError):
        PortfolioAccount("s", -1.0)


def test_zero_fee_round_trip_from_empty_position_is_flat():
    pos = Position(strategy_id="s")
    apply_buy(pos, 0.25, 0.25 * 40_000.0)
    result = apply_sell(pos, 0.25, 0.25 * 40_000.0)

    assert result.profit == pytest.approx(0.0)
    assert pos.realized_profit == pytest.approx(0.0)
    assert pos.amount == 0.0
    assert pos.cost_basis == 0.0


def test_zero_fee_round_trip_restores_existing_position():
    account = PortfolioAccount("s", 5_000.0)
    account.apply_buy_fill(1.0, 100.0, 0.0, T0)
    before = (account.cash, account.position.amount, account.position.cost_basis)

    account.apply_buy_fill(3.0, 300.0, 0.0, T0)
    account.apply_sell_fill(3.0, 300.0, 0.0, T0)

    assert account.position.realized_profit == pytest.approx(0.0)
    after = (account.cash, account.position.amount, account.position.cost_basis)
    assert after == pytest.approx(before)


@pytest.mark.parametrize("fills", [
    [(1.0, 100.0), (1.0, 300.0), (0.5, 20.0)],
    [(0.001, 45.0), (0.0037, 150.5), (2.0, 61_000.0), (0.2, 3_900.0)],
    [(10.0, 1.0)] * 5,
])
def test_average_entry_matches_cost_over_amount_after_every_buy(fills):
    pos = Position(strategy_id="s")
    for amount, cost in fills:
        apply_buy(pos, amount, cost)
        assert pos.avg_entry_price == pytest.approx(pos.cost_basis / pos.amount)


def test_average_entry_ratio_holds_after_partial_sells():
    pos = Position(strategy_id="s")
    apply_buy(pos, 2.0, 200.0)
    apply_sell(pos, 0.5, 80.0)
    apply_buy(pos, 1.0, 400.0)
    assert pos.avg_entry_price == pytest.approx(pos.cost_basis / pos.amount)
    assert pos.avg_entry_price == pytest.approx((150.0 + 400.0) / 2.5)
