import asyncio
from datetime import datetime, timezone

import pytest

from core.errors import ExecutionError
from data.exchange import ExchangeError
from execution.exchange_port import ExchangeExecutionPort, order_to_fill
from execution.port import OrderSide, SimulatedExecutionPort, SymbolContext

CTX = SymbolContext("BTC/USDT", 20_000.0, datetime(2024, 1, 1, tzinfo=timezone.utc))


class DummyConnector:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    async def create_market_order(self, symbol, side, amount):
        await asyncio.sleep(0)  # yield
        self.calls.append((symbol, side, amount))
        if self.error:
            raise self.error
        return self.response


def test_simulated_fills_are_deterministic():
    a, b = SimulatedExecutionPort(0.001), SimulatedExecutionPort(0.001)
    fills_a = [a.fill_buy(CTX, 100.0), a.fill_sell(CTX, 0.001)]
    fills_b = [b.fill_buy(CTX, 100.0), b.fill_sell(CTX, 0.001)]
    assert fills_a == fills_b
    assert [f.order_id for f in fills_a] == ["sim-1", "sim-2"]


def test_simulated_sell_fee_on_notional():
    fill = SimulatedExecutionPort(0.002).fill_sell(CTX, 0.5)
    assert fill.cost == pytest.approx(10_000.0)
    assert fill.fee == pytest.approx(20.0)
    assert fill.side is OrderSide.SELL


def test_simulated_rejects_bad_requests():
    port = SimulatedExecutionPort()
    with pytest.raises(ExecutionError):
        port.fill_buy(SymbolContext("BTC/USDT", 0.0), 100.0)
    with pytest.raises(ExecutionError):
        port.fill_sell(CTX, 0.0)
    with pytest.raises(ValueError):
        SimulatedExecutionPort(fee_rate=-0.1)


@pytest.mark.asyncio
async def test_simulated_async_buy():
    fill = await SimulatedExecutionPort(0.001, id_prefix="paper").buy(CTX, 200.0)
    assert fill.amount == pytest.approx(0.01)
    assert fill.order_id == "paper-1"


def test_order_to_fill_prefers_reported_values():
    order = {"id": "42", "filled": 0.01, "average": 20_100.0, "cost": 201.0, "fee": {"cost": 0.2}}
    fill = order_to_fill(order, CTX, OrderSide.BUY, requested_amount=0.0099)
    assert (fill.amount, fill.price, fill.cost, fill.fee) == (0.01, 20_100.0, 201.0, 0.2)
    assert fill.order_id == "42"


def test_order_to_fill_falls_back_to_context():
    fill = order_to_fill({"id": "7"}, CTX, OrderSide.SELL, requested_amount=0.5, fallback_fee_rate=0.001)
    assert fill.price == 20_000.0
    assert fill.cost == pytest.approx(10_000.0)
    assert fill.fee == pytest.approx(10.0)


def test_order_to_fill_base_asset_fee_on_buy_is_netted_out():
    order = {"id": "9", "filled": 0.01, "average": 20_000.0, "cost": 200.0,
             "fee": {"cost": 0.00001, "currency": "BTC"}}
    fill = order_to_fill(order, CTX, OrderSide.BUY, requested_amount=0.01)
    assert fill.amount == pytest.approx(0.00999)
    assert fill.fee == pytest.approx(0.2)
    assert fill.cost == pytest.approx(199.8)
    # quote actually spent is unchanged
    assert fill.cost + fill.fee == pytest.approx(200.0)


def test_order_to_fill_base_asset_fee_on_sell_is_valued_at_fill_price():
    order = {"id": "10", "filled": 0.01, "average": 20_000.0, "cost": 200.0,
             "fee": {"cost": 0.00001, "currency": "btc"}}
    fill = order_to_fill(order, CTX, OrderSide.SELL, requested_amount=0.01)
    assert (fill.amount, fill.cost) == (0.01, 200.0)
    assert fill.fee == pytest.approx(0.2)


def test_order_to_fill_fee_currency_variants():
    base = {"id": "11", "filled": 0.01, "average": 20_000.0, "cost": 200.0}
    quote_fee = order_to_fill({**base, "fee": {"cost": 0.3, "currency": "USDT"}}, CTX, OrderSide.BUY, 0.01)
    assert quote_fee.fee == pytest.approx(0.3)

    token_fee = order_to_fill({**base, "fee": {"cost": 0.0005, "currency": "BNB"}}, CTX, OrderSide.BUY, 0.01,
                              fallback_fee_rate=0.001)
    assert token_fee.fee == pytest.approx(0.2)
    assert token_fee.amount == 0.01


def test_buy_budget_leaves_room_for_fee_and_slippage():
    assert SimulatedExecutionPort(0.02).max_buy_notional(10_200.0) == pytest.approx(10_000.0)
    assert SimulatedExecutionPort(0.02).max_buy_notional(0.0) == 0.0

    port = ExchangeExecutionPort(DummyConnector(), fallback_fee_rate=0.001)
    budget = port.max_buy_notional(1_000.0)
    assert budget == pytest.approx(1_000.0 / (1.001 * 1.005))
    assert budget * 1.005 * 1.001 <= 1_000.0 + 1e-9


@pytest.mark.asyncio
async def test_exchange_port_converts_usd_to_units():
    conn = DummyConnector(response={"id": "1", "filled": 0.005, "average": 20_000.0})
    fill = await ExchangeExecutionPort(conn).buy(CTX, 100.0)
    assert conn.calls == [("BTC/USDT", "buy", pytest.approx(0.005))]
    assert fill.amount == 0.005


@pytest.mark.asyncio
async def test_exchange_failure_surfaces_as_execution_error():
    conn = DummyConnector(error=ExchangeError("insufficient balance"))
    with pytest.raises(ExecutionError, match="insufficient balance"):
        await ExchangeExecutionPort(conn).sell(CTX, 0.1)
