"""
exchange_port.py - Exchange-Backed Execution Port

Places market orders through data.exchange.ExchangeConnector and converts the
ccxt order into a Fill. Exchange failures surface as ExecutionError so the
caller never applies a fill that did not happen.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Tuple

from core.errors import ExecutionError
from data.exchange import ExchangeConnector, ExchangeError
from execution.port import DEFAULT_FEE_RATE, DEFAULT_SLIPPAGE_BUFFER, ExecutionPort, Fill, OrderSide, SymbolContext

logger = logging.getLogger(__name__)


def _base_quote(symbol: str) -> Tuple[str, str]:
    base, _, quote = symbol.partition("/")
    return base.upper(), quote.split(":")[0].upper()


def order_to_fill(order: Dict[str, Any], ctx: SymbolContext, side: OrderSide,
                  requested_amount: float, fallback_fee_rate: float = DEFAULT_FEE_RATE) -> Fill:
    """
    Map a ccxt order dict onto a Fill.

    Missing fields fall back to the requested amount, the context price and a
    notional x fallback_fee_rate fee. The Fill fee is always in quote currency:

    - quote (or unlabelled) fee: taken as reported
    - base-asset fee: valued at the fill price; on a buy it was withheld from
      the units received, so amount and cost are reduced by it
    - any other currency (e.g. an exchange token): notional x fallback_fee_rate

    Raises:
        ExecutionError: If the order reports nothing filled
    """
    amount = float(order.get("filled") or order.get("amount") or requested_amount)
    price = float(order.get("average") or order.get("price") or ctx.price)
    cost = float(order.get("cost") or amount * price)
    if amount <= 0 or cost <= 0:
        raise ExecutionError(f"Order {order.get('id')} reported no fill")

    base, quote = _base_quote(ctx.symbol)
    fee_info = order.get("fee") or {}
    fee_cost = fee_info.get("cost")
    currency = (fee_info.get("currency") or "").upper()

    if fee_cost is None:
        fee = cost * fallback_fee_rate
    elif not currency or currency == quote:
        fee = float(fee_cost)
    elif currency == base:
        fee = float(fee_cost) * price
        if side is OrderSide.BUY:
            amount -= float(fee_cost)
            cost -= fee
            if amount <= 0:
                raise ExecutionError(f"Order {order.get('id')} fee consumed the whole fill")
    else:
        logger.debug(f"Fee in {currency} for {ctx.symbol}; using fallback rate {fallback_fee_rate}")
        fee = cost * fallback_fee_rate

    return Fill(
        amount=amount,
        price=price,
        cost=cost,
        fee=fee,
        side=side,
        order_id=order.get("id"),
        timestamp=ctx.timestamp,
    )


class ExchangeExecutionPort(ExecutionPort):
    """Market orders against a connected ExchangeConnector."""

    def __init__(self, connector: ExchangeConnector, fallback_fee_rate: float = DEFAULT_FEE_RATE,
                 slippage_buffer: float = DEFAULT_SLIPPAGE_BUFFER):
        self.connector = connector
        self.fallback_fee_rate = fallback_fee_rate
        self.fee_rate = fallback_fee_rate
        self.slippage_buffer = slippage_buffer

    async def buy(self, ctx: SymbolContext, usd_amount: float) -> Fill:
        if usd_amount <= 0 or ctx.price <= 0:
            raise ExecutionError(f"Invalid buy request: {usd_amount} USD at {ctx.price}")
        amount = usd_amount / ctx.price
        return await self._place(ctx, OrderSide.BUY, amount)

    async def sell(self, ctx: SymbolContext, asset_amount: float) -> Fill:
        if asset_amount <= 0:
            raise ExecutionError(f"Invalid sell amount: {asset_amount}")
        return await self._place(ctx, OrderSide.SELL, asset_amount)

    async def _place(self, ctx: SymbolContext, side: OrderSide, amount: float) -> Fill:
        try:
            order = await self.connector.create_market_order(ctx.symbol, side.value, amount)
        except ExchangeError as exc:
            raise ExecutionError(str(exc)) from exc
        fill = order_to_fill(order, ctx, side, amount, self.fallback_fee_rate)
        logger.info(f"{side.value.upper()} filled: {fill.amount:.8f} {ctx.symbol} @ {fill.price:.2f}")
        return fill
