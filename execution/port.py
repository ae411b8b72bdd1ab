"""
port.py - Execution Port

Boundary between decisions and order placement. Callers await a Fill and only
then touch the ledger; a failed order raises ExecutionError and leaves every
ledger untouched.

Implementations:
- SimulatedExecutionPort: fills at the context price with a fixed fee rate
- ExchangeExecutionPort (execution/exchange_port.py): market orders via ccxt
"""

from __future__ import annotations

import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from core.errors import ExecutionError

logger = logging.getLogger(__name__)

DEFAULT_FEE_RATE = 0.001
# Headroom for exchange fills that land above the reference price
DEFAULT_SLIPPAGE_BUFFER = 0.005


class OrderSide(Enum):
    BUY = "buy"
    SELL = "sell"

    def __str__(self):
        return self.value


@dataclass(frozen=True)
class SymbolContext:
    """What is being traded, at what reference price and when."""
    symbol: str
    price: float
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class Fill:
    """
    Confirmed execution.

    Attributes:
        amount: Units bought or sold
        price: Average fill price
        cost: Notional in quote currency (amount x price), excluding fee
        fee: Fee in quote currency
        side: Order side
        order_id: Venue order id
        timestamp: Fill time
    """
    amount: float
    price: float
    cost: float
    fee: float
    side: OrderSide = OrderSide.BUY
    order_id: Optional[str] = None
    timestamp: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount": self.amount,
            "price": self.price,
            "cost": self.cost,
            "fee": self.fee,
            "side": self.side.value,
            "order_id": self.order_id,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


class ExecutionPort(ABC):
    """Places orders and reports fills."""

    fee_rate: float = DEFAULT_FEE_RATE
    slippage_buffer: float = 0.0

    def max_buy_notional(self, cash: float) -> float:
        """Largest buy notional whose fill, fee included, still fits in cash."""
        if cash <= 0:
            return 0.0
        return cash / ((1 + self.fee_rate) * (1 + self.slippage_buffer))

    @abstractmethod
    async def buy(self, ctx: SymbolContext, usd_amount: float) -> Fill:
        """Spend usd_amount of quote currency (fee charged on top)."""

    @abstractmethod
    async def sell(self, ctx: SymbolContext, asset_amount: float) -> Fill:
        """Sell asset_amount units."""


class SimulatedExecutionPort(ExecutionPort):
    """
    Deterministic fills at the context price.

    The synchronous fill_buy/fill_sell methods are used directly by the
    backtest runner; the async methods wrap them for the live loop (paper
    trading).
    """

    def __init__(self, fee_rate: float = DEFAULT_FEE_RATE, id_prefix: str = "sim"):
        if fee_rate < 0:
            raise ValueError(f"fee_rate must be >= 0, got {fee_rate}")
        self.fee_rate = fee_rate
        self._id_prefix = id_prefix
        self._ids = itertools.count(1)

    def _next_id(self) -> str:
        return f"{self._id_prefix}-{next(self._ids)}"

    @staticmethod
    def _check_price(ctx: SymbolContext) -> None:
        if ctx.price is None or ctx.price <= 0:
            raise ExecutionError(f"Invalid price for {ctx.symbol}: {ctx.price}")

    def fill_buy(self, ctx: SymbolContext, usd_amount: float) -> Fill:
        self._check_price(ctx)
        if usd_amount <= 0:
            raise ExecutionError(f"Buy amount must be positive, got {usd_amount}")
        return Fill(
            amount=usd_amount / ctx.price,
            price=ctx.price,
            cost=usd_amount,
            fee=usd_amount * self.fee_rate,
            side=OrderSide.BUY,
            order_id=self._next_id(),
            timestamp=ctx.timestamp,
        )

    def fill_sell(self, ctx: SymbolContext, asset_amount: float) -> Fill:
        self._check_price(ctx)
        if asset_amount <= 0:
            raise ExecutionError(f"Sell amount must be positive, got {asset_amount}")
        value = asset_amount * ctx.price
        return Fill(
            amount=asset_amount,
            price=ctx.price,
            cost=value,
            fee=value * self.fee_rate,
            side=OrderSide.SELL,
            order_id=self._next_id(),
            timestamp=ctx.timestamp,
        )

    async def buy(self, ctx: SymbolContext, usd_amount: float) -> Fill:
        fill = self.fill_buy(ctx, usd_amount)
        logger.info(f"[SIM] BUY {fill.amount:.8f} {ctx.symbol} @ {fill.price:.2f} (fee {fill.fee:.4f})")
        return fill

    async def sell(self, ctx: SymbolContext, asset_amount: float) -> Fill:
        fill = self.fill_sell(ctx, asset_amount)
        logger.info(f"[SIM] SELL {fill.amount:.8f} {ctx.symbol} @ {fill.price:.2f} (fee {fill.fee:.4f})")
        return fill

    def __repr__(self) -> str:
        return f"SimulatedExecutionPort(fee_rate={self.fee_rate})"
