"""
ledger.py - Position Ledger

Cost-basis accounting for one strategy's holdings.

Responsibilities:
- Apply buy fills: grow amount and cost basis, recompute the average entry
- Apply sell fills: release cost basis at the average entry, realize profit
- Track a strategy's cash next to its position (PortfolioAccount)
- Produce the PortfolioState view strategies decide on

Fees are charged to cash only; they never enter the cost basis. A fill is
validated completely before any field changes, so a rejected fill leaves the
ledger exactly as it was.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from core.errors import LedgerError
from core.models import PortfolioState

logger = logging.getLogger(__name__)

# Remaining amounts at or below this are treated as fully sold
AMOUNT_EPSILON = 1e-12


class PositionStatus(Enum):
    OPEN = "open"
    PARTIAL = "partial"
    CLOSED = "closed"

    def __str__(self):
        return self.value


@dataclass
class Position:
    """
    Holdings of one strategy in one asset.

    Attributes:
        strategy_id: Owning strategy
        amount: Units held
        cost_basis: Quote currency paid for the units still held
        avg_entry_price: cost_basis / amount, None while flat
        realized_profit: Profit realized by sells, net of sell fees
        total_buys: Number of buy fills applied
        total_sells: Number of sell fills applied
        status: open, partial (after a partial sell) or closed
        first_activity_at: Time of the first buy
        last_activity_at: Time of the latest fill
    """
    strategy_id: str = ""
    amount: float = 0.0
    cost_basis: float = 0.0
    avg_entry_price: Optional[float] = None
    realized_profit: float = 0.0
    total_buys: int = 0
    total_sells: int = 0
    status: PositionStatus = PositionStatus.OPEN
    first_activity_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy_id": self.strategy_id,
            "amount": self.amount,
            "cost_basis": self.cost_basis,
            "avg_entry_price": self.avg_entry_price,
            "realized_profit": self.realized_profit,
            "total_buys": self.total_buys,
            "total_sells": self.total_sells,
            "status": self.status.value,
            "first_activity_at": self.first_activity_at.isoformat() if self.first_activity_at else None,
            "last_activity_at": self.last_activity_at.isoformat() if self.last_activity_at else None,
        }


@dataclass(frozen=True)
class SellResult:
    """Accounting outcome of one sell fill."""
    amount: float
    proceeds: float
    fee: float
    cost_basis_portion: float
    profit: float

    @property
    def profit_percent(self) -> float:
        if self.cost_basis_portion <= 0:
            return 0.0
        return self.profit / self.cost_basis_portion * 100


def apply_buy(position: Position, fill_amount: float, fill_cost: float,
              at: Optional[datetime] = None) -> Position:
    """
    Add a buy fill to the position.

    Args:
        position: Position to update in place
        fill_amount: Units bought
        fill_cost: Quote currency paid, excluding fee

    Returns:
        The same position, for chaining

    Raises:
        LedgerError: If amount or cost is not positive
    """
    if fill_amount <= 0 or fill_cost <= 0:
        raise LedgerError(f"Buy fill must be positive, got amount={fill_amount} cost={fill_cost}")

    position.amount += fill_amount
    position.cost_basis += fill_cost
    position.avg_entry_price = position.cost_basis / position.amount
    position.total_buys += 1
    if position.first_activity_at is None:
        position.first_activity_at = at
    position.last_activity_at = at or position.last_activity_at
    if position.status is PositionStatus.CLOSED:
        position.status = PositionStatus.OPEN
    return position


def apply_sell(position: Position, fill_amount: float, fill_proceeds: float,
               fee: float = 0.0, at: Optional[datetime] = None) -> SellResult:
    """
    Remove a sell fill from the position and realize its profit.

    The released cost basis is avg_entry_price x fill_amount; profit is
    proceeds minus that portion minus the fee.

    Raises:
        LedgerError: If the fill is not positive or exceeds the held amount
    """
    if fill_amount <= 0:
        raise LedgerError(f"Sell fill amount must be positive, got {fill_amount}")
    if fill_amount > position.amount + AMOUNT_EPSILON:
        raise LedgerError(
            f"Cannot sell {fill_amount} units, position {position.strategy_id!r} holds {position.amount}"
        )
    if position.avg_entry_price is None:
        raise LedgerError(f"Position {position.strategy_id!r} has no entry price")

    portion = position.avg_entry_price * fill_amount
    profit = fill_proceeds - portion - fee

    remaining = position.amount - fill_amount
    position.amount = 0.0 if remaining <= AMOUNT_EPSILON else remaining
    position.cost_basis = max(0.0, position.cost_basis - portion)
    position.realized_profit += profit
    position.total_sells += 1
    position.last_activity_at = at or position.last_activity_at

    if position.amount == 0:
        position.status = PositionStatus.CLOSED
        position.cost_basis = 0.0
        position.avg_entry_price = None
    else:
        position.status = PositionStatus.PARTIAL

    return SellResult(
        amount=fill_amount,
        proceeds=fill_proceeds,
        fee=fee,
        cost_basis_portion=portion,
        profit=profit,
    )


class PortfolioAccount:
    """
    Cash plus one Position for a single strategy.

    Thread-safe: fills and state reads take the same lock so a reader never
    sees half of a fill.
    """

    def __init__(self, strategy_id: str, cash: float):
        if cash < 0:
            raise LedgerError(f"Initial cash must be >= 0, got {cash}")
        self.strategy_id = strategy_id
        self.initial_cash = cash
        self.cash = cash
        self.position = Position(strategy_id=strategy_id)
        self.last_buy_time: Optional[datetime] = None
        self._lock = threading.RLock()

    def apply_buy_fill(self, amount: float, cost: float, fee: float,
                       at: Optional[datetime] = None) -> None:
        """
        Debit cost + fee from cash and credit cost to the position.

        Raises:
            LedgerError: If cash does not cover cost + fee
        """
        with self._lock:
            debit = cost + fee
            if debit > self.cash + 1e-9:
                raise LedgerError(f"{self.strategy_id}: buy of {debit:.2f} exceeds cash {self.cash:.2f}")
            apply_buy(self.position, amount, cost, at)
            self.cash = max(0.0, self.cash - debit)
            if at is not None:
                self.last_buy_time = at

    def apply_sell_fill(self, amount: float, proceeds: float, fee: float,
                        at: Optional[datetime] = None) -> SellResult:
        """Credit proceeds - fee to cash and release cost basis."""
        with self._lock:
            result = apply_sell(self.position, amount, proceeds, fee, at)
            self.cash += proceeds - fee
            return result

    def total_value(self, price: float) -> float:
        with self._lock:
            return self.cash + self.position.amount * price

    def portfolio_state(self, price: float) -> PortfolioState:
        """Read-only view of the account at the given price."""
        with self._lock:
            amount = self.position.amount
            crypto_value = amount * price
            cost_basis = self.position.cost_basis
            pnl_pct = (crypto_value - cost_basis) / cost_basis * 100 if cost_basis > 0 else 0.0
            return PortfolioState(
                cash=self.cash,
                crypto_amount=amount,
                crypto_value=crypto_value,
                total_value=self.cash + crypto_value,
                cost_basis=cost_basis,
                avg_entry_price=self.position.avg_entry_price,
                unrealized_pnl_percent=pnl_pct,
                last_buy_time=self.last_buy_time,
            )

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "strategy_id": self.strategy_id,
                "initial_cash": self.initial_cash,
                "cash": self.cash,
                "last_buy_time": self.last_buy_time.isoformat() if self.last_buy_time else None,
                "position": self.position.to_dict(),
            }

    def __repr__(self) -> str:
        return (f"PortfolioAccount(strategy={self.strategy_id}, cash={self.cash:.2f}, "
                f"amount={self.position.amount:.8f})")
