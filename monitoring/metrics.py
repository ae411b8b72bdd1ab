"""
metrics.py - Live performance tracker.

Responsibilities:
- Record per-strategy performance snapshots after each live tick
- Record a combined snapshot across all strategies of the loop
- Keep a bounded in-memory history and derive drawdown from it
- Thread-safe; no trading or execution logic included

Design notes:
- The tracker reads accounts, it never mutates them.
- A combined snapshot has strategy_id None.
"""

from __future__ import annotations

import threading
from collections import defaultdict, deque
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Deque, Dict, Iterable, List, Optional

import numpy as np

from core.models import MarketConditions
from execution.ledger import PortfolioAccount


@dataclass(frozen=True)
class PerformanceSnapshot:
    """
    Point-in-time performance of one strategy (or all of them combined).

    Attributes:
        strategy_id: Strategy id, None for the combined snapshot
        total_value: cash + crypto value
        initial_value: Capital the strategy started with
        cost_basis: Cost basis of held units
        unrealized_profit: crypto value - cost basis
        realized_profit: Profit realized by sells
        total_profit: unrealized + realized
        return_percent: (total_value - initial_value) / initial_value x 100
    """
    timestamp: datetime
    strategy_id: Optional[str]
    price: float
    total_value: float
    initial_value: float
    cash: float
    crypto_amount: float
    crypto_value: float
    cost_basis: float
    unrealized_profit: float
    unrealized_profit_percent: float
    realized_profit: float
    total_profit: float
    return_percent: float
    regime: str
    regime_score: int

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


def _build_snapshot(strategy_id: Optional[str], at: datetime, price: float, market: MarketConditions,
                    cash: float, amount: float, cost_basis: float, realized: float,
                    initial: float) -> PerformanceSnapshot:
    crypto_value = amount * price
    unrealized = crypto_value - cost_basis
    total_value = cash + crypto_value
    return PerformanceSnapshot(
        timestamp=at,
        strategy_id=strategy_id,
        price=price,
        total_value=total_value,
        initial_value=initial,
        cash=cash,
        crypto_amount=amount,
        crypto_value=crypto_value,
        cost_basis=cost_basis,
        unrealized_profit=unrealized,
        unrealized_profit_percent=unrealized / cost_basis * 100 if cost_basis > 0 else 0.0,
        realized_profit=realized,
        total_profit=unrealized + realized,
        return_percent=(total_value - initial) / initial * 100 if initial > 0 else 0.0,
        regime=market.regime.value,
        regime_score=market.regime_score,
    )


class PerformanceTracker:
    """
    Thread-safe store of performance snapshots.

    Key methods:
      - record(account, market, at) -> PerformanceSnapshot
      - record_combined(accounts, market, at) -> PerformanceSnapshot
      - latest(strategy_id=None), history(strategy_id=None, limit=None)
      - max_drawdown(strategy_id=None) -> float (percent)
    """

    def __init__(self, retention: int = 10_000):
        self._lock = threading.RLock()
        self._history: Dict[Optional[str], Deque[PerformanceSnapshot]] = defaultdict(
            lambda: deque(maxlen=retention))

    def record(self, account: PortfolioAccount, market: MarketConditions, at: datetime) -> PerformanceSnapshot:
        pos = account.position
        snap = _build_snapshot(
            account.strategy_id, at, market.price, market,
            cash=account.cash,
            amount=pos.amount,
            cost_basis=pos.cost_basis,
            realized=pos.realized_profit,
            initial=account.initial_cash,
        )
        with self._lock:
            self._history[account.strategy_id].append(snap)
        return snap

    def record_combined(self, accounts: Iterable[PortfolioAccount], market: MarketConditions,
                        at: datetime) -> PerformanceSnapshot:
        accounts = list(accounts)
        snap = _build_snapshot(
            None, at, market.price, market,
            cash=sum(a.cash for a in accounts),
            amount=sum(a.position.amount for a in accounts),
            cost_basis=sum(a.position.cost_basis for a in accounts),
            realized=sum(a.position.realized_profit for a in accounts),
            initial=sum(a.initial_cash for a in accounts),
        )
        with self._lock:
            self._history[None].append(snap)
        return snap

    def latest(self, strategy_id: Optional[str] = None) -> Optional[PerformanceSnapshot]:
        with self._lock:
            series = self._history.get(strategy_id)
            return series[-1] if series else None

    def history(self, strategy_id: Optional[str] = None, limit: Optional[int] = None) -> List[PerformanceSnapshot]:
        with self._lock:
            series = list(self._history.get(strategy_id, ()))
        return series if limit is None else series[-limit:]

    def strategies(self) -> List[str]:
        with self._lock:
            return sorted(k for k in self._history if k is not None)

    def max_drawdown(self, strategy_id: Optional[str] = None) -> float:
        """Largest peak-to-trough drop of total value, in percent."""
        series = self.history(strategy_id)
        if not series:
            return 0.0
        values = np.asarray([s.total_value for s in series], dtype=float)
        peaks = np.maximum.accumulate(values)
        with np.errstate(divide="ignore", invalid="ignore"):
            drawdowns = np.where(peaks > 0, (peaks - values) / peaks * 100, 0.0)
        return float(drawdowns.max())

    def reset(self) -> None:
        with self._lock:
            self._history.clear()

    def export(self, strategy_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return [s.to_dict() for s in self.history(strategy_id)]
