"""
models.py - Shared Data Model

Value types exchanged between the indicator calculator, the regime classifier,
strategy policies, the position ledger and the backtest runner.

Responsibilities:
- Market inputs (Bar, MarketConditions) and portfolio view (PortfolioState)
- Decisions (TradeDecision) and their audit trail (DecisionRecord)
- Outputs of a run (TradeRecord, Snapshot, EquityPoint)

All timestamps are timezone-aware UTC datetimes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import pandas as pd


class Regime(Enum):
    """Market sentiment regime, ordered from fear to greed."""
    EXTREME_FEAR = "extreme_fear"
    FEAR = "fear"
    NEUTRAL = "neutral"
    GREED = "greed"
    EXTREME_GREED = "extreme_greed"

    def __str__(self):
        return self.value

    @property
    def is_fear(self) -> bool:
        return self in (Regime.FEAR, Regime.EXTREME_FEAR)

    @property
    def is_greed(self) -> bool:
        return self in (Regime.GREED, Regime.EXTREME_GREED)


class TradeAction(Enum):
    """Decision outcome of a strategy policy."""
    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"

    def __str__(self):
        return self.value


def to_utc(value: Any) -> datetime:
    """
    Coerce a timestamp-like value to a timezone-aware UTC datetime.

    Accepts datetimes (naive values are taken as UTC), pandas Timestamps,
    ISO-8601 strings and epoch milliseconds.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, (int, float)):
        ts = pd.Timestamp(int(value), unit="ms", tz="UTC")
    else:
        ts = pd.Timestamp(value)
        ts = ts.tz_localize("UTC") if ts.tzinfo is None else ts.tz_convert("UTC")
    return ts.to_pydatetime()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class Bar:
    """One OHLCV candle."""
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Bar":
        return cls(
            timestamp=to_utc(data["timestamp"]),
            open=float(data["open"]),
            high=float(data["high"]),
            low=float(data["low"]),
            close=float(data["close"]),
            volume=float(data.get("volume", 0.0) or 0.0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }


@dataclass(frozen=True)
class MarketConditions:
    """
    Indicator readings and classified regime at one point in time.

    Attributes:
        price: Current close/last price
        rsi: RSI(14) in [0, 100]
        ma50: 50-bar simple moving average (None during warmup)
        ma200: 200-bar simple moving average (None during warmup)
        percent_from_ath: Signed distance to the all-time high (<= 0)
        regime: Regime from the composite score
        regime_score: Composite score in [-100, 100]
        timestamp: As-of time of the reading, used as "now" by policies
        signals: Factor readings that produced the score
    """
    price: float
    rsi: float
    ma50: Optional[float]
    ma200: Optional[float]
    percent_from_ath: float
    regime: Regime
    regime_score: int
    timestamp: Optional[datetime] = None
    signals: Tuple[Any, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "price": self.price,
            "rsi": self.rsi,
            "ma50": self.ma50,
            "ma200": self.ma200,
            "percent_from_ath": self.percent_from_ath,
            "regime": self.regime.value,
            "regime_score": self.regime_score,
            "timestamp": _iso(self.timestamp),
            "signals": [s.to_dict() if hasattr(s, "to_dict") else s for s in self.signals],
        }


@dataclass(frozen=True)
class PortfolioState:
    """Read-only view of one strategy's account at the current price."""
    cash: float
    crypto_amount: float
    crypto_value: float
    total_value: float
    cost_basis: float
    avg_entry_price: Optional[float]
    unrealized_pnl_percent: float
    last_buy_time: Optional[datetime] = None

    @property
    def position_percent(self) -> float:
        if self.total_value <= 0:
            return 0.0
        return self.crypto_value / self.total_value * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cash": self.cash,
            "crypto_amount": self.crypto_amount,
            "crypto_value": self.crypto_value,
            "total_value": self.total_value,
            "cost_basis": self.cost_basis,
            "avg_entry_price": self.avg_entry_price,
            "unrealized_pnl_percent": self.unrealized_pnl_percent,
            "position_percent": self.position_percent,
            "last_buy_time": _iso(self.last_buy_time),
        }


@dataclass(frozen=True)
class TradeDecision:
    """
    Output of a strategy policy.

    amount is quote currency (USD) for buys, asset units for sells, 0 for holds.
    """
    action: TradeAction
    amount: float
    reason: str

    def __post_init__(self):
        if self.amount < 0:
            raise ValueError(f"Decision amount must be >= 0, got {self.amount}")

    @classmethod
    def hold(cls, reason: str) -> "TradeDecision":
        return cls(TradeAction.HOLD, 0.0, reason)

    @classmethod
    def buy(cls, usd_amount: float, reason: str) -> "TradeDecision":
        return cls(TradeAction.BUY, usd_amount, reason)

    @classmethod
    def sell(cls, asset_amount: float, reason: str) -> "TradeDecision":
        return cls(TradeAction.SELL, asset_amount, reason)

    def to_dict(self) -> Dict[str, Any]:
        return {"action": self.action.value, "amount": self.amount, "reason": self.reason}


@dataclass
class TradeRecord:
    """A filled trade with its market context and cost-basis accounting."""
    action: TradeAction
    timestamp: datetime
    price: float
    amount: float
    value_usd: float
    fee: float
    regime: Regime
    regime_score: int
    reason: str
    cost_basis_portion: Optional[float] = None
    profit: Optional[float] = None
    profit_percent: Optional[float] = None
    rsi: Optional[float] = None
    percent_from_ath: Optional[float] = None
    portfolio_value: Optional[float] = None
    cash_balance: Optional[float] = None
    crypto_balance: Optional[float] = None
    strategy_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "timestamp": self.timestamp.isoformat(),
            "price": self.price,
            "amount": self.amount,
            "value_usd": self.value_usd,
            "fee": self.fee,
            "regime": self.regime.value,
            "regime_score": self.regime_score,
            "reason": self.reason,
            "cost_basis_portion": self.cost_basis_portion,
            "profit": self.profit,
            "profit_percent": self.profit_percent,
            "rsi": self.rsi,
            "percent_from_ath": self.percent_from_ath,
            "portfolio_value": self.portfolio_value,
            "cash_balance": self.cash_balance,
            "crypto_balance": self.crypto_balance,
            "strategy_id": self.strategy_id,
        }


@dataclass
class Snapshot:
    """Periodic portfolio snapshot taken during a run."""
    timestamp: datetime
    price: float
    portfolio_value: float
    cash: float
    crypto_amount: float
    crypto_value: float
    regime: Regime
    regime_score: int
    rsi: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "price": self.price,
            "portfolio_value": self.portfolio_value,
            "cash": self.cash,
            "crypto_amount": self.crypto_amount,
            "crypto_value": self.crypto_value,
            "regime": self.regime.value,
            "regime_score": self.regime_score,
            "rsi": self.rsi,
        }


@dataclass(frozen=True)
class EquityPoint:
    timestamp: datetime
    value: float

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp.isoformat(), "value": self.value}


@dataclass
class DecisionRecord:
    """
    Audit record of one policy evaluation.

    regime is the strategy's own reading of the market; market_regime is the
    composite classifier output. Both are kept so a decision can be explained
    after the fact.
    """
    strategy_id: str
    timestamp: Optional[datetime]
    price: float
    regime: Regime
    market_regime: Regime
    regime_score: int
    action: TradeAction
    amount: float
    reason: str
    signals: Tuple[Any, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy_id": self.strategy_id,
            "timestamp": _iso(self.timestamp),
            "price": self.price,
            "regime": self.regime.value,
            "market_regime": self.market_regime.value,
            "regime_score": self.regime_score,
            "action": self.action.value,
            "amount": self.amount,
            "reason": self.reason,
            "signals": [s.to_dict() if hasattr(s, "to_dict") else s for s in self.signals],
        }
