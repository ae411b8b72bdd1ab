"""
indicators.py - Indicator Calculator

Responsibilities:
- Simple moving averages over trailing closes
- RSI(14) with simple (non-smoothed) averages of gains and losses
- Running all-time-high tracking, optionally seeded with a known historical peak
- Per-bar indicator snapshots for the live loop and the backtest runner

Indicator shortfalls never raise: a missing MA is None and a short RSI window
reads as a neutral 50.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Deque, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from core.models import Bar

SHORT_MA_PERIOD = 50
LONG_MA_PERIOD = 200
RSI_PERIOD = 14
NEUTRAL_RSI = 50.0

# A high within this fraction of the ATH counts as "at the ATH"
ATH_PROXIMITY = 0.99

# Historical peaks used to seed the running ATH when the loaded history does
# not reach back far enough.
KNOWN_ATH: Dict[str, Tuple[float, datetime]] = {
    "BTC/USDT": (73750.0, datetime(2024, 3, 14, tzinfo=timezone.utc)),
    "ETH/USDT": (4878.0, datetime(2021, 11, 10, tzinfo=timezone.utc)),
    "SOL/USDT": (260.0, datetime(2021, 11, 6, tzinfo=timezone.utc)),
}


def sma(closes: Sequence[float], period: int) -> Optional[float]:
    """
    Mean of the last `period` closes.

    Returns:
        The average, or None when fewer than `period` values are available
    """
    if period <= 0:
        raise ValueError(f"period must be positive, got {period}")
    if len(closes) < period:
        return None
    window = np.asarray(closes[-period:], dtype=float)
    return float(window.mean())


def rsi(closes: Sequence[float], period: int = RSI_PERIOD) -> float:
    """
    Relative Strength Index over the last `period` close-to-close changes.

    Gains and losses are summed and divided by `period` (simple averages, no
    Wilder smoothing). A window without losses reads 100, including a
    perfectly flat window.

    Returns:
        RSI in [0, 100]; 50 when fewer than period + 1 closes are available
    """
    if len(closes) < period + 1:
        return NEUTRAL_RSI

    changes = np.diff(np.asarray(closes[-(period + 1):], dtype=float))
    avg_gain = float(changes[changes > 0].sum()) / period
    avg_loss = float(-changes[changes < 0].sum()) / period

    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def percent_from_ath(price: float, ath: float) -> float:
    """Signed percentage distance of price from the all-time high."""
    if ath <= 0:
        return 0.0
    return (price - ath) / ath * 100


class AthTracker:
    """
    Running maximum of bar highs.

    Args:
        seed: Optional known historical peak to start from
        seed_time: When the seeded peak happened (for day counts)
    """

    def __init__(self, seed: Optional[float] = None, seed_time: Optional[datetime] = None):
        self.ath = float(seed) if seed else 0.0
        self.seed_time = seed_time
        self._bars_seen = 0
        self._last_near_ath: Optional[int] = None

    @classmethod
    def for_symbol(cls, symbol: str, override: Optional[float] = None) -> "AthTracker":
        """Tracker seeded from an explicit override or the KNOWN_ATH table."""
        if override:
            return cls(seed=override)
        known = KNOWN_ATH.get(symbol)
        if known:
            return cls(seed=known[0], seed_time=known[1])
        return cls()

    def update(self, high: float) -> float:
        if high > self.ath:
            self.ath = high
        if high >= self.ath * ATH_PROXIMITY:
            self._last_near_ath = self._bars_seen
        self._bars_seen += 1
        return self.ath

    @property
    def bars_since_ath(self) -> int:
        """Bars since the last high within 1% of the ATH (all bars if never)."""
        if self._last_near_ath is None:
            return self._bars_seen
        return self._bars_seen - 1 - self._last_near_ath

    def days_since_seed(self, now: datetime) -> Optional[int]:
        """Whole days since a seeded peak that no loaded bar has reached."""
        if self.seed_time is None or self._last_near_ath is not None:
            return None
        return (now - self.seed_time).days


@dataclass(frozen=True)
class IndicatorSnapshot:
    """Indicator readings as of one bar."""
    timestamp: datetime
    price: float
    ma50: Optional[float]
    ma200: Optional[float]
    rsi: float
    ath: float
    percent_from_ath: float
    bars_since_ath: int


class IndicatorCalculator:
    """
    Incremental indicator calculator.

    Feed bars in timestamp order with update(); each call returns the readings
    as of that bar. Moving averages use the trailing window only, the ATH uses
    every bar seen so far.
    """

    def __init__(
        self,
        ath_seed: Optional[float] = None,
        ath_seed_time: Optional[datetime] = None,
        short_period: int = SHORT_MA_PERIOD,
        long_period: int = LONG_MA_PERIOD,
        rsi_period: int = RSI_PERIOD,
    ):
        self.short_period = short_period
        self.long_period = long_period
        self.rsi_period = rsi_period
        window = max(long_period, short_period, rsi_period + 1)
        self._closes: Deque[float] = deque(maxlen=window)
        self._ath = AthTracker(seed=ath_seed, seed_time=ath_seed_time)

    @property
    def ath(self) -> float:
        return self._ath.ath

    def update(self, bar: Bar) -> IndicatorSnapshot:
        self._closes.append(bar.close)
        ath = self._ath.update(bar.high)
        closes = list(self._closes)
        return IndicatorSnapshot(
            timestamp=bar.timestamp,
            price=bar.close,
            ma50=sma(closes, self.short_period),
            ma200=sma(closes, self.long_period),
            rsi=rsi(closes, self.rsi_period),
            ath=ath,
            percent_from_ath=percent_from_ath(bar.close, ath),
            bars_since_ath=self._ath.bars_since_ath,
        )

    def compute_series(self, bars: Iterable[Bar]) -> List[IndicatorSnapshot]:
        return [self.update(bar) for bar in bars]


def latest_snapshot(bars: Sequence[Bar], ath_seed: Optional[float] = None,
                    price: Optional[float] = None) -> IndicatorSnapshot:
    """
    Indicator readings for the newest bar of a trailing history.

    Args:
        bars: History in timestamp order (at least one bar)
        ath_seed: Optional known ATH
        price: Optional live price replacing the last close

    Raises:
        ValueError: If bars is empty
    """
    if not bars:
        raise ValueError("latest_snapshot needs at least one bar")
    calc = IndicatorCalculator(ath_seed=ath_seed)
    snap = None
    for bar in bars:
        snap = calc.update(bar)
    if price is None or price == snap.price:
        return snap

    closes = [b.close for b in bars[:-1]] + [price]
    ath = max(snap.ath, price)
    return IndicatorSnapshot(
        timestamp=snap.timestamp,
        price=price,
        ma50=sma(closes, SHORT_MA_PERIOD),
        ma200=sma(closes, LONG_MA_PERIOD),
        rsi=rsi(closes),
        ath=ath,
        percent_from_ath=percent_from_ath(price, ath),
        bars_since_ath=snap.bars_since_ath,
    )


def indicator_frame(bars: Sequence[Bar], ath_seed: Optional[float] = None) -> pd.DataFrame:
    """Per-bar indicator table indexed by timestamp."""
    calc = IndicatorCalculator(ath_seed=ath_seed)
    rows = [
        {
            "timestamp": s.timestamp,
            "close": s.price,
            "ma50": s.ma50,
            "ma200": s.ma200,
            "rsi": s.rsi,
            "ath": s.ath,
            "percent_from_ath": s.percent_from_ath,
            "bars_since_ath": s.bars_since_ath,
        }
        for s in calc.compute_series(bars)
    ]
    frame = pd.DataFrame(rows)
    if not frame.empty:
        frame = frame.set_index("timestamp")
    return frame
