"""
bar_feed.py - Bar Loading, Feeds and Historical Store

Provides ordered OHLCV bars to the engine. The engine never fetches data
itself; backtests read a HistoricalBarStore and the live loop reads a BarFeed.

Responsibilities:
- Normalize and clean tabular OHLCV data (pandas) into Bar values
- Load bars from CSV or JSON files
- Validate ordering (strictly ascending timestamps) and detect gaps
- In-memory feed/store for tests and offline runs, ccxt-backed live feed
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from core.errors import DataValidationError
from core.models import Bar, to_utc

logger = logging.getLogger(__name__)

STANDARD_COLUMNS = ["timestamp", "open", "high", "low", "close", "volume"]

_TIMEFRAME_UNITS = {"m": "min", "h": "h", "d": "D", "w": "W"}


# -------------------------
# Frame helpers
# -------------------------
def clean_frame(df: pd.DataFrame, symbol: str = "") -> pd.DataFrame:
    """
    Normalize an OHLCV frame.

    Timestamps become UTC datetimes (numeric values are epoch milliseconds),
    rows are sorted, duplicate timestamps keep the last row, and rows with
    missing, non-positive or inconsistent prices are dropped with a warning.

    Raises:
        DataValidationError: If a required column is missing
    """
    frame = df.copy()
    frame.columns = [str(c).lower() for c in frame.columns]
    if "volume" not in frame.columns:
        frame["volume"] = 0.0
    missing = [c for c in STANDARD_COLUMNS if c not in frame.columns]
    if missing:
        raise DataValidationError(f"Bar data missing columns: {missing}")
    frame = frame[STANDARD_COLUMNS].copy()

    if pd.api.types.is_numeric_dtype(frame["timestamp"]):
        frame["timestamp"] = pd.to_datetime(frame["timestamp"], unit="ms", utc=True)
    else:
        frame["timestamp"] = pd.to_datetime(frame["timestamp"], utc=True)

    for col in STANDARD_COLUMNS[1:]:
        frame[col] = pd.to_numeric(frame[col], errors="coerce")

    original_len = len(frame)
    frame = frame.sort_values("timestamp", kind="stable")
    frame = frame[~frame.duplicated(subset=["timestamp"], keep="last")]
    frame = frame.dropna()

    invalid = (
        (frame[["open", "high", "low", "close"]] <= 0).any(axis=1)
        | (frame["high"] < frame["low"])
        | (frame["volume"] < 0)
    )
    frame = frame[~invalid].reset_index(drop=True)

    removed = original_len - len(frame)
    if removed:
        logger.warning(f"Dropped {removed} invalid/duplicate rows from {symbol or 'bar data'}")
    return frame


def bars_from_frame(df: pd.DataFrame, symbol: str = "") -> List[Bar]:
    frame = clean_frame(df, symbol)
    return [
        Bar(
            timestamp=row.timestamp.to_pydatetime(),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
        )
        for row in frame.itertuples(index=False)
    ]


def bars_to_frame(bars: Sequence[Bar]) -> pd.DataFrame:
    return pd.DataFrame([b.to_dict() for b in bars], columns=STANDARD_COLUMNS).assign(
        timestamp=lambda f: pd.to_datetime(f["timestamp"], utc=True)
    )


def load_bars(path: str | Path, symbol: str = "") -> List[Bar]:
    """
    Load bars from a CSV or JSON (records) file.

    Raises:
        DataValidationError: On unsupported extension or malformed content
    """
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix == ".csv":
        frame = pd.read_csv(path)
    elif suffix == ".json":
        frame = pd.read_json(path, orient="records", convert_dates=False)
    else:
        raise DataValidationError(f"Unsupported bar file type: {path.suffix}")
    bars = bars_from_frame(frame, symbol or path.stem)
    logger.info(f"Loaded {len(bars)} bars from {path}")
    return bars


# -------------------------
# Validation
# -------------------------
def validate_bars(bars: Sequence[Bar]) -> None:
    """
    Raises:
        DataValidationError: If timestamps are not strictly ascending or a bar
            has low > high
    """
    previous: Optional[datetime] = None
    for i, bar in enumerate(bars):
        if not 0 <= bar.low <= bar.high:
            raise DataValidationError(f"Bar {i} has invalid range low={bar.low} high={bar.high}")
        if previous is not None and bar.timestamp <= previous:
            raise DataValidationError(
                f"Bar {i} timestamp {bar.timestamp.isoformat()} is not after {previous.isoformat()}"
            )
        previous = bar.timestamp


def timeframe_to_timedelta(timeframe: str) -> Optional[pd.Timedelta]:
    """'1h' -> 1 hour, '1d' -> 1 day; None for unknown formats."""
    unit = _TIMEFRAME_UNITS.get(timeframe[-1:].lower()) if timeframe else None
    if unit is None:
        return None
    try:
        return pd.Timedelta(int(timeframe[:-1]), unit=unit)
    except ValueError:
        return None


def detect_gaps(bars: Sequence[Bar], timeframe: str) -> List[Tuple[datetime, datetime]]:
    """Pairs of consecutive timestamps further apart than 1.5x the timeframe."""
    step = timeframe_to_timedelta(timeframe)
    if step is None or len(bars) < 2:
        return []
    tolerance = step * 1.5
    return [
        (prev.timestamp, cur.timestamp)
        for prev, cur in zip(bars, bars[1:])
        if (cur.timestamp - prev.timestamp) > tolerance
    ]


# -------------------------
# Live feeds
# -------------------------
class BarFeed(ABC):
    """Trailing bars plus a live price for one symbol."""

    @abstractmethod
    async def get_bars(self, symbol: str, timeframe: str, limit: int) -> List[Bar]:
        """Latest `limit` bars in ascending order."""

    @abstractmethod
    async def get_price(self, symbol: str) -> float:
        """Current price."""


class StaticBarFeed(BarFeed):
    """In-memory feed; the live price defaults to the last close."""

    def __init__(self, bars: Mapping[str, Sequence[Bar]], prices: Optional[Mapping[str, float]] = None):
        self._bars: Dict[str, List[Bar]] = {}
        for symbol, series in bars.items():
            validate_bars(series)
            self._bars[symbol] = list(series)
        self._prices: Dict[str, float] = dict(prices or {})

    def set_price(self, symbol: str, price: float) -> None:
        self._prices[symbol] = price

    def append(self, symbol: str, bar: Bar) -> None:
        series = self._bars.setdefault(symbol, [])
        validate_bars(series[-1:] + [bar])
        series.append(bar)

    async def get_bars(self, symbol: str, timeframe: str, limit: int) -> List[Bar]:
        return list(self._bars.get(symbol, [])[-limit:])

    async def get_price(self, symbol: str) -> float:
        if symbol in self._prices:
            return self._prices[symbol]
        series = self._bars.get(symbol)
        if not series:
            raise DataValidationError(f"No bars for {symbol}")
        return series[-1].close


class ExchangeBarFeed(BarFeed):
    """Feed backed by a connected data.exchange.ExchangeConnector."""

    def __init__(self, connector: Any):
        self.connector = connector

    async def get_bars(self, symbol: str, timeframe: str, limit: int) -> List[Bar]:
        bars = await self.connector.fetch_bars(symbol, timeframe, limit=limit)
        gaps = detect_gaps(bars, timeframe)
        if gaps:
            logger.warning(f"{len(gaps)} gaps in {symbol} {timeframe} bars, first at {gaps[0][0].isoformat()}")
        return bars

    async def get_price(self, symbol: str) -> float:
        return await self.connector.fetch_price(symbol)


# -------------------------
# Historical store
# -------------------------
class HistoricalBarStore(ABC):
    """Read-only source of historical bars for backtests."""

    @abstractmethod
    def get_bars(self, symbol: str, start: Optional[datetime] = None,
                 end: Optional[datetime] = None) -> List[Bar]:
        """Bars with start <= timestamp <= end, ascending."""

    @abstractmethod
    def symbols(self) -> List[str]:
        """Symbols with stored bars."""


class InMemoryBarStore(HistoricalBarStore):
    """
    Thread-safe in-memory store.

    Series are validated on insert and copied out on read, so concurrent
    backtests never share a mutable list.
    """

    def __init__(self, bars: Optional[Mapping[str, Sequence[Bar]]] = None):
        self._lock = threading.RLock()
        self._bars: Dict[str, Tuple[Bar, ...]] = {}
        for symbol, series in (bars or {}).items():
            self.put(symbol, series)

    @classmethod
    def from_files(cls, files: Mapping[str, str | Path]) -> "InMemoryBarStore":
        return cls({symbol: load_bars(path, symbol) for symbol, path in files.items()})

    def put(self, symbol: str, bars: Sequence[Bar]) -> None:
        validate_bars(bars)
        with self._lock:
            self._bars[symbol] = tuple(bars)

    def get_bars(self, symbol: str, start: Optional[datetime] = None,
                 end: Optional[datetime] = None) -> List[Bar]:
        with self._lock:
            series = self._bars.get(symbol, ())
        lo = to_utc(start) if start is not None else None
        hi = to_utc(end) if end is not None else None
        return [
            b for b in series
            if (lo is None or b.timestamp >= lo) and (hi is None or b.timestamp <= hi)
        ]

    def symbols(self) -> List[str]:
        with self._lock:
            return sorted(self._bars)

    def available_range(self, symbol: str) -> Optional[Tuple[datetime, datetime]]:
        with self._lock:
            series = self._bars.get(symbol)
        if not series:
            return None
        return series[0].timestamp, series[-1].timestamp
