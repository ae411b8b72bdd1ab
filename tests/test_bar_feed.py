"""
Tests for bar loading, validation, feeds, the historical store and the
ccxt connector's normalization.
"""

from datetime import datetime, timedelta, timezone

import ccxt
import pandas as pd
import pytest

from core.errors import DataValidationError
from core.models import Bar
from data.bar_feed import (
    ExchangeBarFeed,
    InMemoryBarStore,
    StaticBarFeed,
    bars_from_frame,
    bars_to_frame,
    detect_gaps,
    load_bars,
    timeframe_to_timedelta,
    validate_bars,
)
from data.exchange import ExchangeConnector, ExchangeError, normalize_ohlcv_row

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _bars(n, step=timedelta(hours=1), price=100.0):
    return [Bar(T0 + i * step, price, price + 1, price - 1, price, 1.0) for i in range(n)]


class DummyClient:
    def __init__(self, rows=None, ticker=None, failures=0):
        self.rows = rows or []
        self.ticker = ticker or {}
        self.failures = failures

    async def fetch_ohlcv(self, symbol, timeframe, since, limit):
        if self.failures:
            self.failures -= 1
            raise ccxt.NetworkError("connection reset")
        return self.rows

    async def fetch_ticker(self, symbol):
        return self.ticker


def _connector(client):
    conn = ExchangeConnector("binance")
    conn._client = client
    conn._connected = True
    return conn


# -------------------------
# Frames and files
# -------------------------
def test_clean_frame_sorts_dedupes_and_drops_bad_rows():
    df = pd.DataFrame({
        "Timestamp": [3_600_000, 0, 0, 7_200_000, 10_800_000],
        "Open": [2, 1, 1, 3, 4],
        "High": [2, 1, 1.5, 3, 3],
        "Low": [2, 1, 1, 3, 5],
        "Close": [2, 1, 1.2, 3, 4],
    })
    bars = bars_from_frame(df)
    assert [b.close for b in bars] == [1.2, 2.0, 3.0]
    assert bars[0].timestamp == datetime(1970, 1, 1, tzinfo=timezone.utc)
    assert all(b.volume == 0.0 for b in bars)


def test_missing_column_rejected():
    with pytest.raises(DataValidationError):
        bars_from_frame(pd.DataFrame({"timestamp": [0], "close": [1.0]}))


def test_load_csv_and_json(tmp_path):
    frame = bars_to_frame(_bars(5))
    csv_path = tmp_path / "bars.csv"
    frame.to_csv(csv_path, index=False)
    assert load_bars(csv_path) == _bars(5)

    json_path = tmp_path / "bars.json"
    pd.DataFrame([b.to_dict() for b in _bars(3)]).to_json(json_path, orient="records")
    assert [b.timestamp for b in load_bars(json_path)] == [b.timestamp for b in _bars(3)]

    with pytest.raises(DataValidationError):
        load_bars(tmp_path / "bars.parquet")


# -------------------------
# Validation
# -------------------------
def test_validate_rejects_unordered_and_duplicate_timestamps():
    bars = _bars(3)
    validate_bars(bars)
    with pytest.raises(DataValidationError):
        validate_bars([bars[1], bars[0]])
    with pytest.raises(DataValidationError):
        validate_bars([bars[0], bars[0]])


def test_gap_detection():
    bars = _bars(3) + [Bar(T0 + timedelta(hours=6), 1, 1, 1, 1)]
    assert detect_gaps(bars, "1h") == [(T0 + timedelta(hours=2), T0 + timedelta(hours=6))]
    assert detect_gaps(bars, "bogus") == []
    assert timeframe_to_timedelta("4h") == pd.Timedelta(hours=4)
    assert timeframe_to_timedelta("1d") == pd.Timedelta(days=1)


# -------------------------
# Feeds and store
# -------------------------
@pytest.mark.asyncio
async def test_static_feed_returns_trailing_bars_and_price():
    feed = StaticBarFeed({"BTC/USDT": _bars(10)})
    assert len(await feed.get_bars("BTC/USDT", "1h", 4)) == 4
    assert await feed.get_price("BTC/USDT") == 100.0
    feed.set_price("BTC/USDT", 105.0)
    assert await feed.get_price("BTC/USDT") == 105.0
    with pytest.raises(DataValidationError):
        feed.append("BTC/USDT", _bars(1)[0])
    with pytest.raises(DataValidationError):
        await feed.get_price("ETH/USDT")


def test_store_filters_by_inclusive_range():
    store = InMemoryBarStore({"BTC/USDT": _bars(10)})
    window = store.get_bars("BTC/USDT", T0 + timedelta(hours=2), T0 + timedelta(hours=4))
    assert [b.timestamp for b in window] == [T0 + timedelta(hours=h) for h in (2, 3, 4)]
    assert store.available_range("BTC/USDT") == (T0, T0 + timedelta(hours=9))
    assert store.available_range("ETH/USDT") is None
    assert store.symbols() == ["BTC/USDT"]
    assert store.get_bars("ETH/USDT") == []


# -------------------------
# Exchange connector
# -------------------------
def test_normalize_ohlcv_row():
    bar = normalize_ohlcv_row([0, "1", 2, 0.5, 1.5, None])
    assert (bar.open, bar.high, bar.low, bar.close, bar.volume) == (1.0, 2.0, 0.5, 1.5, 0.0)
    with pytest.raises(DataValidationError):
        normalize_ohlcv_row([0, 1, 1])
    with pytest.raises(DataValidationError):
        normalize_ohlcv_row([0, 1, 1, 2, 1])
    with pytest.raises(DataValidationError):
        normalize_ohlcv_row([0, "x", 1, 1, 1])


@pytest.mark.asyncio
async def test_fetch_bars_sorts_and_dedupes():
    rows = [[7_200_000, 3, 3, 3, 3, 1], [0, 1, 1, 1, 1, 1], [7_200_000, 4, 4, 4, 4, 1]]
    feed = ExchangeBarFeed(_connector(DummyClient(rows=rows)))
    bars = await feed.get_bars("BTC/USDT", "1h", 10)
    assert [b.close for b in bars] == [1.0, 4.0]


@pytest.mark.asyncio
async def test_fetch_retries_network_errors():
    conn = _connector(DummyClient(rows=[[0, 1, 1, 1, 1, 1]], failures=1))
    assert len(await conn.fetch_bars("BTC/USDT", "1h")) == 1


@pytest.mark.asyncio
async def test_fetch_price_requires_usable_ticker():
    assert await _connector(DummyClient(ticker={"last": 42_000})).fetch_price("BTC/USDT") == 42_000.0
    with pytest.raises(DataValidationError):
        await _connector(DummyClient(ticker={"last": None})).fetch_price("BTC/USDT")


@pytest.mark.asyncio
async def test_requests_require_connection():
    with pytest.raises(ExchangeError):
        await ExchangeConnector("binance").fetch_price("BTC/USDT")
