"""
exchange.py - Async ccxt Exchange Connector

Thin async wrapper over ccxt used by the live bar feed and the exchange
execution port.

Guarantees provided:
- connect() is guarded against concurrent calls, disconnect() is idempotent
- Per-request timeout via asyncio.wait_for
- Retry only on network-like errors, with backoff on rate limits
- OHLCV rows are validated and normalized into Bar values (ascending, unique)
- Market orders are returned as raw ccxt order dicts
"""

from __future__ import annotations

import asyncio
import logging
import time
from threading import Lock
from typing import Any, Dict, List, Optional, Sequence

import ccxt
import ccxt.async_support as ccxt_async

from core.errors import DataValidationError, EngineError
from core.models import Bar, to_utc

logger = logging.getLogger(__name__)


class ExchangeError(EngineError):
    pass


# ccxt errors that are safe to retry
_RETRYABLE = (
    ccxt.NetworkError,
    ccxt.RequestTimeout,
    ccxt.ExchangeNotAvailable,
    ccxt.DDoSProtection,
)


def normalize_ohlcv_row(raw: Sequence[Any]) -> Bar:
    """
    Validate one [ts_ms, open, high, low, close, volume] row.

    Raises:
        DataValidationError: On wrong shape, non-numeric values or low > high
    """
    if not isinstance(raw, (list, tuple)) or len(raw) < 5:
        raise DataValidationError(f"OHLCV row must have at least 5 elements, got {raw!r}")
    try:
        ts = int(raw[0])
        o, h, l, c = (float(x) for x in raw[1:5])
        v = float(raw[5]) if len(raw) > 5 and raw[5] is not None else 0.0
    except (TypeError, ValueError) as exc:
        raise DataValidationError(f"OHLCV values must be numeric: {raw!r}") from exc

    if not (0 <= l <= h):
        raise DataValidationError(f"Invalid OHLCV values (low={l}, high={h})")
    return Bar(timestamp=to_utc(ts), open=o, high=h, low=l, close=c, volume=v)


class ExchangeConnector:
    """
    Async ccxt client wrapper.

    Usage:
        conn = ExchangeConnector("binance", api_key=..., secret=..., test_mode=True)
        await conn.connect()
        bars = await conn.fetch_bars("BTC/USDT", "1d", limit=250)
        await conn.disconnect()
    """

    DEFAULT_TIMEOUT = 10.0
    MAX_ATTEMPTS = 5

    def __init__(self, exchange_id: str = "binance", api_key: Optional[str] = None,
                 secret: Optional[str] = None, test_mode: bool = True,
                 timeout: float = DEFAULT_TIMEOUT):
        self.exchange_id = exchange_id
        self.api_key = api_key
        self.secret = secret
        self.test_mode = test_mode
        self.timeout = timeout
        self._lock = Lock()
        self._client = None
        self._connected = False
        self._rate_backoff = 1.0

    # -----------------------
    # Lifecycle
    # -----------------------
    async def connect(self) -> None:
        if not self._lock.acquire(blocking=False):
            raise ExchangeError("connect() already in progress")
        try:
            if self._connected:
                return
            ex_cls = getattr(ccxt_async, self.exchange_id, None)
            if ex_cls is None:
                raise ExchangeError(f"Exchange '{self.exchange_id}' not available in ccxt")
            client = ex_cls({
                "apiKey": self.api_key,
                "secret": self.secret,
                "enableRateLimit": True,
            })
            if self.test_mode and hasattr(client, "set_sandbox_mode"):
                client.set_sandbox_mode(True)

            if not client.has.get("fetchOHLCV", False):
                await client.close()
                raise ExchangeError(f"Exchange '{self.exchange_id}' does not support fetchOHLCV")

            self._client = client
            self._connected = True
            logger.info(f"Connected to {self.exchange_id} (test_mode={self.test_mode})")
        finally:
            self._lock.release()

    async def disconnect(self) -> None:
        if not self._connected:
            return
        try:
            if self._client is not None:
                await self._client.close()
        except ccxt.BaseError as exc:
            logger.warning(f"Error closing {self.exchange_id} client: {exc}")
        finally:
            self._client = None
            self._connected = False

    def is_connected(self) -> bool:
        return self._connected

    def _require_client(self):
        if not self._connected or self._client is None:
            raise ExchangeError("Not connected")
        return self._client

    # -----------------------
    # Request wrapper: timeout + retry + backoff
    # -----------------------
    async def _request_with_retry(self, coro_factory, *args, **kwargs):
        """
        Await coro_factory(*args, **kwargs) with a timeout, retrying network
        errors and rate limits. Authentication and logical errors propagate on
        the first attempt.
        """
        last_exc: Optional[BaseException] = None
        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            try:
                return await asyncio.wait_for(coro_factory(*args, **kwargs), timeout=self.timeout)
            except asyncio.TimeoutError as exc:
                last_exc = exc
                backoff = min(30.0, 2 ** (attempt - 1))
                logger.warning(f"Request timeout (attempt {attempt}/{self.MAX_ATTEMPTS}), retrying in {backoff:.1f}s")
            except ccxt.RateLimitExceeded as exc:
                last_exc = exc
                self._rate_backoff = min(60.0, self._rate_backoff * 2.0)
                backoff = self._rate_backoff
                logger.warning(f"Rate limit exceeded (attempt {attempt}/{self.MAX_ATTEMPTS}), backing off {backoff:.1f}s")
            except _RETRYABLE as exc:
                last_exc = exc
                backoff = min(10.0, 0.5 * 2 ** (attempt - 1))
                logger.warning(f"Network error (attempt {attempt}/{self.MAX_ATTEMPTS}): {exc}, retrying in {backoff:.1f}s")
            if attempt < self.MAX_ATTEMPTS:
                await asyncio.sleep(backoff)
        raise ExchangeError(f"Request failed after {self.MAX_ATTEMPTS} attempts: {last_exc}")

    # -----------------------
    # Market data
    # -----------------------
    async def fetch_bars(self, symbol: str, timeframe: str = "1d", limit: int = 250,
                         since_ms: Optional[int] = None) -> List[Bar]:
        """
        Fetch up to `limit` candles, validated, ascending and de-duplicated.
        """
        client = self._require_client()
        rows = await self._request_with_retry(client.fetch_ohlcv, symbol, timeframe, since_ms, limit)
        by_ts: Dict[Any, Bar] = {}
        for raw in rows or []:
            bar = normalize_ohlcv_row(raw)
            by_ts[bar.timestamp] = bar
        bars = [by_ts[ts] for ts in sorted(by_ts)]
        logger.debug(f"Fetched {len(bars)} {timeframe} bars for {symbol}")
        return bars

    async def fetch_price(self, symbol: str) -> float:
        client = self._require_client()
        ticker = await self._request_with_retry(client.fetch_ticker, symbol)
        price = ticker.get("last") or ticker.get("close")
        if not price or price <= 0:
            raise DataValidationError(f"Ticker for {symbol} has no usable price: {ticker!r}")
        return float(price)

    # -----------------------
    # Orders
    # -----------------------
    async def create_market_order(self, symbol: str, side: str, amount: float) -> Dict[str, Any]:
        """
        Place a market order for `amount` base units.

        Orders are not retried: a timed-out order may still have been placed.
        """
        client = self._require_client()
        started = time.time()
        try:
            order = await asyncio.wait_for(
                client.create_order(symbol, "market", side, amount), timeout=self.timeout
            )
        except (ccxt.BaseError, asyncio.TimeoutError) as exc:
            raise ExchangeError(f"{side} order for {amount} {symbol} failed: {exc}") from exc
        logger.info(
            f"Order {order.get('id')} {side} {amount:.8f} {symbol} placed in {time.time() - started:.2f}s"
        )
        return order

    def __repr__(self) -> str:
        return f"ExchangeConnector(exchange={self.exchange_id}, test_mode={self.test_mode}, connected={self._connected})"
