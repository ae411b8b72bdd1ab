"""
trading_loop.py - Live Trading Loop

Runs every enabled strategy against one symbol on a fixed interval.

Responsibilities:
- Own one PortfolioAccount per strategy, seeded with its capital allocation
- Per tick: fetch trailing bars and the live price, classify the market with
  each strategy's thresholds, decide, execute through the port, then apply
  the fill to that strategy's account
- Log every decision record and trade; record performance snapshots
- Count consecutive failed ticks and pause the loop (status error) when the
  limit is reached

Ticks never overlap. A failed order propagates out of the tick and leaves
the account exactly as it was before the order.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from core.errors import DataValidationError
from core.models import (
    DecisionRecord,
    MarketConditions,
    Regime,
    TradeAction,
    TradeDecision,
    TradeRecord,
)
from core.state import BotStatus, Environment, LoopState
from data.bar_feed import BarFeed
from execution.ledger import PortfolioAccount
from execution.port import ExecutionPort, Fill, SymbolContext
from monitoring.logger import log_decision, log_error, log_event, log_trade
from monitoring.metrics import PerformanceTracker
from strategies.base import StrategyConfig
from strategies.indicators import LONG_MA_PERIOD, KNOWN_ATH, latest_snapshot
from strategies.regime_detector import RegimeDetector
from strategies.registry import policy_for

logger = logging.getLogger(__name__)

# Bars requested per tick; covers the 200-bar MA with room for gaps
DEFAULT_HISTORY_BARS = 250


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TradingLoop:
    """
    Interval-driven live loop over several strategies.

    Args:
        feed: Source of trailing bars and the live price
        port: Where orders go (simulated for paper trading, exchange for live)
        strategies: Enabled strategy configs, one account each
        symbol: Traded symbol, e.g. 'BTC/USDT'
        initial_capital: Total capital, split by each config's allocation_percent
        interval_seconds: Pause between the end of one tick and the next
        max_consecutive_errors: Failed ticks in a row before the loop pauses
        known_ath: ATH seed; falls back to the built-in table for the symbol
        tracker: Performance tracker (a new one when omitted)
        timeframe: Bar timeframe requested from the feed
        min_trade_usd: Buys below this notional are skipped
        environment: paper or live, informational
    """

    def __init__(
        self,
        feed: BarFeed,
        port: ExecutionPort,
        strategies: Sequence[StrategyConfig],
        symbol: str,
        initial_capital: float,
        interval_seconds: float = 3600,
        max_consecutive_errors: int = 5,
        known_ath: Optional[float] = None,
        tracker: Optional[PerformanceTracker] = None,
        timeframe: str = "1h",
        history_bars: int = DEFAULT_HISTORY_BARS,
        min_trade_usd: float = 10.0,
        environment: Environment = Environment.PAPER,
        detector: Optional[RegimeDetector] = None,
    ):
        if not strategies:
            raise ValueError("TradingLoop needs at least one strategy")
        if initial_capital <= 0:
            raise ValueError(f"initial_capital must be positive, got {initial_capital}")
        if interval_seconds < 0:
            raise ValueError(f"interval_seconds must be >= 0, got {interval_seconds}")

        self.feed = feed
        self.port = port
        self.symbol = symbol
        self.initial_capital = float(initial_capital)
        self.interval_seconds = interval_seconds
        self.timeframe = timeframe
        self.history_bars = max(history_bars, LONG_MA_PERIOD)
        self.min_trade_usd = min_trade_usd
        self.tracker = tracker or PerformanceTracker()
        self.detector = detector or RegimeDetector()
        self.state = LoopState(environment, max_consecutive_errors)

        if known_ath is None and symbol in KNOWN_ATH:
            known_ath = KNOWN_ATH[symbol][0]
        self.known_ath = known_ath

        self.configs: Dict[str, StrategyConfig] = {}
        self.accounts: Dict[str, PortfolioAccount] = {}
        for cfg in strategies:
            if cfg.id in self.configs:
                raise ValueError(f"Duplicate strategy id: {cfg.id}")
            self.configs[cfg.id] = cfg
            self.accounts[cfg.id] = PortfolioAccount(cfg.id, self.initial_capital * cfg.allocation_percent / 100)

        self.trades: List[TradeRecord] = []
        self.decisions: List[DecisionRecord] = []
        self._tick_lock = asyncio.Lock()
        self._stop = asyncio.Event()

    # -------------------------
    # Control
    # -------------------------
    async def run(self) -> None:
        """Tick until stop() is called or the loop pauses itself."""
        self._stop.clear()
        self.state.reset_errors()
        self.state.set_status(BotStatus.RUNNING, "run")
        log_event("loop.start", {
            "symbol": self.symbol,
            "strategies": list(self.configs),
            "interval_seconds": self.interval_seconds,
            "environment": self.state.environment.value,
        })

        while not self._stop.is_set() and self.state.status is BotStatus.RUNNING:
            try:
                await self.tick()
            except Exception as exc:
                self._handle_error(exc)
            if self._stop.is_set() or self.state.status is not BotStatus.RUNNING:
                break
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

        if self.state.status is BotStatus.RUNNING:
            self.state.set_status(BotStatus.STOPPED, "stop requested")
        log_event("loop.exit", {"status": self.state.status.value, "trades": len(self.trades)})

    def stop(self) -> None:
        """Stop scheduling ticks; an in-flight tick finishes first."""
        self._stop.set()
        if self.state.status is BotStatus.RUNNING:
            self.state.set_status(BotStatus.STOPPED, "stop requested")

    def pause(self) -> None:
        self._stop.set()
        if self.state.status is BotStatus.RUNNING:
            self.state.set_status(BotStatus.PAUSED, "paused")

    # -------------------------
    # One tick
    # -------------------------
    async def tick(self, now: Optional[datetime] = None) -> List[DecisionRecord]:
        """
        Evaluate every strategy once.

        Args:
            now: Decision time (wall clock when omitted); the buy throttle
                measures hours against it

        Returns:
            The decision records of this tick, one per strategy

        Raises:
            ExecutionError: An order failed; accounts of that strategy are untouched
            DataValidationError: The feed returned no bars
        """
        async with self._tick_lock:
            now = now or _utcnow()
            bars = await self.feed.get_bars(self.symbol, self.timeframe, self.history_bars)
            if not bars:
                raise DataValidationError(f"No bars for {self.symbol}")
            if len(bars) < LONG_MA_PERIOD:
                logger.warning(f"Only {len(bars)} bars for {self.symbol}; long MA factors are skipped")
            price = await self.feed.get_price(self.symbol)
            snapshot = latest_snapshot(bars, ath_seed=self.known_ath, price=price)

            records: List[DecisionRecord] = []
            market: Optional[MarketConditions] = None
            for sid, cfg in self.configs.items():
                market = self.detector.market_conditions(snapshot, cfg.thresholds, now)
                records.append(await self._run_strategy(cfg, self.accounts[sid], market))

            if market is not None:
                self.tracker.record_combined(self.accounts.values(), market, now)
            self.state.record_success(now)
            return records

    async def _run_strategy(self, cfg: StrategyConfig, account: PortfolioAccount,
                            market: MarketConditions) -> DecisionRecord:
        policy = policy_for(cfg)
        decision = policy.decide(market, account.portfolio_state(market.price), cfg)
        regime = policy.interpret_regime(market, cfg)
        record = DecisionRecord(
            strategy_id=cfg.id,
            timestamp=market.timestamp,
            price=market.price,
            regime=regime,
            market_regime=market.regime,
            regime_score=market.regime_score,
            action=decision.action,
            amount=decision.amount,
            reason=decision.reason,
            signals=market.signals,
        )
        self.decisions.append(record)
        log_decision(record.to_dict())

        trade = await self._execute(cfg, account, decision, market, regime)
        if trade is not None:
            self.trades.append(trade)
            log_trade(trade.to_dict())
        self.tracker.record(account, market, market.timestamp)
        return record

    async def _execute(self, cfg: StrategyConfig, account: PortfolioAccount, decision: TradeDecision,
                       market: MarketConditions, regime: Regime) -> Optional[TradeRecord]:
        ctx = SymbolContext(self.symbol, market.price, market.timestamp)

        if decision.action is TradeAction.BUY:
            usd = min(decision.amount, self.port.max_buy_notional(account.cash))
            if usd < self.min_trade_usd:
                logger.debug(f"{cfg.id}: buy of ${usd:.2f} below minimum ${self.min_trade_usd:.2f}, skipped")
                return None
            fill = await self.port.buy(ctx, usd)
            account.apply_buy_fill(fill.amount, fill.cost, fill.fee, market.timestamp)
            return self._trade_record(cfg, account, market, regime, decision, fill)

        if decision.action is TradeAction.SELL:
            amount = min(decision.amount, account.position.amount)
            if amount <= 0:
                return None
            fill = await self.port.sell(ctx, amount)
            result = account.apply_sell_fill(fill.amount, fill.cost, fill.fee, market.timestamp)
            return self._trade_record(
                cfg, account, market, regime, decision, fill,
                portion=result.cost_basis_portion,
                profit=result.profit,
                profit_percent=result.profit_percent,
            )

        return None

    @staticmethod
    def _trade_record(cfg: StrategyConfig, account: PortfolioAccount, market: MarketConditions,
                      regime: Regime, decision: TradeDecision, fill: Fill,
                      portion=None, profit=None, profit_percent=None) -> TradeRecord:
        return TradeRecord(
            action=decision.action,
            timestamp=fill.timestamp or market.timestamp,
            price=fill.price,
            amount=fill.amount,
            value_usd=fill.cost,
            fee=fill.fee,
            regime=regime,
            regime_score=market.regime_score,
            reason=decision.reason,
            cost_basis_portion=portion,
            profit=profit,
            profit_percent=profit_percent,
            rsi=market.rsi,
            percent_from_ath=market.percent_from_ath,
            portfolio_value=account.total_value(market.price),
            cash_balance=account.cash,
            crypto_balance=account.position.amount,
            strategy_id=cfg.id,
        )

    # -------------------------
    # Errors
    # -------------------------
    def _handle_error(self, exc: Exception) -> None:
        tripped = self.state.record_error(str(exc))
        log_error("loop.tick_failed", str(exc), {
            "consecutive_errors": self.state.consecutive_errors,
            "max_consecutive_errors": self.state.max_consecutive_errors,
        }, exc_info=exc)
        if tripped:
            self._stop.set()
            logger.error(
                f"Trading loop paused after {self.state.consecutive_errors} consecutive errors; "
                f"last error: {exc}"
            )

    def status(self) -> dict:
        """State plus per-strategy accounts, for CLIs and dashboards."""
        return {
            **self.state.snapshot(),
            "symbol": self.symbol,
            "accounts": {sid: acc.to_dict() for sid, acc in self.accounts.items()},
            "trades": len(self.trades),
        }
