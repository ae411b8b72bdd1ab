"""
Backtesting engine.

Responsibilities:
- Replay an ordered bar series through one strategy config
- Warm indicators up over the first 200 bars, then decide on every bar
- Fill decisions through a simulated execution port (fixed-rate fee)
- Keep cost-basis accounting in a PortfolioAccount owned by the run
- Yield trades, snapshots and equity per bar; compute metrics at the end

Design notes:
- steps() is a lazy generator. Each call starts a fresh replay with a new
  account, so the sequence can be restarted from the beginning and two
  replays of the same inputs are identical.
- No wall clock is read: "now" is always the timestamp of the current bar.
- Cancellation is cooperative: run() checks the cancel event between bars.
- A decision is applied to the account only after the port returns a fill.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional, Sequence

from core.errors import BacktestCancelled, InsufficientDataError
from core.models import (
    Bar,
    DecisionRecord,
    EquityPoint,
    MarketConditions,
    Regime,
    Snapshot,
    TradeAction,
    TradeDecision,
    TradeRecord,
)
from backtesting.reports import BacktestMetrics, compute_metrics
from data.bar_feed import validate_bars
from execution.ledger import PortfolioAccount
from execution.port import DEFAULT_FEE_RATE, SimulatedExecutionPort, SymbolContext
from strategies.base import StrategyConfig
from strategies.indicators import LONG_MA_PERIOD, IndicatorCalculator
from strategies.regime_detector import RegimeDetector
from strategies.registry import policy_for

logger = logging.getLogger(__name__)

# Share of cash a single buy may use; the fee must also fit in the remainder
BUY_CASH_CAP = 0.99


@dataclass
class ExecutionConfig:
    """Simulation fidelity knobs for one run."""
    fee_rate: float = DEFAULT_FEE_RATE
    min_trade_usd: float = 10.0
    snapshot_interval: int = 7
    warmup: int = LONG_MA_PERIOD

    def __post_init__(self):
        if self.warmup < LONG_MA_PERIOD:
            raise ValueError(f"warmup must be at least {LONG_MA_PERIOD} bars, got {self.warmup}")
        if self.fee_rate < 0:
            raise ValueError(f"fee_rate must be >= 0, got {self.fee_rate}")


@dataclass
class BacktestStep:
    """Everything produced while processing one bar."""
    index: int
    bar: Bar
    market: MarketConditions
    decision: DecisionRecord
    equity: EquityPoint
    progress: int
    trade: Optional[TradeRecord] = None
    snapshot: Optional[Snapshot] = None


@dataclass
class BacktestResult:
    strategy_id: str
    initial_capital: float
    metrics: BacktestMetrics
    trades: List[TradeRecord] = field(default_factory=list)
    snapshots: List[Snapshot] = field(default_factory=list)
    equity_curve: List[EquityPoint] = field(default_factory=list)
    decision_count: int = 0

    def to_dict(self) -> dict:
        return {
            "strategy_id": self.strategy_id,
            "initial_capital": self.initial_capital,
            "metrics": self.metrics.to_dict(),
            "trades": [t.to_dict() for t in self.trades],
            "snapshots": [s.to_dict() for s in self.snapshots],
            "equity_curve": [p.to_dict() for p in self.equity_curve],
            "decision_count": self.decision_count,
        }


class BacktestRunner:
    """
    Bar-by-bar replay of one strategy over one series.

    Args:
        bars: Bars in strictly ascending timestamp order
        config: Strategy under test
        initial_capital: Starting cash
        exec_cfg: Fee, minimum trade size, snapshot cadence, warmup length
        executor: Simulated port (built from exec_cfg.fee_rate when omitted)
        symbol: Symbol label used in fills
        known_ath: Optional ATH seed (a peak older than the loaded history)

    Raises:
        InsufficientDataError: If there are not more bars than the warmup
        DataValidationError: If bars are out of order
    """

    def __init__(
        self,
        bars: Sequence[Bar],
        config: StrategyConfig,
        initial_capital: float,
        exec_cfg: Optional[ExecutionConfig] = None,
        executor: Optional[SimulatedExecutionPort] = None,
        symbol: str = "",
        known_ath: Optional[float] = None,
        detector: Optional[RegimeDetector] = None,
    ):
        self.exec_cfg = exec_cfg or ExecutionConfig()
        required = self.exec_cfg.warmup + 1
        if len(bars) < required:
            raise InsufficientDataError(required, len(bars))
        if initial_capital <= 0:
            raise ValueError(f"initial_capital must be positive, got {initial_capital}")
        validate_bars(bars)

        self.bars = tuple(bars)
        self.config = config
        self.initial_capital = float(initial_capital)
        self.executor = executor or SimulatedExecutionPort(self.exec_cfg.fee_rate)
        self.symbol = symbol
        self.known_ath = known_ath
        self.detector = detector or RegimeDetector()
        self.policy = policy_for(config)

    @property
    def total_steps(self) -> int:
        return len(self.bars) - self.exec_cfg.warmup

    # -------------------------
    # Replay
    # -------------------------
    def steps(self) -> Iterator[BacktestStep]:
        """Lazily replay the series from the first bar with a fresh account."""
        cfg = self.config
        warmup = self.exec_cfg.warmup
        last_index = len(self.bars) - 1
        account = PortfolioAccount(cfg.id, self.initial_capital)
        calc = IndicatorCalculator(ath_seed=self.known_ath)
        thresholds = cfg.thresholds

        for i, bar in enumerate(self.bars):
            indicators = calc.update(bar)
            if i < warmup:
                continue

            market = self.detector.market_conditions(indicators, thresholds, bar.timestamp)
            portfolio = account.portfolio_state(bar.close)
            decision = self.policy.decide(market, portfolio, cfg)
            regime = self.policy.interpret_regime(market, cfg)

            trade = self._execute(account, decision, market, bar, regime)

            value = account.total_value(bar.close)
            snapshot = None
            if i % self.exec_cfg.snapshot_interval == 0 or i == last_index:
                snapshot = self._snapshot(account, market, bar)

            yield BacktestStep(
                index=i,
                bar=bar,
                market=market,
                decision=DecisionRecord(
                    strategy_id=cfg.id,
                    timestamp=bar.timestamp,
                    price=bar.close,
                    regime=regime,
                    market_regime=market.regime,
                    regime_score=market.regime_score,
                    action=decision.action,
                    amount=decision.amount,
                    reason=decision.reason,
                    signals=market.signals,
                ),
                equity=EquityPoint(bar.timestamp, value),
                progress=int((i - warmup + 1) * 100 / self.total_steps),
                trade=trade,
                snapshot=snapshot,
            )

    def run(
        self,
        cancel_event: Optional[threading.Event] = None,
        on_progress: Optional[Callable[[int], None]] = None,
    ) -> BacktestResult:
        """
        Replay the whole series and compute metrics.

        Args:
            cancel_event: Checked between bars; when set the run stops
            on_progress: Called with the integer percent whenever it changes

        Raises:
            BacktestCancelled: If cancel_event was set mid-run
        """
        logger.info(f"Backtest start: {self.config.id} over {len(self.bars)} bars, capital {self.initial_capital:,.2f}")
        trades: List[TradeRecord] = []
        snapshots: List[Snapshot] = []
        equity: List[EquityPoint] = []
        decisions = 0
        last_progress = -1

        for step in self.steps():
            if cancel_event is not None and cancel_event.is_set():
                raise BacktestCancelled(f"Backtest of {self.config.id} cancelled at bar {step.index}")
            decisions += 1
            equity.append(step.equity)
            if step.trade is not None:
                trades.append(step.trade)
            if step.snapshot is not None:
                snapshots.append(step.snapshot)
            if on_progress is not None and step.progress != last_progress:
                last_progress = step.progress
                on_progress(step.progress)

        metrics = compute_metrics(
            trades,
            equity,
            self.initial_capital,
            start_price=self.bars[self.exec_cfg.warmup].close,
            end_price=self.bars[-1].close,
        )
        logger.info(
            f"Backtest done: {self.config.id} return {metrics.total_return:+.2f}% "
            f"(buy&hold {metrics.buy_and_hold_return:+.2f}%), {metrics.total_trades} trades"
        )
        return BacktestResult(
            strategy_id=self.config.id,
            initial_capital=self.initial_capital,
            metrics=metrics,
            trades=trades,
            snapshots=snapshots,
            equity_curve=equity,
            decision_count=decisions,
        )

    # -------------------------
    # Helpers
    # -------------------------
    def _execute(self, account: PortfolioAccount, decision: TradeDecision,
                 market: MarketConditions, bar: Bar, regime: Regime) -> Optional[TradeRecord]:
        ctx = SymbolContext(self.symbol or self.config.id, bar.close, bar.timestamp)

        if decision.action is TradeAction.BUY:
            usd = min(decision.amount, account.cash * BUY_CASH_CAP,
                      self.executor.max_buy_notional(account.cash))
            if usd < self.exec_cfg.min_trade_usd:
                return None
            fill = self.executor.fill_buy(ctx, usd)
            account.apply_buy_fill(fill.amount, fill.cost, fill.fee, bar.timestamp)
            return self._trade_record(account, market, bar, regime, decision, fill)

        if decision.action is TradeAction.SELL:
            amount = min(decision.amount, account.position.amount)
            if amount <= 0:
                return None
            fill = self.executor.fill_sell(ctx, amount)
            result = account.apply_sell_fill(fill.amount, fill.cost, fill.fee, bar.timestamp)
            return self._trade_record(
                account, market, bar, regime, decision, fill,
                portion=result.cost_basis_portion,
                profit=result.profit,
                profit_percent=result.profit_percent,
            )

        return None

    def _trade_record(self, account, market, bar, regime, decision, fill,
                      portion=None, profit=None, profit_percent=None) -> TradeRecord:
        return TradeRecord(
            action=decision.action,
            timestamp=bar.timestamp,
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
            portfolio_value=account.total_value(bar.close),
            cash_balance=account.cash,
            crypto_balance=account.position.amount,
            strategy_id=self.config.id,
        )

    @staticmethod
    def _snapshot(account: PortfolioAccount, market: MarketConditions, bar: Bar) -> Snapshot:
        amount = account.position.amount
        crypto_value = amount * bar.close
        return Snapshot(
            timestamp=bar.timestamp,
            price=bar.close,
            portfolio_value=account.cash + crypto_value,
            cash=account.cash,
            crypto_amount=amount,
            crypto_value=crypto_value,
            regime=market.regime,
            regime_score=market.regime_score,
            rsi=market.rsi,
        )


def run_backtest(bars: Sequence[Bar], config: StrategyConfig, initial_capital: float,
                 **kwargs) -> BacktestResult:
    """Convenience wrapper: build a runner and run it to completion."""
    return BacktestRunner(bars, config, initial_capital, **kwargs).run()
