"""
reports.py - Backtest Performance Analyzer and Reports

Responsibilities:
- Compute end-of-run metrics from trades and the equity curve
- Render a textual summary for the CLI
- Export trades and equity to pandas frames and persist a report directory

This module provides:
- compute_metrics(trades, equity_curve, initial_capital, start_price, end_price) -> BacktestMetrics
- max_drawdown(values, initial_capital) -> float
- sharpe_ratio(values) -> float
- format_summary(metrics) -> str
- trades_to_frame(trades) / equity_to_frame(equity_curve) -> DataFrame
- generate_plots(result, out_dir) -> dict(name -> png path)
- save_report(result, out_dir) -> dict(paths)

Plots are rendered with matplotlib's non-interactive Agg backend.
"""

from __future__ import annotations

import json
import os
import threading
from dataclasses import asdict, dataclass
from datetime import timezone
from typing import Any, Dict, List, Optional, Sequence

import matplotlib
import matplotlib.dates as mdates
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from core.models import EquityPoint, TradeAction, TradeRecord

matplotlib.use("Agg")

TRADING_DAYS_PER_YEAR = 365

_LOCK = threading.RLock()


@dataclass(frozen=True)
class BacktestMetrics:
    """
    Summary statistics of one backtest run. Percentages are in percent units.

    Attributes:
        final_capital: Last equity value
        total_return: (final - initial) / initial x 100
        total_return_usd: final - initial
        max_drawdown: Largest peak-to-trough drop of the equity curve (>= 0)
        sharpe_ratio: Annualized mean/std of per-bar equity returns
        win_rate: Profitable sells / sells x 100
        total_trades: Buys and sells
        profitable_trades: Sells with positive profit
        avg_trade_return: Mean sell profit percent
        avg_win_size: Mean profit of winning sells
        avg_loss_size: Mean absolute loss of losing sells
        buy_and_hold_return: Price change from the first simulated bar to the last
        outperformance: total_return - buy_and_hold_return
    """
    final_capital: float
    total_return: float
    total_return_usd: float
    max_drawdown: float
    sharpe_ratio: float
    win_rate: float
    total_trades: int
    profitable_trades: int
    avg_trade_return: float
    avg_win_size: float
    avg_loss_size: float
    buy_and_hold_return: float
    outperformance: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def max_drawdown(values: Sequence[float], initial_capital: float) -> float:
    """
    Largest percentage drop from a running peak. The peak starts at the
    initial capital, so a run that only loses still reports its drawdown.
    """
    if len(values) == 0:
        return 0.0
    equity = np.asarray(values, dtype=float)
    peaks = np.maximum.accumulate(np.concatenate(([initial_capital], equity)))[1:]
    with np.errstate(divide="ignore", invalid="ignore"):
        drawdowns = np.where(peaks > 0, (peaks - equity) / peaks * 100, 0.0)
    return float(max(0.0, drawdowns.max()))


def sharpe_ratio(values: Sequence[float], periods_per_year: int = TRADING_DAYS_PER_YEAR) -> float:
    """
    mean(r) x N / (std(r) x sqrt(N)) over per-bar returns, population std.

    Returns 0 when there are fewer than two points or the std is 0.
    """
    equity = np.asarray(values, dtype=float)
    if equity.size < 2:
        return 0.0
    prev = equity[:-1]
    with np.errstate(divide="ignore", invalid="ignore"):
        returns = np.where(prev != 0, np.diff(equity) / prev, 0.0)
    std = float(returns.std())
    if std == 0 or not np.isfinite(std):
        return 0.0
    return float(returns.mean() * periods_per_year / (std * np.sqrt(periods_per_year)))


def compute_metrics(
    trades: Sequence[TradeRecord],
    equity_curve: Sequence[EquityPoint],
    initial_capital: float,
    start_price: float,
    end_price: float,
) -> BacktestMetrics:
    """Compute metrics once at the end of a run."""
    values = [p.value for p in equity_curve]
    final_value = values[-1] if values else initial_capital
    total_return = (final_value - initial_capital) / initial_capital * 100 if initial_capital else 0.0

    sells = [t for t in trades if t.action is TradeAction.SELL]
    profits = np.asarray([t.profit or 0.0 for t in sells], dtype=float)
    wins = profits[profits > 0]
    losses = profits[profits < 0]

    win_rate = len(wins) / len(sells) * 100 if sells else 0.0
    avg_trade_return = float(np.mean([t.profit_percent or 0.0 for t in sells])) if sells else 0.0
    avg_win = float(wins.mean()) if wins.size else 0.0
    avg_loss = float(abs(losses.mean())) if losses.size else 0.0

    buy_and_hold = (end_price - start_price) / start_price * 100 if start_price else 0.0

    return BacktestMetrics(
        final_capital=float(final_value),
        total_return=float(total_return),
        total_return_usd=float(final_value - initial_capital),
        max_drawdown=max_drawdown(values, initial_capital),
        sharpe_ratio=sharpe_ratio(values),
        win_rate=float(win_rate),
        total_trades=len(trades),
        profitable_trades=int(wins.size),
        avg_trade_return=avg_trade_return,
        avg_win_size=avg_win,
        avg_loss_size=avg_loss,
        buy_and_hold_return=float(buy_and_hold),
        outperformance=float(total_return - buy_and_hold),
    )


def format_summary(metrics: BacktestMetrics, title: Optional[str] = None) -> str:
    lines = []
    if title:
        lines.append(title)
        lines.append("-" * len(title))
    lines.extend([
        f"Final capital:      ${metrics.final_capital:,.2f}",
        f"Total return:       {metrics.total_return:+.2f}% (${metrics.total_return_usd:+,.2f})",
        f"Buy & hold return:  {metrics.buy_and_hold_return:+.2f}%",
        f"Outperformance:     {metrics.outperformance:+.2f}%",
        f"Max drawdown:       {metrics.max_drawdown:.2f}%",
        f"Sharpe ratio:       {metrics.sharpe_ratio:.2f}",
        f"Trades:             {metrics.total_trades} ({metrics.profitable_trades} profitable sells)",
        f"Win rate:           {metrics.win_rate:.1f}%",
        f"Avg trade return:   {metrics.avg_trade_return:+.2f}%",
        f"Avg win / loss:     ${metrics.avg_win_size:,.2f} / ${metrics.avg_loss_size:,.2f}",
    ])
    return "\n".join(lines)


def trades_to_frame(trades: Sequence[TradeRecord]) -> pd.DataFrame:
    frame = pd.DataFrame([t.to_dict() for t in trades])
    if not frame.empty:
        frame["timestamp"] = pd.to_datetime(frame["timestamp"], utc=True)
    return frame


def equity_to_frame(equity_curve: Sequence[EquityPoint]) -> pd.DataFrame:
    frame = pd.DataFrame([p.to_dict() for p in equity_curve], columns=["timestamp", "value"])
    if not frame.empty:
        frame["timestamp"] = pd.to_datetime(frame["timestamp"], utc=True)
        frame = frame.set_index("timestamp")
    return frame


def _save_figure(fig, path: str) -> str:
    fig.tight_layout()
    fig.savefig(path, dpi=150)
    plt.close(fig)
    return path


def generate_plots(result: Any, out_dir: str = "reports", prefix: str = "backtest") -> Dict[str, str]:
    """
    Render the equity curve, its drawdown and the sell profit distribution.

    Args:
        result: A BacktestResult (anything with initial_capital, trades, equity_curve)
        out_dir: Directory to write PNGs into (created if missing)
        prefix: File name prefix

    Returns:
        dict of plot name -> filepath; empty series produce no plot
    """
    with _LOCK:
        os.makedirs(out_dir, exist_ok=True)
    plots: Dict[str, str] = {}

    times = [p.timestamp for p in result.equity_curve]
    values = np.asarray([p.value for p in result.equity_curve], dtype=float)
    if len(times):
        fig, ax = plt.subplots(figsize=(10, 4))
        ax.plot(times, values, label="Portfolio value", color="#2b8cbe")
        ax.axhline(result.initial_capital, color="#636363", linestyle=":", label="Initial capital")
        buys = [t for t in result.trades if t.action is TradeAction.BUY]
        sells = [t for t in result.trades if t.action is TradeAction.SELL]
        if buys:
            ax.scatter([t.timestamp for t in buys], [t.portfolio_value for t in buys],
                       marker="^", color="#31a354", label="Buy", zorder=3)
        if sells:
            ax.scatter([t.timestamp for t in sells], [t.portfolio_value for t in sells],
                       marker="v", color="#de2d26", label="Sell", zorder=3)
        ax.set_title("Equity Curve")
        ax.set_xlabel("Time (UTC)")
        ax.set_ylabel("Value")
        ax.grid(True, linestyle="--", alpha=0.4)
        ax.legend(loc="best")
        ax.xaxis.set_major_formatter(mdates.DateFormatter("%Y-%m-%d", tz=timezone.utc))
        fig.autofmt_xdate()
        plots["equity_curve"] = _save_figure(fig, os.path.join(out_dir, f"{prefix}_equity.png"))

        peaks = np.maximum.accumulate(np.concatenate(([result.initial_capital], values)))[1:]
        with np.errstate(divide="ignore", invalid="ignore"):
            drawdown = np.where(peaks > 0, (values - peaks) / peaks * 100, 0.0)
        fig, ax = plt.subplots(figsize=(10, 3))
        ax.fill_between(times, drawdown, color="#de2d26", alpha=0.4)
        ax.set_title(f"Drawdown (max {max_drawdown(values, result.initial_capital):.2f}%)")
        ax.set_xlabel("Time (UTC)")
        ax.set_ylabel("Drawdown %")
        ax.grid(True, linestyle="--", alpha=0.3)
        ax.xaxis.set_major_formatter(mdates.DateFormatter("%Y-%m-%d", tz=timezone.utc))
        fig.autofmt_xdate()
        plots["drawdown"] = _save_figure(fig, os.path.join(out_dir, f"{prefix}_drawdown.png"))

    profits = [t.profit for t in result.trades if t.action is TradeAction.SELL and t.profit is not None]
    if profits:
        fig, ax = plt.subplots(figsize=(8, 4))
        ax.hist(profits, bins=min(40, max(5, len(profits))), color="#31a354", alpha=0.9)
        ax.set_title("Sell Profit Distribution")
        ax.set_xlabel("Profit")
        ax.set_ylabel("Count")
        ax.grid(True, linestyle="--", alpha=0.3)
        plots["sell_profit_hist"] = _save_figure(fig, os.path.join(out_dir, f"{prefix}_sell_profit.png"))

    return plots


def save_report(result: Any, out_dir: str = "reports", prefix: str = "backtest",
                plots: bool = True) -> Dict[str, str]:
    """
    Persist metrics (JSON), trades (CSV), the equity curve (CSV) and plots.

    Args:
        result: A BacktestResult (anything with metrics, trades, equity_curve)
        out_dir: Output directory (created if missing)
        prefix: File name prefix
        plots: Also render PNG plots via generate_plots

    Returns:
        Mapping of artifact name to written path
    """
    with _LOCK:
        os.makedirs(out_dir, exist_ok=True)
    paths = {
        "summary": os.path.join(out_dir, f"{prefix}_summary.json"),
        "trades": os.path.join(out_dir, f"{prefix}_trades.csv"),
        "equity": os.path.join(out_dir, f"{prefix}_equity.csv"),
    }
    with open(paths["summary"], "w", encoding="utf-8") as fh:
        json.dump(result.metrics.to_dict(), fh, indent=2)
    trades_to_frame(result.trades).to_csv(paths["trades"], index=False)
    equity_to_frame(result.equity_curve).to_csv(paths["equity"])
    if plots:
        paths.update(generate_plots(result, out_dir, prefix))
    return paths


def compare_table(results: Dict[str, BacktestMetrics]) -> pd.DataFrame:
    """One row per strategy id, sorted by total return (best first)."""
    rows: List[Dict[str, Any]] = [{"strategy": sid, **m.to_dict()} for sid, m in results.items()]
    frame = pd.DataFrame(rows)
    if frame.empty:
        return frame
    return frame.sort_values("total_return", ascending=False).set_index("strategy")
