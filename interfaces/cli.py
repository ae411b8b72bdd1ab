"""
CLI for the fear/greed regime engine: list strategies, backtest them over a
bar file, compare several strategies side by side and classify the market of
a bar file.

Contracts:
- Backtests run through backtesting.service.BacktestService (replays in a
  worker thread; compare runs every strategy concurrently)
- Engine errors (unknown strategy, insufficient data, bad config) exit with 2,
  unreadable input files with 1
- Results are printed as a text summary, or as JSON with --json

Notes:
- This CLI works on local bar files only; the live loop is started by main.py.
- Bar files are CSV or JSON records with timestamp/open/high/low/close[/volume].
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from backtesting.reports import compare_table, format_summary, save_report, trades_to_frame
from backtesting.service import BacktestRequest, BacktestService
from core.config import execution_config, load_config, strategy_registry
from core.errors import EngineError
from core.models import to_utc
from data.bar_feed import InMemoryBarStore, load_bars
from monitoring.logger import configure as logger_config
from strategies.indicators import KNOWN_ATH, latest_snapshot
from strategies.regime_detector import RegimeDetector, describe, recommendation

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_INPUT_ERROR = 1
EXIT_ENGINE_ERROR = 2


def _ensure_logger_configured(level: str = "WARNING") -> None:
    # quiet by default so command output stays readable
    logger_config(level=level, log_file=None)


def _load_store(path: str, symbol: str) -> InMemoryBarStore:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"bars file not found: {path}")
    return InMemoryBarStore({symbol: load_bars(p, symbol)})


def _request(args: argparse.Namespace, strategy_id: str, capital: float) -> BacktestRequest:
    return BacktestRequest(
        symbol=args.symbol,
        strategy_id=strategy_id,
        initial_capital=capital,
        start_date=to_utc(args.start) if args.start else None,
        end_date=to_utc(args.end) if args.end else None,
    )


def _service(args: argparse.Namespace, store: InMemoryBarStore) -> BacktestService:
    config = load_config(args.config)
    known_ath = {args.symbol: args.ath} if args.ath else {s: v[0] for s, v in KNOWN_ATH.items()}
    return BacktestService(
        store,
        strategies=strategy_registry(config),
        exec_cfg=execution_config(config),
        known_ath=known_ath,
    )


# --------------------------
# CLI command implementations
# --------------------------
async def cmd_strategies(args: argparse.Namespace) -> int:
    registry = strategy_registry(load_config(args.config))
    if args.json:
        print(json.dumps([c.to_dict() for c in registry.values()], indent=2, default=str))
        return EXIT_OK
    for cfg in registry.values():
        print(f"{cfg.id:<26} {cfg.category.value:<13} {cfg.name}")
        if args.verbose:
            print(f"{'':<26} {cfg.description}")
    return EXIT_OK


async def cmd_backtest(args: argparse.Namespace) -> int:
    store = _load_store(args.bars, args.symbol)
    service = _service(args, store)
    capital = args.capital or float(load_config(args.config)["backtest"]["initial_capital"])

    run = await service.run(_request(args, args.strategy, capital))

    if args.trades_out:
        trades_to_frame(run.trades).to_csv(args.trades_out, index=False)
    if args.report_dir:
        paths = save_report(run, args.report_dir, prefix=run.config.id)
        logger.info(f"Report written: {paths}")

    if args.json:
        print(json.dumps(run.to_dict(include_series=args.series), indent=2, default=str))
    else:
        print(format_summary(run.metrics, title=f"{run.config.name} on {args.symbol}"))
    return EXIT_OK


async def cmd_compare(args: argparse.Namespace) -> int:
    store = _load_store(args.bars, args.symbol)
    service = _service(args, store)
    capital = args.capital or float(load_config(args.config)["backtest"]["initial_capital"])
    ids = args.strategies or list(service.strategies)

    runs = await service.compare(_request(args, ids[0], capital), ids)
    table = compare_table({sid: run.metrics for sid, run in runs.items()})

    if args.json:
        print(json.dumps({sid: run.to_dict() for sid, run in runs.items()}, indent=2, default=str))
    else:
        columns = ["total_return", "buy_and_hold_return", "outperformance", "max_drawdown",
                   "sharpe_ratio", "win_rate", "total_trades"]
        print(table[columns].round(2).to_string())
    return EXIT_OK


async def cmd_analyze(args: argparse.Namespace) -> int:
    bars = load_bars(args.bars, args.symbol)
    if not bars:
        print("No usable bars in file.", file=sys.stderr)
        return EXIT_INPUT_ERROR
    ath_seed = args.ath or KNOWN_ATH.get(args.symbol, (None,))[0]
    snapshot = latest_snapshot(bars, ath_seed=ath_seed, price=args.price)
    reading = RegimeDetector().classify(
        price=snapshot.price,
        rsi=snapshot.rsi,
        ma50=snapshot.ma50,
        ma200=snapshot.ma200,
        percent_from_ath=snapshot.percent_from_ath,
    )
    result = {
        "symbol": args.symbol,
        "timestamp": snapshot.timestamp.isoformat(),
        "price": snapshot.price,
        "ath": snapshot.ath,
        "percent_from_ath": round(snapshot.percent_from_ath, 2),
        "bars_since_ath": snapshot.bars_since_ath,
        "rsi": round(snapshot.rsi, 2),
        "ma50": snapshot.ma50,
        "ma200": snapshot.ma200,
        **reading.to_dict(),
        "recommendation": recommendation(reading.score),
        "description": describe(reading.regime),
    }
    if args.json:
        print(json.dumps(result, indent=2, default=str))
        return EXIT_OK

    print(f"{args.symbol} @ {snapshot.price:,.2f} ({result['timestamp']})")
    print(f"Regime: {reading.regime.value} (score {reading.score:+d}, {result['recommendation']})")
    for signal in reading.signals:
        print(f"  {signal.points:+4d}  {signal.label}")
    print(result["description"])
    return EXIT_OK


# --------------------------
# CLI entrypoint
# --------------------------
def _add_bar_args(sp: argparse.ArgumentParser) -> None:
    sp.add_argument("--bars", required=True, help="Path to CSV/JSON bar file")
    sp.add_argument("--symbol", default="BTC/USDT", help="Symbol label for the bars")
    sp.add_argument("--ath", type=float, help="Known all-time high to seed the ATH tracker")


def _add_run_args(sp: argparse.ArgumentParser) -> None:
    _add_bar_args(sp)
    sp.add_argument("--capital", type=float, help="Initial capital (default from config)")
    sp.add_argument("--start", help="First bar timestamp (ISO-8601), inclusive")
    sp.add_argument("--end", help="Last bar timestamp (ISO-8601), inclusive")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="regime-cli", description="Fear/greed regime engine CLI")
    p.add_argument("-c", "--config", help="Path to config YAML (default core/config.yaml)")
    p.add_argument("--log-level", default="WARNING", help="Log level (DEBUG/INFO/WARNING/ERROR)")
    sub = p.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("strategies", help="List registered strategies")
    sp.add_argument("-v", "--verbose", action="store_true", help="Show descriptions")
    sp.add_argument("--json", action="store_true")

    sp2 = sub.add_parser("backtest", help="Backtest one strategy over a bar file")
    _add_run_args(sp2)
    sp2.add_argument("--strategy", required=True, help="Strategy id (see 'strategies')")
    sp2.add_argument("--trades-out", help="Write the trade log to this CSV file")
    sp2.add_argument("--report-dir", help="Write summary JSON, trades and equity CSVs here")
    sp2.add_argument("--json", action="store_true")
    sp2.add_argument("--series", action="store_true", help="Include trades/snapshots/equity in --json output")

    sp3 = sub.add_parser("compare", help="Backtest several strategies over the same bars")
    _add_run_args(sp3)
    sp3.add_argument("--strategies", nargs="+", help="Strategy ids (default: all)")
    sp3.add_argument("--json", action="store_true")

    sp4 = sub.add_parser("analyze", help="Classify the market regime at the last bar")
    _add_bar_args(sp4)
    sp4.add_argument("--price", type=float, help="Live price replacing the last close")
    sp4.add_argument("--json", action="store_true")

    return p


_COMMANDS = {
    "strategies": cmd_strategies,
    "backtest": cmd_backtest,
    "compare": cmd_compare,
    "analyze": cmd_analyze,
}


async def _main(argv: List[str]) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _ensure_logger_configured(args.log_level)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        return await _COMMANDS[args.cmd](args)
    except EngineError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ENGINE_ERROR
    except (OSError, ValueError) as exc:
        print(f"Input error: {exc}", file=sys.stderr)
        return EXIT_INPUT_ERROR


def main(argv: Optional[List[str]] = None) -> None:
    try:
        return_code = asyncio.run(_main(sys.argv[1:] if argv is None else argv))
        sys.exit(return_code or 0)
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    main()
