"""
service.py - Backtest Run Service

Turns backtest requests into tracked runs.

Responsibilities:
- Validate the request (strategy id must exist) before any run record exists
- Read bars from a HistoricalBarStore and replay them in a worker thread
- Track each run's status and progress so callers can poll mid-run
- Run several backtests concurrently; each run owns its account
- Cooperative cancellation, listing and deletion of runs

Status lifecycle: pending -> running -> completed | failed | cancelled
"""

from __future__ import annotations

import asyncio
import functools
import logging
import threading
import uuid
from concurrent.futures import Executor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

from backtesting.engine import BacktestResult, BacktestRunner, ExecutionConfig
from backtesting.reports import BacktestMetrics
from core.errors import BacktestCancelled, EngineError
from core.models import EquityPoint, Snapshot, TradeRecord
from data.bar_feed import HistoricalBarStore
from monitoring.logger import log_error, log_event
from strategies.base import StrategyConfig
from strategies.registry import DEFAULT_STRATEGIES, get_strategy_config

logger = logging.getLogger(__name__)


class BacktestStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def __str__(self):
        return self.value

    @property
    def finished(self) -> bool:
        return self in (BacktestStatus.COMPLETED, BacktestStatus.FAILED, BacktestStatus.CANCELLED)


@dataclass(frozen=True)
class BacktestRequest:
    """
    Attributes:
        symbol: Bar store symbol, e.g. 'BTC/USDT'
        strategy_id: Registered strategy id
        initial_capital: Starting cash
        start_date: First bar (inclusive), None for the earliest stored bar
        end_date: Last bar (inclusive), None for the latest stored bar
        name: Optional label for listings
    """
    symbol: str
    strategy_id: str
    initial_capital: float = 10_000.0
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    name: Optional[str] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BacktestRun:
    """Mutable record of one requested backtest."""
    id: str
    request: BacktestRequest
    config: StrategyConfig
    status: BacktestStatus = BacktestStatus.PENDING
    progress: int = 0
    error: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    metrics: Optional[BacktestMetrics] = None
    trades: List[TradeRecord] = field(default_factory=list)
    snapshots: List[Snapshot] = field(default_factory=list)
    equity_curve: List[EquityPoint] = field(default_factory=list)
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def name(self) -> str:
        return self.request.name or f"{self.config.name} on {self.request.symbol}"

    def apply_result(self, result: BacktestResult) -> None:
        self.metrics = result.metrics
        self.trades = result.trades
        self.snapshots = result.snapshots
        self.equity_curve = result.equity_curve

    def to_dict(self, include_series: bool = False) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "name": self.name,
            "symbol": self.request.symbol,
            "strategy_id": self.config.id,
            "initial_capital": self.request.initial_capital,
            "start_date": self.request.start_date.isoformat() if self.request.start_date else None,
            "end_date": self.request.end_date.isoformat() if self.request.end_date else None,
            "status": self.status.value,
            "progress": self.progress,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "metrics": self.metrics.to_dict() if self.metrics else None,
            "trade_count": len(self.trades),
        }
        if include_series:
            data["trades"] = [t.to_dict() for t in self.trades]
            data["snapshots"] = [s.to_dict() for s in self.snapshots]
            data["equity_curve"] = [p.to_dict() for p in self.equity_curve]
        return data


class BacktestService:
    """
    Asynchronous backtest orchestration over a read-only bar store.

    Args:
        bar_store: Source of historical bars
        strategies: Strategy registry (defaults to the built-in strategies)
        exec_cfg: Simulation settings shared by all runs
        known_ath: Optional ATH seed per symbol
        executor: concurrent.futures executor for replays (loop default when None)
    """

    def __init__(
        self,
        bar_store: HistoricalBarStore,
        strategies: Optional[Mapping[str, StrategyConfig]] = None,
        exec_cfg: Optional[ExecutionConfig] = None,
        known_ath: Optional[Mapping[str, float]] = None,
        executor: Optional[Executor] = None,
    ):
        self.bar_store = bar_store
        self.strategies = dict(strategies) if strategies is not None else dict(DEFAULT_STRATEGIES)
        self.exec_cfg = exec_cfg or ExecutionConfig()
        self.known_ath = dict(known_ath or {})
        self._executor = executor
        self._runs: Dict[str, BacktestRun] = {}
        self._lock = threading.RLock()

    # -------------------------
    # Run lifecycle
    # -------------------------
    def create(self, request: BacktestRequest) -> BacktestRun:
        """
        Register a pending run.

        Raises:
            StrategyNotFoundError: Unknown strategy id (no run is recorded)
            ValueError: Non-positive initial capital
        """
        config = get_strategy_config(request.strategy_id, self.strategies)
        if request.initial_capital <= 0:
            raise ValueError(f"initial_capital must be positive, got {request.initial_capital}")
        run = BacktestRun(id=uuid.uuid4().hex, request=request, config=config)
        with self._lock:
            self._runs[run.id] = run
        log_event("backtest.created", {"run_id": run.id, "strategy": config.id, "symbol": request.symbol})
        return run

    async def run(self, request: BacktestRequest) -> BacktestRun:
        """
        Create and execute a run, returning it once finished.

        Raises:
            StrategyNotFoundError: Unknown strategy id
            InsufficientDataError: Fewer bars than the warmup needs (run marked failed)
        """
        run = self.create(request)
        await self._execute(run)
        return run

    def start(self, request: BacktestRequest) -> BacktestRun:
        """Create a run and execute it as a background task on the running loop."""
        run = self.create(request)
        run.task = asyncio.get_running_loop().create_task(self._execute_background(run))
        return run

    async def wait(self, run_id: str) -> BacktestRun:
        run = self._require(run_id)
        if run.task is not None:
            await asyncio.shield(run.task)
        return run

    async def compare(self, request: BacktestRequest, strategy_ids: Sequence[str]) -> Dict[str, BacktestRun]:
        """Run the same request for several strategies concurrently."""
        for sid in strategy_ids:
            get_strategy_config(sid, self.strategies)
        requests = [
            BacktestRequest(
                symbol=request.symbol,
                strategy_id=sid,
                initial_capital=request.initial_capital,
                start_date=request.start_date,
                end_date=request.end_date,
                name=request.name,
            )
            for sid in strategy_ids
        ]
        runs = await asyncio.gather(*(self.run(r) for r in requests))
        return {run.config.id: run for run in runs}

    def cancel(self, run_id: str) -> bool:
        """Ask a run to stop at the next bar boundary. False if already finished."""
        run = self._require(run_id)
        if run.status.finished:
            return False
        run.cancel_event.set()
        log_event("backtest.cancel_requested", {"run_id": run_id})
        return True

    def delete(self, run_id: str) -> bool:
        with self._lock:
            run = self._runs.pop(run_id, None)
        if run is None:
            return False
        run.cancel_event.set()
        log_event("backtest.deleted", {"run_id": run_id})
        return True

    def get(self, run_id: str) -> Optional[BacktestRun]:
        with self._lock:
            return self._runs.get(run_id)

    def list_runs(self, strategy_id: Optional[str] = None,
                  status: Optional[BacktestStatus] = None) -> List[BacktestRun]:
        with self._lock:
            runs = list(self._runs.values())
        if strategy_id is not None:
            runs = [r for r in runs if r.config.id == strategy_id]
        if status is not None:
            runs = [r for r in runs if r.status is status]
        return sorted(runs, key=lambda r: r.created_at, reverse=True)

    # -------------------------
    # Internals
    # -------------------------
    def _require(self, run_id: str) -> BacktestRun:
        run = self.get(run_id)
        if run is None:
            raise KeyError(f"Backtest run not found: {run_id}")
        return run

    def _replay(self, run: BacktestRun) -> BacktestResult:
        req = run.request
        bars = self.bar_store.get_bars(req.symbol, req.start_date, req.end_date)
        runner = BacktestRunner(
            bars,
            run.config,
            req.initial_capital,
            exec_cfg=self.exec_cfg,
            symbol=req.symbol,
            known_ath=self.known_ath.get(req.symbol),
        )

        def _on_progress(pct: int) -> None:
            run.progress = pct

        return runner.run(cancel_event=run.cancel_event, on_progress=_on_progress)

    async def _execute(self, run: BacktestRun) -> None:
        run.status = BacktestStatus.RUNNING
        run.started_at = _now()
        log_event("backtest.start", {"run_id": run.id, "strategy": run.config.id, "symbol": run.request.symbol})

        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(self._executor, functools.partial(self._replay, run))
        except BacktestCancelled:
            run.status = BacktestStatus.CANCELLED
            run.completed_at = _now()
            log_event("backtest.cancelled", {"run_id": run.id, "progress": run.progress})
            return
        except Exception as exc:
            run.status = BacktestStatus.FAILED
            run.error = str(exc)
            run.completed_at = _now()
            log_error("backtest.failed", str(exc), {"run_id": run.id, "strategy": run.config.id})
            raise

        run.apply_result(result)
        run.progress = 100
        run.status = BacktestStatus.COMPLETED
        run.completed_at = _now()
        log_event("backtest.completed", {
            "run_id": run.id,
            "strategy": run.config.id,
            "trades": len(result.trades),
            "total_return": round(result.metrics.total_return, 4),
        })

    async def _execute_background(self, run: BacktestRun) -> None:
        try:
            await self._execute(run)
        except EngineError:
            # Failure is recorded on the run; background callers poll it.
            logger.debug(f"Background backtest {run.id} failed: {run.error}")
