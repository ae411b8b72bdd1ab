"""
errors.py - Engine Exception Hierarchy

All errors raised by the regime-and-decision engine derive from EngineError so
callers (CLI, live loop, backtest service) can handle them in one place.
Indicator shortfalls are never errors; they surface as None/neutral values.
"""


class EngineError(Exception):
    """Base class for engine errors."""


class ConfigError(EngineError):
    """Invalid or unknown configuration value."""


class InsufficientDataError(EngineError):
    """Not enough bars to warm up the long moving average."""

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient data: need at least {required} bars for the "
            f"{required - 1}-bar MA warmup, have {available}"
        )


class StrategyNotFoundError(EngineError):
    """Requested strategy id is not registered."""

    def __init__(self, strategy_id: str):
        self.strategy_id = strategy_id
        super().__init__(f"Strategy not found: {strategy_id}")


class LedgerError(EngineError):
    """A fill could not be applied to a position."""


class ExecutionError(EngineError):
    """The execution port rejected or failed an order."""


class BacktestCancelled(EngineError):
    """A backtest run was cancelled between bars."""


class DataValidationError(EngineError):
    """Malformed or out-of-order market data."""
