"""
state.py - Trading Loop State Manager

Runtime state of the live trading loop: status, environment mode, error
counting and a bounded history of status changes. Thread-safe; does not
contain trading logic.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class Environment(Enum):
    """Where orders go."""
    PAPER = "paper"
    LIVE = "live"

    def __str__(self):
        return self.value


class BotStatus(Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    PAUSED = "paused"
    ERROR = "error"

    def __str__(self):
        return self.value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LoopState:
    """
    Thread-safe status holder for one trading loop.

    Attributes:
        environment: paper (simulated fills) or live (exchange orders)
        max_consecutive_errors: Failed ticks in a row before the loop pauses itself
    """

    def __init__(self, environment: Environment = Environment.PAPER, max_consecutive_errors: int = 5):
        if max_consecutive_errors < 1:
            raise ValueError(f"max_consecutive_errors must be >= 1, got {max_consecutive_errors}")
        self._lock = threading.Lock()
        self._environment = environment
        self._status = BotStatus.STOPPED
        self.max_consecutive_errors = max_consecutive_errors
        self._consecutive_errors = 0
        self._last_error: Optional[str] = None
        self._last_tick_at: Optional[datetime] = None
        self._ticks = 0
        self._history: List[Dict[str, Any]] = []
        self._created_at = _utcnow()

    # Status

    @property
    def environment(self) -> Environment:
        return self._environment

    @property
    def status(self) -> BotStatus:
        with self._lock:
            return self._status

    def set_status(self, status: BotStatus, reason: str = "") -> None:
        with self._lock:
            old = self._status
            self._status = status
            if old is not status:
                self._log_change(f"{old.value} -> {status.value}" + (f": {reason}" if reason else ""))

    def is_running(self) -> bool:
        return self.status is BotStatus.RUNNING

    # Error accounting

    def record_success(self, at: datetime) -> None:
        """A tick completed: reset the error streak."""
        with self._lock:
            self._consecutive_errors = 0
            self._last_tick_at = at
            self._ticks += 1

    def record_error(self, message: str) -> bool:
        """
        Count a failed tick.

        Returns:
            True when the streak reached max_consecutive_errors and the
            status was switched to error
        """
        with self._lock:
            self._consecutive_errors += 1
            self._last_error = message
            tripped = self._consecutive_errors >= self.max_consecutive_errors
            if tripped and self._status is not BotStatus.ERROR:
                self._log_change(
                    f"{self._status.value} -> error: {self._consecutive_errors} consecutive errors ({message})")
                self._status = BotStatus.ERROR
            return tripped

    def reset_errors(self) -> None:
        with self._lock:
            self._consecutive_errors = 0
            self._last_error = None

    @property
    def consecutive_errors(self) -> int:
        with self._lock:
            return self._consecutive_errors

    @property
    def last_error(self) -> Optional[str]:
        with self._lock:
            return self._last_error

    # Inspection

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "environment": self._environment.value,
                "status": self._status.value,
                "consecutive_errors": self._consecutive_errors,
                "max_consecutive_errors": self.max_consecutive_errors,
                "last_error": self._last_error,
                "ticks": self._ticks,
                "last_tick_at": self._last_tick_at.isoformat() if self._last_tick_at else None,
                "created_at": self._created_at.isoformat(),
            }

    def history(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._history) if limit is None else self._history[-limit:]

    def _log_change(self, message: str) -> None:
        self._history.append({"timestamp": _utcnow().isoformat(), "message": message})
        # Keep history limited to last 1000 entries
        if len(self._history) > 1000:
            self._history = self._history[-1000:]

    def __repr__(self) -> str:
        with self._lock:
            return (f"LoopState(environment={self._environment.value}, status={self._status.value}, "
                    f"consecutive_errors={self._consecutive_errors})")
