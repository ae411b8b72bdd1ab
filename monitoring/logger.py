"""
Thread-safe structured logger for the regime engine.

Responsibilities:
- Log decisions, trades, errors and system events in a key/value (JSON) style.
- Configurable log levels and handlers (console, rotating file).
- Thread-safe configuration and an in-memory cache of recent records.
- Redacts sensitive fields (exchange keys, secrets) from structured payloads.

Usage:
    from monitoring.logger import LoggerManager

    mgr = LoggerManager()
    mgr.configure(level="INFO", log_file="logs/engine.log")

    mgr.log_event("loop.start", {"symbol": "BTC/USDT", "strategies": 3})
    mgr.log_decision(decision_record.to_dict())
    mgr.log_trade(trade_record.to_dict())
    try:
        ...
    except ExecutionError:
        mgr.log_error("order.failed", exc_info=True)
"""
from __future__ import annotations

import json
import logging
import logging.handlers
import os
import threading
import time
from collections import deque
from typing import Any, Dict, Iterable, List, Optional

_DEFAULT_SENSITIVE_KEYS = frozenset({"api_key", "apikey", "secret", "password", "private_key", "token"})

_DEFAULT_RECENT_CACHE_SIZE = 500

_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def _as_kv_str(event: str, payload: Optional[Dict[str, Any]]) -> str:
    """Compact 'event {json}' line for console/file logs."""
    if not payload:
        return event
    try:
        return f"{event} {json.dumps(payload, separators=(',', ':'), default=str)}"
    except (TypeError, ValueError):
        return f"{event} {payload}"


def scrub_secrets(payload: Optional[Dict[str, Any]],
                  sensitive_keys: Optional[Iterable[str]] = None) -> Optional[Dict[str, Any]]:
    """
    Return a copy of payload with sensitive fields redacted (nested dicts included).

    Args:
        payload: structured payload dictionary (may be None)
        sensitive_keys: optional iterable of keys to redact (case-insensitive)
    """
    if payload is None:
        return None
    keys = {k.lower() for k in (sensitive_keys or _DEFAULT_SENSITIVE_KEYS)}
    out: Dict[str, Any] = {}
    for k, v in payload.items():
        if str(k).lower() in keys:
            out[k] = "<REDACTED>"
        elif isinstance(v, dict):
            out[k] = scrub_secrets(v, keys)
        else:
            out[k] = v
    return out


class LoggerManager:
    """
    Thread-safe logger manager.

    Provides:
    - configure(level, log_file, max_bytes, backup_count, console)
    - log_event(event, payload, level)
    - log_decision(record)
    - log_trade(trade)
    - log_error(event, message, payload, exc_info)
    - get_recent(limit, kind)
    """

    def __init__(self, name: str = "regime.monitor"):
        self._name = name
        self._lock = threading.RLock()
        self._logger = logging.getLogger(self._name)
        self._logger.setLevel(logging.WARNING)
        self._logger.propagate = False
        self._recent = deque(maxlen=_DEFAULT_RECENT_CACHE_SIZE)

    # -----------------------
    # Configuration / Setup
    # -----------------------
    def configure(
        self,
        level: str | int = "INFO",
        log_file: Optional[str] = None,
        max_bytes: int = 10 * 1024 * 1024,
        backup_count: int = 5,
        console: bool = True,
    ) -> None:
        """
        Configure handlers and level. Re-configuring replaces existing handlers.

        Args:
            level: logging level name or int
            log_file: optional path to a rotating log file (parent dirs are created)
            max_bytes: rotation size in bytes
            backup_count: number of rotated files to keep
            console: enable console handler
        """
        with self._lock:
            lvl = level if isinstance(level, int) else getattr(logging, str(level).upper(), logging.INFO)
            self._logger.setLevel(lvl)

            for h in list(self._logger.handlers):
                self._logger.removeHandler(h)
                h.close()

            handlers: List[logging.Handler] = []
            if console:
                handlers.append(logging.StreamHandler())
            if log_file:
                parent = os.path.dirname(log_file)
                if parent:
                    os.makedirs(parent, exist_ok=True)
                handlers.append(logging.handlers.RotatingFileHandler(
                    log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"))

            for h in handlers:
                h.setLevel(lvl)
                h.setFormatter(logging.Formatter(_FORMAT))
                self._logger.addHandler(h)

            self._logger.debug("logger.configured", extra={"payload": {"level": lvl, "log_file": bool(log_file)}})

    def add_handler(self, handler: logging.Handler) -> None:
        with self._lock:
            self._logger.addHandler(handler)

    # -----------------------
    # Recent cache
    # -----------------------
    def _record_recent(self, kind: str, event: str, payload: Optional[Dict[str, Any]]) -> None:
        with self._lock:
            self._recent.appendleft({"ts": time.time(), "kind": kind, "event": event, "payload": payload})

    def get_recent(self, limit: Optional[int] = None, kind: Optional[str] = None) -> List[Dict[str, Any]]:
        """Newest-first snapshot of recent structured records."""
        with self._lock:
            records = [r for r in self._recent if kind is None or r["kind"] == kind]
        return records if limit is None else records[:limit]

    def clear_recent(self) -> None:
        with self._lock:
            self._recent.clear()

    # -----------------------
    # Public logging methods
    # -----------------------
    def log_event(self, event: str, payload: Optional[Dict[str, Any]] = None, level: str | int = "INFO") -> None:
        payload_safe = scrub_secrets(payload)
        lvl = level if isinstance(level, int) else getattr(logging, str(level).upper(), logging.INFO)
        self._logger.log(lvl, _as_kv_str(event, payload_safe), extra={"event": event, "payload": payload_safe})
        self._record_recent("event", event, payload_safe)

    def log_decision(self, record: Dict[str, Any]) -> None:
        """
        Log one policy evaluation (DecisionRecord.to_dict()).

        Holds are logged at DEBUG, buys and sells at INFO.
        """
        payload = scrub_secrets(record)
        lvl = logging.DEBUG if payload.get("action") == "hold" else logging.INFO
        self._logger.log(lvl, _as_kv_str("decision", payload), extra={"event": "decision", "payload": payload})
        self._record_recent("decision", "decision", payload)

    def log_trade(self, trade: Dict[str, Any]) -> None:
        trade_safe = scrub_secrets(trade)
        self._logger.info(_as_kv_str("trade", trade_safe), extra={"event": "trade", "payload": trade_safe})
        self._record_recent("trade", "trade", trade_safe)

    def log_error(self, event: str, message: Optional[str] = None,
                  payload: Optional[Dict[str, Any]] = None, exc_info: Any = None) -> None:
        payload_safe = scrub_secrets(payload)
        full_msg = f"{event} {message or ''}".strip()
        self._logger.error(_as_kv_str(full_msg, payload_safe), exc_info=exc_info,
                           extra={"event": event, "payload": payload_safe})
        self._record_recent("error", event, {"message": message, "payload": payload_safe})

    def get_logger(self) -> logging.Logger:
        return self._logger


# Module-level default manager for convenience
_default_manager = LoggerManager()


def get_manager() -> LoggerManager:
    return _default_manager


def configure(level: str | int = "INFO", log_file: Optional[str] = None, **kwargs) -> None:
    _default_manager.configure(level=level, log_file=log_file, **kwargs)


def log_event(event: str, payload: Optional[Dict[str, Any]] = None, level: str | int = "INFO") -> None:
    _default_manager.log_event(event, payload, level)


def log_decision(record: Dict[str, Any]) -> None:
    _default_manager.log_decision(record)


def log_trade(trade: Dict[str, Any]) -> None:
    _default_manager.log_trade(trade)


def log_error(event: str, message: Optional[str] = None, payload: Optional[Dict[str, Any]] = None,
              exc_info: Any = None) -> None:
    _default_manager.log_error(event, message, payload, exc_info)
