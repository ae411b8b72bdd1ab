"""
config.py - Engine Configuration

Loads the YAML configuration and resolves it into the objects the entry
points need.

Responsibilities:
- Merge core/config.yaml (or a user file) over default_config(), section by section
- Apply exchange credentials and mode from environment variables / a .env file
- Build the strategy registry with per-id overrides and the enabled list
- Resolve backtest execution settings

Environment variables (override the `exchange` section):
    EXCHANGE_ID, EXCHANGE_API_KEY, EXCHANGE_SECRET, EXCHANGE_TEST_MODE
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from dotenv import load_dotenv

from backtesting.engine import ExecutionConfig
from core.errors import ConfigError
from strategies.base import StrategyConfig
from strategies.registry import build_registry, get_strategy_config

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).with_name("config.yaml")

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def default_config() -> Dict[str, Any]:
    """Built-in configuration; every key a loaded file may set."""
    return {
        'environment': 'paper',
        'exchange': {
            'id': 'binance',
            'api_key': None,
            'secret': None,
            'test_mode': True,
            'timeout': 30.0,
        },
        'trading': {
            'symbol': 'BTC/USDT',
            'timeframe': '1h',
            'initial_capital': 10000.0,
            'known_ath': None,
        },
        'backtest': {
            'initial_capital': 10000.0,
            'warmup': 200,
            'snapshot_interval': 7,
            'min_trade_usd': 10.0,
        },
        'execution': {
            'fee_rate': 0.001,
        },
        'monitoring': {
            'log_level': 'INFO',
            'log_file': 'logs/engine.log',
        },
        'live': {
            'interval_seconds': 3600,
            'max_consecutive_errors': 5,
            'history_bars': 250,
        },
        'strategies': {
            'enabled': ['fear-greed-moderate'],
            'overrides': {},
        },
    }


def _merge(base: Dict[str, Any], update: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursive dict merge; update wins, nested dicts are merged."""
    out = copy.deepcopy(base)
    for key, value in update.items():
        if isinstance(value, Mapping) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigError(f"Not a boolean: {value!r}")


def apply_env(config: Dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Override the exchange section from EXCHANGE_* variables."""
    env = os.environ if environ is None else environ
    exchange = config.setdefault('exchange', {})
    if env.get('EXCHANGE_ID'):
        exchange['id'] = env['EXCHANGE_ID']
    if env.get('EXCHANGE_API_KEY'):
        exchange['api_key'] = env['EXCHANGE_API_KEY']
    if env.get('EXCHANGE_SECRET'):
        exchange['secret'] = env['EXCHANGE_SECRET']
    if env.get('EXCHANGE_TEST_MODE'):
        exchange['test_mode'] = parse_bool(env['EXCHANGE_TEST_MODE'])
    return config


def load_config(path: Optional[str | Path] = None, env_file: Optional[str] = None,
                environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    Load and validate the configuration.

    Args:
        path: YAML file; core/config.yaml when omitted. A missing explicit
            path is an error, a missing default file falls back to defaults.
        env_file: Optional .env file loaded into the process environment first
        environ: Environment mapping (os.environ when omitted)

    Raises:
        ConfigError: Unreadable YAML, unknown sections or invalid strategy overrides
    """
    if env_file and Path(env_file).exists():
        load_dotenv(env_file, override=True)
        logger.info(f"Loaded environment variables from: {env_file}")

    config_file = Path(path) if path else DEFAULT_CONFIG_PATH
    loaded: Dict[str, Any] = {}
    if config_file.exists():
        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid configuration file {config_file}: {e}") from e
        if not isinstance(loaded, dict):
            raise ConfigError(f"Configuration root must be a mapping, got {type(loaded).__name__}")
        logger.info(f"Configuration loaded from {config_file}")
    elif path:
        raise ConfigError(f"Config file not found: {config_file}")
    else:
        logger.warning(f"Config file {config_file} not found, using defaults")

    defaults = default_config()
    unknown = sorted(set(loaded) - set(defaults))
    if unknown:
        raise ConfigError(f"Unknown configuration sections: {unknown}")

    config = apply_env(_merge(defaults, loaded), environ)
    # Fail at load time rather than at the first tick
    strategy_registry(config)
    enabled_strategies(config)
    execution_config(config)
    return config


# -------------------------
# Resolution helpers
# -------------------------
def strategy_registry(config: Mapping[str, Any]) -> Dict[str, StrategyConfig]:
    """Built-in strategies with `strategies.overrides` applied."""
    overrides = (config.get('strategies') or {}).get('overrides') or {}
    if not isinstance(overrides, Mapping):
        raise ConfigError("strategies.overrides must be a mapping of strategy id to fields")
    return build_registry(overrides)


def enabled_strategies(config: Mapping[str, Any],
                       registry: Optional[Mapping[str, StrategyConfig]] = None) -> List[StrategyConfig]:
    """
    Configs of the strategies the live loop runs, in the configured order.

    Raises:
        StrategyNotFoundError: An enabled id is not registered
        ConfigError: The list is empty or names a strategy twice
    """
    registry = registry if registry is not None else strategy_registry(config)
    ids = (config.get('strategies') or {}).get('enabled') or []
    if not ids:
        raise ConfigError("strategies.enabled must name at least one strategy")
    configs = [get_strategy_config(sid, registry) for sid in ids]
    if len(set(ids)) != len(ids):
        raise ConfigError(f"strategies.enabled lists a strategy twice: {ids}")
    total = sum(c.allocation_percent for c in configs)
    if total > 100:
        # Accounts are tracked separately; on a real exchange they share one balance
        logger.warning(f"Enabled strategies allocate {total:.1f}% of capital; accounts will overlap on a shared balance")
    return configs


def execution_config(config: Mapping[str, Any]) -> ExecutionConfig:
    backtest = config.get('backtest') or {}
    execution = config.get('execution') or {}
    try:
        return ExecutionConfig(
            fee_rate=float(execution.get('fee_rate', 0.001)),
            min_trade_usd=float(backtest.get('min_trade_usd', 10.0)),
            snapshot_interval=int(backtest.get('snapshot_interval', 7)),
            warmup=int(backtest.get('warmup', 200)),
        )
    except ValueError as e:
        raise ConfigError(str(e)) from e
