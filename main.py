"""
main.py - Live Trading Entry Point

Orchestrates the live fear/greed loop. This file contains ONLY orchestration
logic; decisions live in strategies/, accounting in execution/ledger.py.

Module Loading Order:
1. Core (config & loop state)
2. Monitoring (logging & performance tracker)
3. Data (exchange connector & bar feed)
4. Execution (simulated port for paper, exchange port for live)
5. Trading loop

Supports: paper/live modes with graceful shutdown on SIGINT/SIGTERM
"""

import asyncio
import logging
import signal
import sys
from typing import Any, Dict, Optional

from core.config import enabled_strategies, load_config, strategy_registry
from core.errors import ConfigError, EngineError
from core.state import Environment
from core.trading_loop import TradingLoop
from data.bar_feed import ExchangeBarFeed
from data.exchange import ExchangeConnector
from execution.exchange_port import ExchangeExecutionPort
from execution.port import ExecutionPort, SimulatedExecutionPort
from monitoring.logger import LoggerManager, get_manager
from monitoring.metrics import PerformanceTracker

# Configure root logger
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class LivePlatform:
    """
    Wires config, exchange, port and trading loop together and tears them
    down in reverse order.
    """

    def __init__(self, config_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None,
                 env_file: Optional[str] = ".env", run_once: bool = False):
        self.config_path = config_path
        self.overrides: Dict[str, Any] = overrides or {}
        self.env_file = env_file
        self.run_once = run_once
        self.config: Dict[str, Any] = {}

        self.logger_mgr: Optional[LoggerManager] = None
        self.tracker: Optional[PerformanceTracker] = None
        self.exchange: Optional[ExchangeConnector] = None
        self.port: Optional[ExecutionPort] = None
        self.loop: Optional[TradingLoop] = None

    async def setup(self) -> None:
        self.config = load_config(self.config_path, env_file=self.env_file)
        self._apply_overrides()
        try:
            environment = Environment(self.config['environment'])
        except ValueError as e:
            raise ConfigError(f"Unknown environment: {self.config['environment']!r}") from e

        # Monitoring
        mon = self.config['monitoring']
        self.logger_mgr = get_manager()
        self.logger_mgr.configure(level=mon['log_level'], log_file=mon.get('log_file'))
        self.tracker = PerformanceTracker()

        # Data
        ex = self.config['exchange']
        self.exchange = ExchangeConnector(
            exchange_id=ex['id'],
            api_key=ex.get('api_key'),
            secret=ex.get('secret'),
            test_mode=bool(ex.get('test_mode', True)),
            timeout=float(ex.get('timeout', ExchangeConnector.DEFAULT_TIMEOUT)),
        )
        await self.exchange.connect()

        # Execution
        fee_rate = float(self.config['execution']['fee_rate'])
        if environment is Environment.LIVE:
            if not (ex.get('api_key') and ex.get('secret')):
                raise EngineError("Live mode requires EXCHANGE_API_KEY and EXCHANGE_SECRET")
            self.port = ExchangeExecutionPort(self.exchange, fallback_fee_rate=fee_rate)
        else:
            self.port = SimulatedExecutionPort(fee_rate, id_prefix="paper")

        # Loop
        trading = self.config['trading']
        live = self.config['live']
        registry = strategy_registry(self.config)
        self.loop = TradingLoop(
            feed=ExchangeBarFeed(self.exchange),
            port=self.port,
            strategies=enabled_strategies(self.config, registry),
            symbol=trading['symbol'],
            initial_capital=float(trading['initial_capital']),
            interval_seconds=float(live['interval_seconds']),
            max_consecutive_errors=int(live['max_consecutive_errors']),
            known_ath=trading.get('known_ath'),
            tracker=self.tracker,
            timeframe=trading['timeframe'],
            history_bars=int(live['history_bars']),
            min_trade_usd=float(self.config['backtest']['min_trade_usd']),
            environment=environment,
        )
        self.logger_mgr.log_event("platform.setup_complete", {
            "environment": environment.value,
            "exchange": ex['id'],
            "symbol": trading['symbol'],
            "strategies": list(self.loop.configs),
        })

    def _apply_overrides(self) -> None:
        if 'environment' in self.overrides:
            self.config['environment'] = self.overrides['environment']
        if 'exchange_id' in self.overrides:
            self.config['exchange']['id'] = self.overrides['exchange_id']
        if 'log_level' in self.overrides:
            self.config['monitoring']['log_level'] = self.overrides['log_level']
        if 'symbol' in self.overrides:
            self.config['trading']['symbol'] = self.overrides['symbol']

    def request_shutdown(self) -> None:
        if self.loop:
            self.loop.stop()

    async def run(self) -> None:
        try:
            await self.setup()
            if self.run_once:
                records = await self.loop.tick()
                for r in records:
                    logger.info(f"{r.strategy_id}: {r.action.value} ({r.reason})")
            else:
                await self.loop.run()
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        logger.info("Shutting down")
        if self.loop:
            for sid in self.loop.configs:
                snap = self.tracker.latest(sid) if self.tracker else None
                if snap:
                    logger.info(f"   {sid}: value ${snap.total_value:,.2f} ({snap.return_percent:+.2f}%)")
            logger.info(f"   Final state: {self.loop.state}")
        if self.exchange:
            await self.exchange.disconnect()
        if self.logger_mgr:
            self.logger_mgr.log_event("platform.shutdown_complete", {})


# Global platform instance for signal handler
platform_instance: Optional[LivePlatform] = None


def signal_handler(signum, frame):
    """Handle shutdown signals."""
    logger.info(f"Received signal {signum}")
    if platform_instance:
        platform_instance.request_shutdown()


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Fear/greed regime trading loop")
    parser.add_argument('-c', '--config', help='Path to config YAML (default core/config.yaml)')
    parser.add_argument('-e', '--environment', choices=['paper', 'live'], help='Override environment')
    parser.add_argument('--exchange-id', dest='exchange_id', help='Override exchange id')
    parser.add_argument('--symbol', help='Override traded symbol')
    parser.add_argument('--env-file', dest='env_file', default='.env', help='Path to .env with exchange keys')
    parser.add_argument('--log-level', dest='log_level', help='Override log level (DEBUG/INFO/WARNING/ERROR)')
    parser.add_argument('--once', dest='once', action='store_true', help='Run a single tick and exit')

    args = parser.parse_args()

    overrides: Dict[str, Any] = {}
    for key in ('environment', 'exchange_id', 'symbol', 'log_level'):
        value = getattr(args, key)
        if value:
            overrides[key] = value

    try:
        platform_instance = LivePlatform(config_path=args.config, overrides=overrides,
                                         env_file=args.env_file, run_once=bool(args.once))

        # Setup signal handlers for graceful shutdown
        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        asyncio.run(platform_instance.run())
    except KeyboardInterrupt:
        logger.info("Shutdown via keyboard interrupt")
        sys.exit(0)
    except EngineError as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(2)
    except Exception as e:
        logger.error(f"Fatal error in main: {e}", exc_info=True)
        sys.exit(1)
