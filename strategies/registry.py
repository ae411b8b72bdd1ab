"""
registry.py - Strategy Registry

Default strategy configurations keyed by id, and dispatch from a config's
kind to its policy implementation.

Usage:
    from strategies.registry import get_strategy_config, decide

    config = get_strategy_config("fear-greed-moderate")
    decision = decide(market, portfolio, config)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from core.errors import StrategyNotFoundError
from core.models import MarketConditions, PortfolioState, Regime, TradeDecision
from strategies.base import (
    NEVER_SELL,
    BaseStrategy,
    StrategyCategory,
    StrategyConfig,
    StrategyKind,
)
from strategies.baseline import DcaStrategy, HodlStrategy
from strategies.dip_buyer import BuyTheDipStrategy
from strategies.fear_greed import FearGreedStrategy
from strategies.momentum import MomentumStrategy

logger = logging.getLogger(__name__)

POLICIES: Dict[StrategyKind, BaseStrategy] = {
    StrategyKind.HODL: HodlStrategy(),
    StrategyKind.DCA: DcaStrategy(),
    StrategyKind.FEAR_GREED: FearGreedStrategy(),
    StrategyKind.MOMENTUM: MomentumStrategy(),
    StrategyKind.BUY_THE_DIP: BuyTheDipStrategy(),
}


DEFAULT_STRATEGIES: Dict[str, StrategyConfig] = {
    c.id: c for c in (
        StrategyConfig(
            id="hodl",
            name="HODL (Buy & Hold)",
            kind=StrategyKind.HODL,
            category=StrategyCategory.MODERATE,
            description="Buy with all capital immediately and never sell. The simplest baseline strategy.",
            buy_amount_percent=100,
            buy_frequency_hours=0,
            sell_amount_percent=0,
            min_profit_to_sell=NEVER_SELL,
            max_position_percent=100,
            min_position_percent=100,
            params={"cash_buffer_percent": 1.0},
        ),
        StrategyConfig(
            id="dca",
            name="DCA (Dollar Cost Average)",
            kind=StrategyKind.DCA,
            category=StrategyCategory.CONSERVATIVE,
            description="Buy a fixed amount on a regular schedule regardless of market conditions. Never sell.",
            buy_amount_percent=5,
            buy_frequency_hours=168,
            sell_amount_percent=0,
            min_profit_to_sell=NEVER_SELL,
            max_position_percent=100,
            min_position_percent=0,
            params={"cash_buffer_percent": 1.0},
        ),
        StrategyConfig(
            id="fear-greed-conservative",
            name="Fear & Greed (Conservative)",
            kind=StrategyKind.FEAR_GREED,
            category=StrategyCategory.CONSERVATIVE,
            description="Only buy during extreme fear, only sell during extreme greed with 30%+ profit. Very patient.",
            buy_amount_percent=10,
            buy_frequency_hours=72,
            sell_amount_percent=15,
            min_profit_to_sell=30,
            max_position_percent=70,
            min_position_percent=0,
            fear_threshold=-35,
            extreme_fear_threshold=-50,
            greed_rsi_threshold=75,
            extreme_greed_rsi_threshold=85,
            params={
                "extreme_fear_rsi": 25.0,
                "fear_rsi": 35.0,
                "buy_in_fear": False,
                "sell_in_greed": False,
                "cash_buffer_percent": 1.0,
                "min_cash_to_buy": 100.0,
            },
        ),
        StrategyConfig(
            id="fear-greed-moderate",
            name="Fear & Greed (Moderate)",
            kind=StrategyKind.FEAR_GREED,
            category=StrategyCategory.MODERATE,
            description="Buy during fear phases, sell during greed with 15%+ profit. Balanced risk/reward.",
            buy_amount_percent=15,
            buy_frequency_hours=48,
            sell_amount_percent=20,
            min_profit_to_sell=15,
            max_position_percent=80,
            min_position_percent=20,
            fear_threshold=-25,
            extreme_fear_threshold=-40,
            greed_rsi_threshold=70,
            extreme_greed_rsi_threshold=80,
            params={
                "extreme_fear_rsi": 30.0,
                "fear_rsi": 40.0,
                "buy_in_fear": True,
                "sell_in_greed": True,
                "extreme_fear_buy_multiplier": 1.5,
                "extreme_fear_frequency_multiplier": 0.5,
                "extreme_greed_sell_multiplier": 1.5,
                "cash_buffer_percent": 5.0,
                "min_cash_to_buy": 100.0,
            },
        ),
        StrategyConfig(
            id="fear-greed-aggressive",
            name="Fear & Greed (Aggressive)",
            kind=StrategyKind.FEAR_GREED,
            category=StrategyCategory.AGGRESSIVE,
            description="Stay 60%+ invested always. Buy aggressively in fear, only sell small amounts at extreme greed.",
            buy_amount_percent=25,
            buy_frequency_hours=24,
            sell_amount_percent=10,
            min_profit_to_sell=25,
            max_position_percent=95,
            min_position_percent=60,
            fear_threshold=-20,
            extreme_fear_threshold=-35,
            greed_rsi_threshold=75,
            extreme_greed_rsi_threshold=85,
            params={
                "extreme_fear_rsi": 30.0,
                "fear_rsi": 40.0,
                "buy_in_fear": True,
                "sell_in_greed": False,
                "extreme_fear_buy_multiplier": 2.0,
                "rebalance_to_floor": True,
                "cash_buffer_percent": 5.0,
                "min_cash_to_buy": 100.0,
            },
        ),
        StrategyConfig(
            id="momentum",
            name="Momentum (Trend Following)",
            kind=StrategyKind.MOMENTUM,
            category=StrategyCategory.AGGRESSIVE,
            description="Buy when price is above 50-day MA, sell when below. Follows the trend.",
            buy_amount_percent=30,
            buy_frequency_hours=24,
            sell_amount_percent=30,
            min_profit_to_sell=0,
            max_position_percent=90,
            min_position_percent=10,
            params={
                "ma_period": "50",
                "trend_extreme_distance": 20.0,
                "cash_buffer_percent": 1.0,
                "min_cash_to_buy": 100.0,
            },
        ),
        StrategyConfig(
            id="buy-the-dip",
            name="Buy the Dip",
            kind=StrategyKind.BUY_THE_DIP,
            category=StrategyCategory.AGGRESSIVE,
            description="Only buy after 10%+ drops from recent highs. Never sell. Accumulate on weakness.",
            buy_amount_percent=20,
            buy_frequency_hours=48,
            sell_amount_percent=0,
            min_profit_to_sell=NEVER_SELL,
            max_position_percent=100,
            min_position_percent=0,
            fear_threshold=-10,
            extreme_fear_threshold=-20,
            params={
                "dip_threshold": -10.0,
                "big_dip_multiplier": 2.0,
                "cash_buffer_percent": 5.0,
                "min_cash_to_buy": 100.0,
            },
        ),
    )
}


def list_strategies(registry: Optional[Mapping[str, StrategyConfig]] = None) -> List[StrategyConfig]:
    return list((registry or DEFAULT_STRATEGIES).values())


def get_strategy_config(strategy_id: str,
                        registry: Optional[Mapping[str, StrategyConfig]] = None) -> StrategyConfig:
    """
    Look up a strategy config by id.

    Raises:
        StrategyNotFoundError: If the id is not registered
    """
    configs = registry if registry is not None else DEFAULT_STRATEGIES
    try:
        return configs[strategy_id]
    except KeyError:
        raise StrategyNotFoundError(strategy_id) from None


def build_registry(overrides: Optional[Mapping[str, Mapping[str, Any]]] = None) -> Dict[str, StrategyConfig]:
    """
    Default registry with per-id field overrides applied.

    Args:
        overrides: Mapping of strategy id to field overrides

    Raises:
        StrategyNotFoundError: If an override names an unknown strategy
        ConfigError: If an override names an unknown field
    """
    registry = dict(DEFAULT_STRATEGIES)
    for strategy_id, changes in (overrides or {}).items():
        base = get_strategy_config(strategy_id, registry)
        registry[strategy_id] = base.with_overrides(**dict(changes))
        logger.info(f"Strategy {strategy_id} overridden: {sorted(changes)}")
    return registry


def policy_for(config: StrategyConfig) -> BaseStrategy:
    return POLICIES[config.kind]


def decide(market: MarketConditions, portfolio: PortfolioState, config: StrategyConfig) -> TradeDecision:
    """Dispatch a decision to the policy for config.kind."""
    return policy_for(config).decide(market, portfolio, config)


def interpret_regime(market: MarketConditions, config: StrategyConfig) -> Regime:
    return policy_for(config).interpret_regime(market, config)
