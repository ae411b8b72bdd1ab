"""
base.py - Strategy Configuration and Policy Contract

Defines the immutable StrategyConfig value and the contract every strategy
policy implements. Policies decide what to trade from market conditions and
portfolio state but never execute trades, read clocks or keep state between
calls.

Shared decision shape (helpers on BaseStrategy):
- Position ceiling: no buys once crypto value reaches max_position_percent
- Floor rebalance: buy up to min_position_percent when below it
- Buy throttle: hours since the last buy must reach buy_frequency_hours
- Buy sizing: percent of cash, capped at cash minus a small buffer
- Sell gate: unrealized P&L must reach min_profit_to_sell
- Sell sizing: percent of holdings, capped by the position floor
"""

from __future__ import annotations

import dataclasses
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from core.errors import ConfigError
from core.models import MarketConditions, PortfolioState, Regime, TradeDecision
from strategies.regime_detector import RegimeThresholds

logger = logging.getLogger(__name__)

# Effectively infinite profit target used by strategies that never sell
NEVER_SELL = 999999.0


class StrategyKind(Enum):
    """Closed set of policy implementations."""
    HODL = "hodl"
    DCA = "dca"
    FEAR_GREED = "fear_greed"
    MOMENTUM = "momentum"
    BUY_THE_DIP = "buy_the_dip"

    def __str__(self):
        return self.value


class StrategyCategory(Enum):
    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"
    EXPERIMENTAL = "experimental"

    def __str__(self):
        return self.value


@dataclass(frozen=True)
class StrategyConfig:
    """
    Immutable parameters of one strategy instance.

    Attributes:
        id: Registry id, e.g. 'fear-greed-moderate'
        name: Display name
        kind: Policy implementation the config is dispatched to
        category: Risk category
        description: Operator-facing summary
        allocation_percent: Share of live capital assigned to this strategy
        buy_amount_percent: Percent of cash (or of total value for DCA) per buy
        buy_frequency_hours: Minimum hours between buys
        sell_amount_percent: Percent of holdings per sell
        min_profit_to_sell: Unrealized P&L percent required before selling
        max_position_percent: Crypto allocation ceiling
        min_position_percent: Crypto allocation floor
        fear_threshold: % from ATH for fear
        extreme_fear_threshold: % from ATH for extreme fear
        greed_rsi_threshold: RSI for greed
        extreme_greed_rsi_threshold: RSI for extreme greed
        params: Strategy-specific extras (multipliers, cut-offs, flags)
    """
    id: str
    name: str
    kind: StrategyKind
    category: StrategyCategory
    description: str = ""
    allocation_percent: float = 100.0
    buy_amount_percent: float = 10.0
    buy_frequency_hours: float = 24.0
    sell_amount_percent: float = 0.0
    min_profit_to_sell: float = NEVER_SELL
    max_position_percent: float = 100.0
    min_position_percent: float = 0.0
    fear_threshold: float = -30.0
    extreme_fear_threshold: float = -50.0
    greed_rsi_threshold: float = 70.0
    extreme_greed_rsi_threshold: float = 85.0
    params: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if isinstance(self.kind, str):
            object.__setattr__(self, "kind", StrategyKind(self.kind))
        if isinstance(self.category, str):
            object.__setattr__(self, "category", StrategyCategory(self.category))
        object.__setattr__(self, "params", MappingProxyType(dict(self.params)))

        if not 0 <= self.min_position_percent <= self.max_position_percent <= 100:
            raise ConfigError(
                f"{self.id}: position bounds must satisfy 0 <= min <= max <= 100, "
                f"got min={self.min_position_percent} max={self.max_position_percent}"
            )
        if self.buy_amount_percent < 0 or self.sell_amount_percent < 0:
            raise ConfigError(f"{self.id}: buy/sell percentages must be >= 0")
        if self.buy_frequency_hours < 0:
            raise ConfigError(f"{self.id}: buy_frequency_hours must be >= 0")
        if not 0 < self.allocation_percent <= 100:
            raise ConfigError(f"{self.id}: allocation_percent must be in (0, 100]")

    def get_param(self, key: str, default: Any = None) -> Any:
        return self.params.get(key, default)

    @property
    def thresholds(self) -> RegimeThresholds:
        return RegimeThresholds.from_config(self)

    def with_overrides(self, **changes: Any) -> "StrategyConfig":
        """
        Return a copy with fields replaced; a 'params' entry is merged into the
        existing extras rather than replacing them.

        Raises:
            ConfigError: If a field name is unknown
        """
        known = {f.name for f in dataclasses.fields(self)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise ConfigError(f"{self.id}: unknown strategy fields {unknown}")
        if "params" in changes:
            merged = dict(self.params)
            merged.update(changes["params"] or {})
            changes["params"] = merged
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in dataclasses.fields(self)}
        data["kind"] = self.kind.value
        data["category"] = self.category.value
        data["params"] = dict(self.params)
        return data


def hours_since(last: Optional[datetime], now: Optional[datetime]) -> Optional[float]:
    """
    Hours elapsed between two instants.

    Returns:
        None when there was no previous event or no reference time
    """
    if last is None or now is None:
        return None
    return (now - last).total_seconds() / 3600


class BaseStrategy(ABC):
    """
    Stateless strategy policy.

    Subclasses implement decide() and interpret_regime(); both must be pure
    functions of their arguments so backtests replay identically.
    """

    kind: StrategyKind

    @abstractmethod
    def decide(self, market: MarketConditions, portfolio: PortfolioState,
               config: StrategyConfig) -> TradeDecision:
        """
        Decide whether to buy, sell or hold.

        Args:
            market: Indicator readings and classified regime (timestamp is "now")
            portfolio: Account view at the current price
            config: Strategy parameters

        Returns:
            TradeDecision (USD amount for buys, asset units for sells)
        """

    @abstractmethod
    def interpret_regime(self, market: MarketConditions, config: StrategyConfig) -> Regime:
        """This strategy's own reading of the market regime."""

    # -------------------------
    # Shared decision helpers
    # -------------------------
    @staticmethod
    def below_ceiling(portfolio: PortfolioState, config: StrategyConfig) -> bool:
        return portfolio.position_percent < config.max_position_percent

    @staticmethod
    def throttle_ok(market: MarketConditions, portfolio: PortfolioState,
                    config: StrategyConfig, frequency_multiplier: float = 1.0) -> bool:
        """
        True when enough time has passed since the last buy.

        No previous buy always passes. A previous buy without a reference time
        on the market reading never passes.
        """
        if portfolio.last_buy_time is None:
            return True
        elapsed = hours_since(portfolio.last_buy_time, market.timestamp)
        if elapsed is None:
            return False
        return elapsed >= config.buy_frequency_hours * frequency_multiplier

    @staticmethod
    def has_cash_to_buy(portfolio: PortfolioState, config: StrategyConfig) -> bool:
        return portfolio.cash > config.get_param("min_cash_to_buy", 100.0)

    @staticmethod
    def cash_cap(portfolio: PortfolioState, config: StrategyConfig) -> float:
        """Cash available for a buy after the fee/slippage buffer."""
        buffer = config.get_param("cash_buffer_percent", 1.0)
        return portfolio.cash * (1 - buffer / 100)

    def size_buy(self, portfolio: PortfolioState, config: StrategyConfig,
                 multiplier: float = 1.0) -> float:
        amount = portfolio.cash * (config.buy_amount_percent / 100) * multiplier
        return min(amount, self.cash_cap(portfolio, config))

    @staticmethod
    def profit_ok(portfolio: PortfolioState, config: StrategyConfig) -> bool:
        return portfolio.unrealized_pnl_percent >= config.min_profit_to_sell

    @staticmethod
    def floor_amount(market: MarketConditions, portfolio: PortfolioState,
                     config: StrategyConfig) -> float:
        """Units that must stay held to respect the position floor."""
        if market.price <= 0:
            return portfolio.crypto_amount
        return portfolio.total_value * config.min_position_percent / 100 / market.price

    def size_sell(self, market: MarketConditions, portfolio: PortfolioState,
                  config: StrategyConfig, multiplier: float = 1.0) -> float:
        """Sell size capped so holdings stay at or above the floor (0 if none)."""
        sellable = portfolio.crypto_amount - self.floor_amount(market, portfolio, config)
        if sellable <= 0:
            return 0.0
        amount = portfolio.crypto_amount * (config.sell_amount_percent / 100) * multiplier
        return max(0.0, min(amount, sellable))

    def floor_rebalance(self, portfolio: PortfolioState,
                        config: StrategyConfig) -> Optional[TradeDecision]:
        """Buy back up to the position floor, ignoring regime and throttle."""
        position = portfolio.position_percent
        if position >= config.min_position_percent or not self.has_cash_to_buy(portfolio, config):
            return None
        target = (config.min_position_percent - position) / 100 * portfolio.total_value
        amount = min(target, self.cash_cap(portfolio, config))
        if amount <= 0:
            return None
        return TradeDecision.buy(
            amount,
            f"Rebalancing to minimum position ({position:.0f}% -> {config.min_position_percent:.0f}%)",
        )

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(kind={self.kind.value})"
