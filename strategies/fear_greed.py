"""
fear_greed.py - Fear & Greed Accumulation Strategy

Buys while the market is fearful and trims while it is greedy. The three
shipped risk profiles (conservative, moderate, aggressive) are the same policy
with different StrategyConfig values.

Profile parameters (config.params):
- extreme_fear_rsi / fear_rsi: RSI cut-offs that force a fear reading
- buy_in_fear: also buy in plain fear, not only in extreme fear
- sell_in_greed: also sell in plain greed, not only in extreme greed
- extreme_fear_buy_multiplier: buy size multiplier in extreme fear
- extreme_fear_frequency_multiplier: throttle multiplier in extreme fear
- extreme_greed_sell_multiplier: sell size multiplier in extreme greed
- rebalance_to_floor: top up to min_position_percent before anything else
"""

from __future__ import annotations

import logging

from core.models import MarketConditions, PortfolioState, Regime, TradeDecision
from strategies.base import BaseStrategy, StrategyConfig, StrategyKind

logger = logging.getLogger(__name__)


class FearGreedStrategy(BaseStrategy):
    """Contrarian accumulation driven by distance from ATH and RSI."""

    kind = StrategyKind.FEAR_GREED

    def interpret_regime(self, market: MarketConditions, config: StrategyConfig) -> Regime:
        pct = market.percent_from_ath
        rsi = market.rsi
        if pct <= config.extreme_fear_threshold or rsi <= config.get_param("extreme_fear_rsi", 30.0):
            return Regime.EXTREME_FEAR
        if pct <= config.fear_threshold or rsi <= config.get_param("fear_rsi", 40.0):
            return Regime.FEAR
        if rsi >= config.extreme_greed_rsi_threshold:
            return Regime.EXTREME_GREED
        if rsi >= config.greed_rsi_threshold:
            return Regime.GREED
        return Regime.NEUTRAL

    def decide(self, market: MarketConditions, portfolio: PortfolioState,
               config: StrategyConfig) -> TradeDecision:
        regime = self.interpret_regime(market, config)
        position = portfolio.position_percent

        if config.get_param("rebalance_to_floor", False):
            rebalance = self.floor_rebalance(portfolio, config)
            if rebalance is not None:
                return rebalance

        buy = self._buy(regime, market, portfolio, config)
        if buy is not None:
            return buy

        sell = self._sell(regime, market, portfolio, config)
        if sell is not None:
            return sell

        return TradeDecision.hold(f"Holding (regime: {regime.value}, position: {position:.0f}%)")

    def _buy(self, regime: Regime, market: MarketConditions, portfolio: PortfolioState,
             config: StrategyConfig):
        buys_in = regime is Regime.EXTREME_FEAR or (
            regime is Regime.FEAR and config.get_param("buy_in_fear", True))
        if not buys_in:
            return None

        extreme = regime is Regime.EXTREME_FEAR
        size_mult = config.get_param("extreme_fear_buy_multiplier", 1.0) if extreme else 1.0
        freq_mult = config.get_param("extreme_fear_frequency_multiplier", 1.0) if extreme else 1.0

        if not (self.below_ceiling(portfolio, config)
                and self.throttle_ok(market, portfolio, config, freq_mult)
                and self.has_cash_to_buy(portfolio, config)):
            return None

        amount = self.size_buy(portfolio, config, size_mult)
        if amount <= 0:
            return None
        return TradeDecision.buy(
            amount,
            f"{regime.value} accumulation ({market.percent_from_ath:.0f}% from ATH, RSI {market.rsi:.0f})",
        )

    def _sell(self, regime: Regime, market: MarketConditions, portfolio: PortfolioState,
              config: StrategyConfig):
        sells_in = regime is Regime.EXTREME_GREED or (
            regime is Regime.GREED and config.get_param("sell_in_greed", True))
        if not sells_in or portfolio.crypto_amount <= 0:
            return None
        if not self.profit_ok(portfolio, config):
            return None

        mult = config.get_param("extreme_greed_sell_multiplier", 1.0) if regime is Regime.EXTREME_GREED else 1.0
        amount = self.size_sell(market, portfolio, config, mult)
        if amount <= 0:
            return None
        return TradeDecision.sell(
            amount,
            f"{regime.value} profit taking (+{portfolio.unrealized_pnl_percent:.0f}% profit, RSI {market.rsi:.0f})",
        )
