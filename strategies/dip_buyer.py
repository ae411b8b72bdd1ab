"""
dip_buyer.py - Buy the Dip Strategy

Accumulates only after a drawdown from the all-time high and never sells.
A dip twice as deep as dip_threshold doubles the buy size.
"""

from __future__ import annotations

from core.models import MarketConditions, PortfolioState, Regime, TradeDecision
from strategies.base import BaseStrategy, StrategyConfig, StrategyKind


class BuyTheDipStrategy(BaseStrategy):

    kind = StrategyKind.BUY_THE_DIP

    def interpret_regime(self, market: MarketConditions, config: StrategyConfig) -> Regime:
        if market.percent_from_ath <= config.extreme_fear_threshold:
            return Regime.EXTREME_FEAR
        if market.percent_from_ath <= config.fear_threshold:
            return Regime.FEAR
        return Regime.NEUTRAL

    def decide(self, market: MarketConditions, portfolio: PortfolioState,
               config: StrategyConfig) -> TradeDecision:
        dip = config.get_param("dip_threshold", config.fear_threshold)
        in_dip = market.percent_from_ath <= dip
        big_dip = market.percent_from_ath <= dip * 2

        if (in_dip
                and self.below_ceiling(portfolio, config)
                and self.throttle_ok(market, portfolio, config)
                and self.has_cash_to_buy(portfolio, config)):
            multiplier = config.get_param("big_dip_multiplier", 2.0) if big_dip else 1.0
            return TradeDecision.buy(
                self.size_buy(portfolio, config, multiplier),
                f"Buying the dip ({market.percent_from_ath:.0f}% from ATH)",
            )

        return TradeDecision.hold(f"Waiting for dip (currently {market.percent_from_ath:.0f}% from ATH)")
