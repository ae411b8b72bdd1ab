"""
momentum.py - Moving-Average Trend Following Strategy

Buys while price trades above the configured moving average and trims while it
trades below. Unlike the fear/greed profiles this strategy sells on a trend
break whether or not the position is in profit.
"""

from __future__ import annotations

from typing import Optional

from core.models import MarketConditions, PortfolioState, Regime, TradeDecision
from strategies.base import BaseStrategy, StrategyConfig, StrategyKind


class MomentumStrategy(BaseStrategy):
    """Trend follower on the 50-bar (or 200-bar) moving average."""

    kind = StrategyKind.MOMENTUM

    @staticmethod
    def _trend_ma(market: MarketConditions, config: StrategyConfig) -> Optional[float]:
        if str(config.get_param("ma_period", "50")) == "200":
            return market.ma200
        return market.ma50

    def interpret_regime(self, market: MarketConditions, config: StrategyConfig) -> Regime:
        ma = self._trend_ma(market, config)
        if not ma:
            return Regime.NEUTRAL
        above = market.price > ma
        distance = abs(market.price - ma) / ma * 100
        extreme = distance > config.get_param("trend_extreme_distance", 20.0)
        if above:
            return Regime.EXTREME_GREED if extreme else Regime.GREED
        return Regime.EXTREME_FEAR if extreme else Regime.FEAR

    def decide(self, market: MarketConditions, portfolio: PortfolioState,
               config: StrategyConfig) -> TradeDecision:
        ma = self._trend_ma(market, config)
        if not ma:
            return TradeDecision.hold("Waiting for MA data")

        above = market.price > ma
        distance = (market.price - ma) / ma * 100

        if (above
                and self.below_ceiling(portfolio, config)
                and self.throttle_ok(market, portfolio, config)
                and self.has_cash_to_buy(portfolio, config)):
            return TradeDecision.buy(
                self.size_buy(portfolio, config),
                f"Uptrend confirmed ({distance:.1f}% above MA)",
            )

        if not above and portfolio.crypto_amount > 0:
            amount = self.size_sell(market, portfolio, config)
            if amount > 0:
                return TradeDecision.sell(
                    amount,
                    f"Downtrend detected ({abs(distance):.1f}% below MA)",
                )

        trend = "UP" if above else "DOWN"
        return TradeDecision.hold(f"Trend: {trend} ({distance:.1f}% from MA)")
