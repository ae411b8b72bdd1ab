"""
baseline.py - Benchmark Strategies

Buy-and-hold and fixed-schedule dollar-cost averaging. Neither reacts to the
regime; they exist as baselines for the fear/greed profiles.
"""

from __future__ import annotations

from core.models import MarketConditions, PortfolioState, Regime, TradeDecision
from strategies.base import BaseStrategy, StrategyConfig, StrategyKind


class HodlStrategy(BaseStrategy):
    """Spend all cash (minus a small buffer) once, never sell."""

    kind = StrategyKind.HODL

    def decide(self, market: MarketConditions, portfolio: PortfolioState,
               config: StrategyConfig) -> TradeDecision:
        if portfolio.crypto_amount == 0 and portfolio.cash > 0:
            return TradeDecision.buy(self.cash_cap(portfolio, config), "Initial HODL purchase")
        return TradeDecision.hold("HODL - never sell")

    def interpret_regime(self, market: MarketConditions, config: StrategyConfig) -> Regime:
        return Regime.NEUTRAL


class DcaStrategy(BaseStrategy):
    """
    Buy a fixed slice of total portfolio value every buy_frequency_hours.

    Unlike the other strategies the slice is a percentage of total value, not
    of remaining cash, so buys stay constant-sized while cash lasts.
    """

    kind = StrategyKind.DCA

    def decide(self, market: MarketConditions, portfolio: PortfolioState,
               config: StrategyConfig) -> TradeDecision:
        amount = portfolio.total_value * (config.buy_amount_percent / 100)
        if (amount > 0
                and self.throttle_ok(market, portfolio, config)
                and portfolio.cash >= amount):
            return TradeDecision.buy(min(amount, self.cash_cap(portfolio, config)), "Scheduled DCA buy")
        return TradeDecision.hold("Waiting for next DCA period")

    def interpret_regime(self, market: MarketConditions, config: StrategyConfig) -> Regime:
        return Regime.NEUTRAL
