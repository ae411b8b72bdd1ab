"""
regime_detector.py - Fear/Greed Regime Classification

Stateless and deterministic classifier that turns indicator readings into a
composite sentiment score in [-100, 100] and one of five regimes.

Score factors:
- Distance from all-time high: -40 .. +20
- RSI: -30 .. +30
- Price versus 200-bar MA: -20 .. +20 (skipped while the MA is warming up)
- 50/200 MA cross: -10 .. +10 (skipped unless both MAs are available)

Every factor reading is returned as a RegimeSignal so a decision can be
explained after the fact.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from core.models import MarketConditions, Regime
from strategies.indicators import IndicatorSnapshot

logger = logging.getLogger(__name__)

# Fixed factor cut-offs (only the ATH and greed RSI cut-offs are configurable)
NEAR_ATH_PERCENT = -10.0
OVERSOLD_RSI = 30.0
APPROACHING_OVERSOLD_RSI = 40.0
MA_DEEP_DISCOUNT = -20.0
MA_EXTENDED = 50.0
MA_STRETCHED = 20.0
CROSS_MARGIN = 0.05

REGIME_DESCRIPTIONS: Dict[Regime, str] = {
    Regime.EXTREME_FEAR: "EXTREME FEAR - Prime accumulation zone. This is when fortunes are made.",
    Regime.FEAR: "FEAR - Good time to accumulate. Others are scared, be greedy.",
    Regime.NEUTRAL: "NEUTRAL - Market is balanced. Hold positions, wait for clarity.",
    Regime.GREED: "GREED - Consider taking some profits. Don't be greedy.",
    Regime.EXTREME_GREED: "EXTREME GREED - High risk zone. Take profits, preserve capital.",
}


@dataclass(frozen=True)
class RegimeThresholds:
    """
    Configurable classifier cut-offs.

    Attributes:
        fear_threshold: % from ATH at or below which the ATH factor reads fear
        extreme_fear_threshold: % from ATH at or below which it reads extreme fear
        greed_rsi_threshold: RSI at or above which the RSI factor reads greed
        extreme_greed_rsi_threshold: RSI at or above which it reads extreme greed
    """
    fear_threshold: float = -30.0
    extreme_fear_threshold: float = -50.0
    greed_rsi_threshold: float = 70.0
    extreme_greed_rsi_threshold: float = 85.0

    @classmethod
    def from_config(cls, config: Any) -> "RegimeThresholds":
        """Build thresholds from any object carrying the four threshold fields."""
        return cls(
            fear_threshold=config.fear_threshold,
            extreme_fear_threshold=config.extreme_fear_threshold,
            greed_rsi_threshold=config.greed_rsi_threshold,
            extreme_greed_rsi_threshold=config.extreme_greed_rsi_threshold,
        )


@dataclass(frozen=True)
class RegimeSignal:
    """
    One factor reading.

    Attributes:
        factor: 'ath', 'rsi', 'ma200' or 'ma_cross'
        value: The measured value (percent or RSI)
        points: Contribution to the composite score
        zone: Short classification of the reading
    """
    factor: str
    value: float
    points: int
    zone: str

    @property
    def label(self) -> str:
        if self.factor == "ath":
            if self.zone in ("extreme fear", "fear"):
                return f"{abs(self.value):.0f}% below ATH ({self.zone})"
            if self.zone == "near ath":
                return f"Near ATH ({self.value:.0f}%)"
            return f"{self.value:.0f}% from ATH"
        if self.factor == "rsi":
            return f"RSI {self.value:.0f} ({self.zone})"
        if self.factor == "ma200":
            if self.value < 0 and self.zone != "near":
                return f"{abs(self.value):.0f}% below 200MA ({self.zone})"
            if self.zone == "near":
                return f"Near 200MA ({self.value:+.0f}%)"
            return f"{self.value:.0f}% above 200MA ({self.zone})"
        if self.zone == "golden cross":
            return "Golden cross active (50MA > 200MA)"
        return "Death cross active (50MA < 200MA)"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "factor": self.factor,
            "value": self.value,
            "points": self.points,
            "zone": self.zone,
            "label": self.label,
        }


@dataclass(frozen=True)
class RegimeReading:
    regime: Regime
    score: int
    signals: Tuple[RegimeSignal, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "regime": self.regime.value,
            "score": self.score,
            "signals": [s.to_dict() for s in self.signals],
        }


def regime_for_score(score: int) -> Regime:
    """Map a composite score onto a regime (band edges are inclusive)."""
    if score <= -50:
        return Regime.EXTREME_FEAR
    if score <= -20:
        return Regime.FEAR
    if score >= 50:
        return Regime.EXTREME_GREED
    if score >= 20:
        return Regime.GREED
    return Regime.NEUTRAL


def recommendation(score: int) -> str:
    """Operator-facing action hint for a composite score."""
    if score <= -60:
        return "strong_buy"
    if score <= -30:
        return "buy"
    if score >= 60:
        return "strong_sell"
    if score >= 30:
        return "sell"
    return "hold"


def describe(regime: Regime) -> str:
    return REGIME_DESCRIPTIONS[regime]


class RegimeDetector:
    """
    Stateless fear/greed regime classifier.

    The same instance may be shared by any number of strategies and runs.
    """

    def classify(
        self,
        price: float,
        rsi: float,
        ma50: Optional[float],
        ma200: Optional[float],
        percent_from_ath: float,
        thresholds: Optional[RegimeThresholds] = None,
    ) -> RegimeReading:
        """
        Score the four factors and map the sum onto a regime.

        Args:
            price: Current price
            rsi: RSI(14)
            ma50: 50-bar MA or None
            ma200: 200-bar MA or None
            percent_from_ath: Signed distance from ATH in percent
            thresholds: Classifier cut-offs (defaults when omitted)

        Returns:
            RegimeReading with regime, score and per-factor signals
        """
        t = thresholds or RegimeThresholds()
        signals: List[RegimeSignal] = [
            self._ath_factor(percent_from_ath, t),
            self._rsi_factor(rsi, t),
        ]

        if ma200 is not None and ma200 > 0:
            signals.append(self._ma_factor(price, ma200))
            if ma50 is not None:
                cross = self._cross_factor(ma50, ma200)
                if cross is not None:
                    signals.append(cross)

        score = sum(s.points for s in signals)
        return RegimeReading(regime=regime_for_score(score), score=score, signals=tuple(signals))

    def market_conditions(
        self,
        snapshot: IndicatorSnapshot,
        thresholds: Optional[RegimeThresholds] = None,
        timestamp: Optional[datetime] = None,
    ) -> MarketConditions:
        """Classify an indicator snapshot and package it as MarketConditions."""
        reading = self.classify(
            price=snapshot.price,
            rsi=snapshot.rsi,
            ma50=snapshot.ma50,
            ma200=snapshot.ma200,
            percent_from_ath=snapshot.percent_from_ath,
            thresholds=thresholds,
        )
        return MarketConditions(
            price=snapshot.price,
            rsi=snapshot.rsi,
            ma50=snapshot.ma50,
            ma200=snapshot.ma200,
            percent_from_ath=snapshot.percent_from_ath,
            regime=reading.regime,
            regime_score=reading.score,
            timestamp=timestamp or snapshot.timestamp,
            signals=reading.signals,
        )

    # -------------------------
    # Factors
    # -------------------------
    @staticmethod
    def _ath_factor(pct: float, t: RegimeThresholds) -> RegimeSignal:
        if pct <= t.extreme_fear_threshold:
            return RegimeSignal("ath", pct, -40, "extreme fear")
        if pct <= t.fear_threshold:
            return RegimeSignal("ath", pct, -25, "fear")
        if pct >= NEAR_ATH_PERCENT:
            return RegimeSignal("ath", pct, 20, "near ath")
        return RegimeSignal("ath", pct, 0, "neutral")

    @staticmethod
    def _rsi_factor(value: float, t: RegimeThresholds) -> RegimeSignal:
        if value >= t.extreme_greed_rsi_threshold:
            return RegimeSignal("rsi", value, 30, "extremely overbought")
        if value >= t.greed_rsi_threshold:
            return RegimeSignal("rsi", value, 20, "overbought")
        if value <= OVERSOLD_RSI:
            return RegimeSignal("rsi", value, -30, "oversold - buy signal")
        if value <= APPROACHING_OVERSOLD_RSI:
            return RegimeSignal("rsi", value, -15, "approaching oversold")
        return RegimeSignal("rsi", value, 0, "neutral")

    @staticmethod
    def _ma_factor(price: float, ma200: float) -> RegimeSignal:
        deviation = (price - ma200) / ma200 * 100
        if deviation < MA_DEEP_DISCOUNT:
            return RegimeSignal("ma200", deviation, -20, "strong buy zone")
        if deviation < 0:
            return RegimeSignal("ma200", deviation, -10, "discount")
        if deviation > MA_EXTENDED:
            return RegimeSignal("ma200", deviation, 20, "extended")
        if deviation > MA_STRETCHED:
            return RegimeSignal("ma200", deviation, 10, "stretched")
        return RegimeSignal("ma200", deviation, 0, "near")

    @staticmethod
    def _cross_factor(ma50: float, ma200: float) -> Optional[RegimeSignal]:
        ratio = ma50 / ma200
        if ma50 > ma200 * (1 + CROSS_MARGIN):
            return RegimeSignal("ma_cross", ratio, 10, "golden cross")
        if ma50 < ma200 * (1 - CROSS_MARGIN):
            return RegimeSignal("ma_cross", ratio, -10, "death cross")
        return None

    def __repr__(self) -> str:
        return "RegimeDetector()"
