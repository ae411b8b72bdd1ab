"""
Unit tests for the composite fear/greed regime classifier.
"""

from datetime import datetime, timedelta, timezone

import pytest

from core.models import Bar, Regime
from strategies.indicators import latest_snapshot
from strategies.regime_detector import (
    RegimeDetector,
    RegimeThresholds,
    describe,
    recommendation,
    regime_for_score,
)
from strategies.registry import get_strategy_config


def _points(reading, factor):
    return next(s.points for s in reading.signals if s.factor == factor)


def test_full_fear_reading_scores_minus_100():
    # 50% below a $60,000 ATH, RSI 25, 25% under the 200MA, death cross
    reading = RegimeDetector().classify(
        price=30_000.0,
        rsi=25.0,
        ma50=30_000.0,
        ma200=40_000.0,
        percent_from_ath=-50.0,
    )
    assert _points(reading, "ath") == -40
    assert _points(reading, "rsi") == -30
    assert _points(reading, "ma200") == -20
    assert _points(reading, "ma_cross") == -10
    assert reading.score == -100
    assert reading.regime is Regime.EXTREME_FEAR


def test_flat_closes_read_as_extremely_overbought():
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    bars = [Bar(start + timedelta(days=i), 100.0, 100.0, 100.0, 100.0) for i in range(20)]
    snap = latest_snapshot(bars)
    assert snap.rsi == 100.0

    reading = RegimeDetector().market_conditions(snap)
    rsi_signal = next(s for s in reading.signals if s.factor == "rsi")
    assert rsi_signal.points == 30
    # at the ATH (+20), RSI 100 (+30), no MA factors with 20 bars
    assert reading.regime_score == 50
    assert reading.regime is Regime.EXTREME_GREED
    assert {s.factor for s in reading.signals} == {"ath", "rsi"}


def test_ma_factors_skipped_without_long_average():
    reading = RegimeDetector().classify(price=100.0, rsi=50.0, ma50=90.0, ma200=None, percent_from_ath=-20.0)
    assert [s.factor for s in reading.signals] == ["ath", "rsi"]
    assert reading.score == 0


def test_cross_skipped_without_short_average():
    reading = RegimeDetector().classify(price=100.0, rsi=50.0, ma50=None, ma200=80.0, percent_from_ath=-20.0)
    assert [s.factor for s in reading.signals] == ["ath", "rsi", "ma200"]
    assert _points(reading, "ma200") == 10


def test_cross_inside_margin_contributes_nothing():
    reading = RegimeDetector().classify(price=100.0, rsi=50.0, ma50=102.0, ma200=100.0, percent_from_ath=-20.0)
    assert "ma_cross" not in {s.factor for s in reading.signals}


@pytest.mark.parametrize(
    "score,expected",
    [
        (-100, Regime.EXTREME_FEAR),
        (-50, Regime.EXTREME_FEAR),
        (-49, Regime.FEAR),
        (-20, Regime.FEAR),
        (-19, Regime.NEUTRAL),
        (0, Regime.NEUTRAL),
        (19, Regime.NEUTRAL),
        (20, Regime.GREED),
        (49, Regime.GREED),
        (50, Regime.EXTREME_GREED),
        (100, Regime.EXTREME_GREED),
    ],
)
def test_score_band_edges(score, expected):
    assert regime_for_score(score) is expected


def test_score_sweep_is_monotonic():
    order = [Regime.EXTREME_FEAR, Regime.FEAR, Regime.NEUTRAL, Regime.GREED, Regime.EXTREME_GREED]
    ranks = [order.index(regime_for_score(s)) for s in range(-100, 101)]
    assert ranks == sorted(ranks)
    assert set(ranks) == set(range(5))


def test_strategies_can_disagree_on_the_same_bar():
    detector = RegimeDetector()
    inputs = dict(price=100.0, rsi=50.0, ma50=None, ma200=None, percent_from_ath=-32.0)
    default = detector.classify(**inputs)
    conservative = detector.classify(**inputs, thresholds=get_strategy_config("fear-greed-conservative").thresholds)
    assert _points(default, "ath") == -25
    assert _points(conservative, "ath") == 0


def test_custom_rsi_thresholds():
    t = RegimeThresholds(greed_rsi_threshold=60.0, extreme_greed_rsi_threshold=65.0)
    reading = RegimeDetector().classify(price=1.0, rsi=66.0, ma50=None, ma200=None, percent_from_ath=-20.0, thresholds=t)
    assert _points(reading, "rsi") == 30


def test_signals_carry_labels():
    reading = RegimeDetector().classify(
        price=30_000.0, rsi=25.0, ma50=30_000.0, ma200=40_000.0, percent_from_ath=-50.0)
    labels = [s.to_dict()["label"] for s in reading.signals]
    assert labels[0] == "50% below ATH (extreme fear)"
    assert labels[-1] == "Death cross active (50MA < 200MA)"


def test_recommendation_and_description():
    assert recommendation(-100) == "strong_buy"
    assert recommendation(-30) == "buy"
    assert recommendation(0) == "hold"
    assert recommendation(30) == "sell"
    assert recommendation(60) == "strong_sell"
    assert describe(Regime.FEAR).startswith("FEAR")
