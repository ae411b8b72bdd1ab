"""
Unit tests for the indicator calculator: SMA, RSI, ATH tracking and snapshots.
"""

from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from core.models import Bar
from strategies.indicators import (
    NEUTRAL_RSI,
    AthTracker,
    IndicatorCalculator,
    indicator_frame,
    latest_snapshot,
    percent_from_ath,
    rsi,
    sma,
)


def _bars(closes, start=datetime(2024, 1, 1, tzinfo=timezone.utc), spread=0.0):
    return [
        Bar(
            timestamp=start + timedelta(days=i),
            open=c,
            high=c * (1 + spread),
            low=c * (1 - spread),
            close=c,
            volume=1.0,
        )
        for i, c in enumerate(closes)
    ]


def test_sma_needs_full_window():
    assert sma([1.0, 2.0], 3) is None
    assert sma([1.0, 2.0, 3.0, 4.0], 3) == pytest.approx(3.0)


def test_rsi_neutral_when_window_short():
    assert rsi([100.0] * 14) == NEUTRAL_RSI


def test_rsi_flat_series_reads_100():
    # no losses at all: avg loss is 0
    assert rsi([100.0] * 20) == 100.0


def test_rsi_all_losses_reads_0():
    closes = [100.0 - i for i in range(15)]
    assert rsi(closes) == pytest.approx(0.0)


def test_rsi_simple_average_formula():
    # 7 gains of +2 and 7 losses of -1 -> RS = 2 -> RSI = 66.67
    closes = [100.0]
    for i in range(14):
        closes.append(closes[-1] + (2.0 if i % 2 == 0 else -1.0))
    assert rsi(closes) == pytest.approx(100 - 100 / 3)


def test_rsi_uses_only_last_period_changes():
    head = [500.0, 1.0, 900.0]
    tail = [100.0 + i for i in range(15)]
    assert rsi(head + tail) == rsi(tail) == 100.0


def test_rsi_bounded_on_random_series():
    rng = np.random.default_rng(7)
    for _ in range(50):
        closes = list(np.cumprod(1 + rng.normal(0, 0.03, size=60)) * 100)
        value = rsi(closes)
        assert 0.0 <= value <= 100.0


def test_percent_from_ath():
    assert percent_from_ath(30_000, 60_000) == pytest.approx(-50.0)
    assert percent_from_ath(60_000, 60_000) == pytest.approx(0.0)


def test_ath_tracker_keeps_running_max_and_seed():
    tracker = AthTracker(seed=150.0)
    assert tracker.update(120.0) == 150.0
    assert tracker.update(160.0) == 160.0
    assert tracker.update(140.0) == 160.0
    assert tracker.bars_since_ath == 1


def test_ath_tracker_for_symbol_uses_known_table():
    tracker = AthTracker.for_symbol("BTC/USDT")
    assert tracker.ath > 0
    assert tracker.seed_time is not None
    assert AthTracker.for_symbol("UNKNOWN/USDT").ath == 0.0
    assert AthTracker.for_symbol("BTC/USDT", override=1234.0).ath == 1234.0


def test_calculator_mas_appear_after_warmup():
    calc = IndicatorCalculator()
    snaps = calc.compute_series(_bars([float(100 + i) for i in range(210)]))
    assert snaps[48].ma50 is None
    assert snaps[49].ma50 == pytest.approx(np.mean(range(100, 150)))
    assert snaps[198].ma200 is None
    assert snaps[199].ma200 == pytest.approx(np.mean(range(100, 300)))
    assert snaps[-1].percent_from_ath == pytest.approx(0.0)


def test_calculator_percent_from_seeded_ath():
    calc = IndicatorCalculator(ath_seed=200.0)
    snap = calc.update(_bars([100.0])[0])
    assert snap.ath == 200.0
    assert snap.percent_from_ath == pytest.approx(-50.0)


def test_latest_snapshot_live_price_replaces_last_close():
    bars = _bars([100.0] * 30)
    snap = latest_snapshot(bars, price=90.0)
    assert snap.price == 90.0
    assert snap.percent_from_ath == pytest.approx(-10.0)
    assert snap.rsi == pytest.approx(0.0)


def test_latest_snapshot_rejects_empty():
    with pytest.raises(ValueError):
        latest_snapshot([])


def test_indicator_frame_one_row_per_bar():
    frame = indicator_frame(_bars([100.0 + i for i in range(60)]))
    assert len(frame) == 60
    assert {"close", "ma50", "ma200", "rsi", "percent_from_ath"} <= set(frame.columns)
    assert frame["ma200"].isna().all()
