import json
import math

import pandas as pd
import pytest

from interfaces.cli import EXIT_ENGINE_ERROR, EXIT_INPUT_ERROR, EXIT_OK, _main


def _bars_csv(tmp_path, n=260):
    rows = []
    start = pd.Timestamp("2023-01-01", tz="UTC")
    for i in range(n):
        close = 25_000.0 * (1 + 0.3 * math.sin(i / 25.0))
        rows.append({
            "timestamp": (start + pd.Timedelta(days=i)).isoformat(),
            "open": close, "high": close * 1.01, "low": close * 0.99, "close": close, "volume": 5.0,
        })
    path = tmp_path / "btc.csv"
    pd.DataFrame(rows).to_csv(path, index=False)
    return str(path)


@pytest.mark.asyncio
async def test_strategies_lists_all_ids(capsys):
    assert await _main(["strategies"]) == EXIT_OK
    out = capsys.readouterr().out
    assert out.splitlines()[0].startswith("hodl")
    assert "buy-the-dip" in out


@pytest.mark.asyncio
async def test_backtest_prints_summary_and_writes_report(tmp_path, capsys):
    bars = _bars_csv(tmp_path)
    code = await _main([
        "backtest", "--bars", bars, "--strategy", "hodl", "--capital", "5000",
        "--report-dir", str(tmp_path / "report"), "--trades-out", str(tmp_path / "trades.csv"),
    ])
    assert code == EXIT_OK
    assert "Buy & hold return" in capsys.readouterr().out
    assert (tmp_path / "report" / "hodl_summary.json").exists()
    assert len(pd.read_csv(tmp_path / "trades.csv")) == 1


@pytest.mark.asyncio
async def test_backtest_json_output(tmp_path, capsys):
    bars = _bars_csv(tmp_path)
    assert await _main(["backtest", "--bars", bars, "--strategy", "dca", "--json"]) == EXIT_OK
    data = json.loads(capsys.readouterr().out)
    assert data["status"] == "completed"
    assert data["strategy_id"] == "dca"


@pytest.mark.asyncio
async def test_unknown_strategy_exits_with_engine_error(tmp_path, capsys):
    bars = _bars_csv(tmp_path)
    assert await _main(["backtest", "--bars", bars, "--strategy", "nope"]) == EXIT_ENGINE_ERROR
    assert "Strategy not found: nope" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_short_history_exits_with_engine_error(tmp_path, capsys):
    bars = _bars_csv(tmp_path, n=200)
    assert await _main(["backtest", "--bars", bars, "--strategy", "hodl"]) == EXIT_ENGINE_ERROR
    assert "Insufficient data" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_missing_bar_file_is_an_input_error(tmp_path):
    assert await _main(["analyze", "--bars", str(tmp_path / "none.csv")]) == EXIT_INPUT_ERROR


@pytest.mark.asyncio
async def test_compare_prints_one_row_per_strategy(tmp_path, capsys):
    bars = _bars_csv(tmp_path)
    code = await _main(["compare", "--bars", bars, "--strategies", "hodl", "momentum"])
    assert code == EXIT_OK
    out = capsys.readouterr().out
    assert "hodl" in out and "momentum" in out


@pytest.mark.asyncio
async def test_analyze_reports_regime(tmp_path, capsys):
    bars = _bars_csv(tmp_path)
    code = await _main(["analyze", "--bars", bars, "--ath", "69000", "--json"])
    assert code == EXIT_OK
    data = json.loads(capsys.readouterr().out)
    assert data["ath"] == 69_000
    assert -100 <= data["score"] <= 100
    assert data["recommendation"] in {"strong_buy", "buy", "hold", "sell", "strong_sell"}
