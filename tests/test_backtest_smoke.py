"""End-to-end backtest: synthetic engulfing setups replayed through the runner."""

from __future__ import annotations

import json
from pathlib import Path

import pandas as pd
import pytest
import yaml

from tradecore.engine.runner import run_backtest

# bearish bar, bullish engulfing, breakout, take-profit run, two flat bars
_BLOCK = [
    (100.0, 100.5, 97.5, 98.0),
    (97.0, 102.0, 96.0, 101.0),
    (101.0, 103.0, 100.5, 102.5),
    (102.5, 107.0, 102.0, 106.0),
    (106.0, 106.5, 105.5, 106.0),
    (106.0, 106.5, 105.5, 106.0),
]


def _write_bars(data_dir: Path, days: int = 4) -> None:
    data_dir.mkdir(parents=True, exist_ok=True)
    n = 24 * days
    rows = [_BLOCK[i % len(_BLOCK)] for i in range(n)]
    df = pd.DataFrame(rows, columns=["open", "high", "low", "close"])
    df.insert(0, "time", pd.date_range("2024-01-01", periods=n, freq="1h", tz="UTC"))
    df["tick_volume"] = 100
    df["spread"] = 0
    df.to_csv(data_dir / "EURUSD_H1.csv", index=False)


def _write_config(tmp_path: Path) -> Path:
    config = {
        "symbol": "EURUSD",
        "timeframe": "H1",
        "strategy_id": 7,
        "detector": {"type": "engulfing"},
        "confirmation": {"enabled": True, "confirm_bars": 3, "window_bars": 5},
        "sizing": {"base_size": 0.01, "max_size": 0.1, "increment": 0.01},
        "trade": {
            "point": 0.01,
            "stop_loss_points": 200,
            "take_profit_points": 400,
            "max_hold_hours": 24,
        },
        "snapshot_dir": str(tmp_path / "data"),
        "output_dir": str(tmp_path / "runs"),
        "starting_capital": 10000.0,
        "spread_points": 0,
        "contract_size": 100,
    }
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.safe_dump(config), encoding="utf-8")
    return config_path


def test_backtest_writes_artifacts(tmp_path):
    _write_bars(tmp_path / "data")
    config_path = _write_config(tmp_path)

    run_id = run_backtest(str(config_path))
    run_dir = tmp_path / "runs" / run_id

    for name in ("config.yaml", "equity.csv", "trades.csv", "metrics.json", "README.md"):
        assert (run_dir / name).exists(), name
    assert (run_dir / "plots" / "equity.png").exists()
    assert (run_dir / "plots" / "close_price.png").exists()
    assert (run_dir / "data_snapshot" / "DATA_REF.json").exists()

    metrics = json.loads((run_dir / "metrics.json").read_text(encoding="utf-8"))
    # one winning trade per day, then the day is halted
    assert metrics["n_trades"] == 4
    assert metrics["halted_days"] == 4
    assert metrics["signals_confirmed"] == 4
    assert metrics["blocked_bars"]["HALTED_FOR_DAY"] > 0
    assert metrics["total_pnl"] > 0
    assert metrics["ending_equity"] == pytest.approx(10000.0 + metrics["total_pnl"])

    trades = pd.read_csv(run_dir / "trades.csv")
    assert set(trades["exit_reason"]) == {"take_profit"}
    assert set(trades["side"]) == {"long"}

    equity = pd.read_csv(run_dir / "equity.csv")
    assert len(equity) == 96
    assert equity["current_size"].between(0.01, 0.1).all()


def test_backtest_is_deterministic(tmp_path):
    _write_bars(tmp_path / "data", days=2)
    config_path = _write_config(tmp_path)

    run_dir_1 = tmp_path / "runs" / run_backtest(str(config_path))
    run_dir_2 = tmp_path / "runs" / run_backtest(str(config_path))

    assert (run_dir_1 / "trades.csv").read_bytes() == (run_dir_2 / "trades.csv").read_bytes()
    assert (run_dir_1 / "equity.csv").read_bytes() == (run_dir_2 / "equity.csv").read_bytes()
    m1 = json.loads((run_dir_1 / "metrics.json").read_text(encoding="utf-8"))
    m2 = json.loads((run_dir_2 / "metrics.json").read_text(encoding="utf-8"))
    m1.pop("run_id")
    m2.pop("run_id")
    assert m1 == m2
