"""Backtest runner — orchestrates load → replay → artifact generation."""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
import sys
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path

import pandas as pd
import yaml

from tradecore.engine.config import EngineConfig
from tradecore.engine.core import ActionKind, TradingEngine
from tradecore.execution.paper import PaperBroker
from tradecore.replay.bar_iterator import BarIterator
from tradecore.replay.validation import validate_bars
from tradecore.reporting.plots import plot_close_price, plot_equity

log = logging.getLogger(__name__)

# Repo root (two levels up from tradecore/engine/runner.py)
_REPO_ROOT = Path(__file__).resolve().parent.parent.parent


def load_snapshot(snapshot_dir: Path) -> tuple[pd.DataFrame, list[Path]]:
    """Concatenate every CSV in *snapshot_dir*; exits when there are none."""
    csv_files = sorted(snapshot_dir.glob("*.csv"))
    if not csv_files:
        log.error("No CSV files found in %s", snapshot_dir)
        sys.exit(1)

    frames = []
    for csv_file in csv_files:
        df_part = pd.read_csv(csv_file)
        frames.append(df_part)
        log.info("  Loaded %s  (%s rows)", csv_file.name, f"{len(df_part):,}")

    df = pd.concat(frames, ignore_index=True)
    log.info("Total raw rows: %s", f"{len(df):,}")
    return df, csv_files


def run_backtest(config_path: str) -> str:
    """Replay a bar snapshot through the engine and write all run artifacts.

    Parameters
    ----------
    config_path : str
        Path to a YAML config file (relative to repo root or absolute).

    Returns
    -------
    str
        The generated ``run_id``.
    """
    cfg_path = Path(config_path)
    if not cfg_path.is_absolute():
        cfg_path = _REPO_ROOT / cfg_path

    with open(cfg_path, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f)

    engine_cfg = EngineConfig.from_dict(cfg)
    snapshot_dir = _REPO_ROOT / cfg["snapshot_dir"]
    output_dir = _REPO_ROOT / cfg["output_dir"]
    starting_capital = float(cfg.get("starting_capital", 10_000.0))
    spread = float(cfg.get("spread_points", 0)) * engine_cfg.trade.point
    contract_size = float(cfg.get("contract_size", 1.0))

    # ── Generate run_id ──────────────────────────────────────────────
    run_id = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
    run_dir = output_dir / run_id
    run_dir.mkdir(parents=True, exist_ok=True)
    (run_dir / "plots").mkdir(exist_ok=True)
    (run_dir / "data_snapshot").mkdir(exist_ok=True)

    log.info("Run ID   : %s", run_id)
    log.info("Output   : %s", run_dir)
    log.info("Detector : %s", engine_cfg.detector.name)

    # ── Load + validate data (fail-fast) ─────────────────────────────
    df, csv_files = load_snapshot(snapshot_dir)
    validate_bars(df)
    log.info("Data validation passed ✓")
    bars = BarIterator(df)
    clean_df = bars.df

    # ── Engine + paper broker ────────────────────────────────────────
    broker = PaperBroker(
        instrument=engine_cfg.instrument,
        strategy_id=engine_cfg.strategy_id,
        spread=spread,
        contract_size=contract_size,
        starting_capital=starting_capital,
    )
    engine = TradingEngine.configure(engine_cfg, broker, broker, broker)

    # ── Replay loop ──────────────────────────────────────────────────
    tally: Counter = Counter()
    halted_days: set = set()
    equity_records = []

    log.info("Starting replay...")
    for bar in bars:
        close_time = bar.open_time + engine_cfg.bar_period
        broker.advance(bar, close_time)
        out = engine.on_bar_closed(bar)

        tally.update(out.events)
        for action in out.actions:
            tally[f"{action.kind.value}_{'ok' if action.ok else 'rejected'}"] += 1
        for err in out.errors:
            tally[f"error:{err.kind.value}"] += 1
        risk = out.state.risk
        if risk.halted_for_day:
            halted_days.add(risk.day_key)

        position = broker.position
        equity_records.append({
            "timestamp": close_time.isoformat(),
            "equity": broker.equity,
            "balance": broker.balance,
            "position": 0.0 if position is None else position.size * position.direction.sign,
            "unrealized_pnl": broker.unrealized_pnl(),
            "current_size": risk.current_size,
            "halted": risk.halted_for_day,
        })

    broker.flatten()

    # ── Post-replay data construction ────────────────────────────────
    equity_df = pd.DataFrame(equity_records)
    trades_df = pd.DataFrame([f.to_dict() for f in broker.fills])

    # ── Write artifacts ──────────────────────────────────────────────
    # 1. config.yaml
    shutil.copy2(cfg_path, run_dir / "config.yaml")

    # 2. equity.csv
    equity_df.to_csv(run_dir / "equity.csv", index=False)
    log.info("Wrote equity.csv  (%s rows)", f"{len(equity_df):,}")

    # 3. trades.csv
    if not trades_df.empty:
        trades_df = trades_df.sort_values("entry_ts")
        trades_df.to_csv(run_dir / "trades.csv", index=False)
        log.info("Wrote trades.csv  (%s trades)", f"{len(trades_df):,}")
    else:
        (run_dir / "trades.csv").touch()
        log.info("Wrote empty trades.csv")

    # 4. metrics.json
    metrics = _metrics(
        run_id, cfg, engine_cfg, clean_df, equity_df, trades_df,
        starting_capital, broker.balance, tally, halted_days,
    )
    (run_dir / "metrics.json").write_text(
        json.dumps(metrics, indent=2), encoding="utf-8",
    )
    log.info("Wrote metrics.json")

    # 5. plots
    plot_close_price(clean_df, run_dir / "plots" / "close_price.png", trades_df)
    plot_equity(equity_df, run_dir / "plots" / "equity.png")

    # 6. data_snapshot/DATA_REF.json
    _write_data_ref(run_dir, cfg["snapshot_dir"], csv_files, len(bars))

    # 7. README.md
    readme_lines = [
        f"{engine_cfg.detector.name} backtest",
        f"Symbol: {engine_cfg.instrument} {engine_cfg.timeframe}",
        f"Confirmation: {'on' if engine_cfg.confirmation.enabled else 'off'} "
        f"(bars={engine_cfg.confirmation.confirm_bars}, window={engine_cfg.confirmation.window_bars})",
        f"Run ID: {run_id}",
        f"Trades: {metrics['n_trades']}, Total PnL: {metrics['total_pnl']:.2f}",
        f"Reproduce: python -m tradecore backtest --config {config_path}",
    ]
    (run_dir / "README.md").write_text(
        "\n".join(readme_lines) + "\n", encoding="utf-8",
    )
    log.info("Wrote README.md")

    log.info("✓ Run complete: %s", run_dir)
    return run_id


def _metrics(
    run_id: str,
    cfg: dict,
    engine_cfg: EngineConfig,
    clean_df: pd.DataFrame,
    equity_df: pd.DataFrame,
    trades_df: pd.DataFrame,
    starting_capital: float,
    ending_balance: float,
    tally: Counter,
    halted_days: set,
) -> dict:
    n_trades = len(trades_df)
    if n_trades:
        pnl = trades_df["pnl"]
        total_pnl = float(pnl.sum())
        win_rate = float((pnl > 0).mean())
        avg_win = float(pnl[pnl > 0].mean()) if (pnl > 0).any() else 0.0
        avg_loss = float(pnl[pnl < 0].mean()) if (pnl < 0).any() else 0.0
    else:
        total_pnl = win_rate = avg_win = avg_loss = 0.0

    max_dd = 0.0
    if not equity_df.empty:
        peak = equity_df["equity"].cummax()
        dd = (peak - equity_df["equity"]) / peak.where(peak > 0) * 100
        max_dd = float(dd.fillna(0.0).max())

    blocked = {k.split(":", 1)[1]: v for k, v in sorted(tally.items()) if k.startswith("blocked:")}
    return {
        "run_id": run_id,
        "symbol": engine_cfg.instrument,
        "timeframe": engine_cfg.timeframe,
        "detector": engine_cfg.detector.name,
        "n_bars": len(clean_df),
        "start_ts": clean_df["time"].iloc[0].isoformat(),
        "end_ts": clean_df["time"].iloc[-1].isoformat(),
        "starting_capital": starting_capital,
        "ending_equity": float(ending_balance),
        "n_trades": int(n_trades),
        "total_pnl": total_pnl,
        "win_rate": win_rate,
        "average_win": avg_win,
        "average_loss": avg_loss,
        "max_drawdown_pct": max_dd,
        "signals_detected": tally["signal_detected"],
        "signals_staged": tally["signal_staged"],
        "signals_confirmed": tally["signal_confirmed"],
        "signals_expired": tally["signal_expired"],
        "signal_conflicts": tally["signal_conflict"],
        "orders_rejected": tally[f"{ActionKind.OPEN.value}_rejected"],
        "stop_modifications": tally[f"{ActionKind.MODIFY_STOP.value}_ok"],
        "blocked_bars": blocked,
        "halted_days": len(halted_days),
    }


def _write_data_ref(run_dir: Path, snapshot_rel: str, csv_files: list[Path], n_rows: int) -> None:
    file_entries = []
    hash_parts = []
    for csv_file in csv_files:
        size = csv_file.stat().st_size
        file_entries.append({"name": csv_file.name, "size_bytes": size})
        hash_parts.append(f"{csv_file.name}:{size}")

    data_ref = {
        "snapshot_path": snapshot_rel,
        "row_count": n_rows,
        "files": file_entries,
        "files_hash_sha256": hashlib.sha256("|".join(hash_parts).encode("utf-8")).hexdigest(),
    }
    (run_dir / "data_snapshot" / "DATA_REF.json").write_text(
        json.dumps(data_ref, indent=2), encoding="utf-8",
    )
    log.info("Wrote DATA_REF.json")
