"""Plotting utilities for backtest reporting."""

from __future__ import annotations

import logging
from pathlib import Path

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402
import pandas as pd  # noqa: E402

log = logging.getLogger(__name__)


def plot_close_price(
    df: pd.DataFrame, out_path: str | Path, trades: pd.DataFrame | None = None
) -> None:
    """Plot close price vs time, with trade entries marked, and save as PNG.

    Parameters
    ----------
    df : pd.DataFrame
        Must contain ``time`` and ``close`` columns.
    out_path : str | Path
        Destination file path (e.g. ``plots/close_price.png``).
    trades : pd.DataFrame, optional
        ``trades.csv`` rows; longs are drawn as ``^``, shorts as ``v``.
    """
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)

    fig, ax = plt.subplots(figsize=(14, 5))
    ax.plot(df["time"], df["close"], linewidth=0.5, color="#d4af37")
    if trades is not None and not trades.empty:
        entry_ts = pd.to_datetime(trades["entry_ts"], utc=True)
        for side, marker, color in (("long", "^", "#2e8b57"), ("short", "v", "#b22222")):
            mask = trades["side"] == side
            ax.scatter(entry_ts[mask], trades.loc[mask, "entry_price"],
                       marker=marker, color=color, s=25, label=side, zorder=3)
        ax.legend(loc="upper left")
    ax.set_title(f"Close Price  ({df['time'].iloc[0].date()} → {df['time'].iloc[-1].date()})")
    ax.set_xlabel("Time")
    ax.set_ylabel("Price")
    ax.grid(True, alpha=0.3)
    fig.tight_layout()
    fig.savefig(out_path, dpi=100)
    plt.close(fig)

    log.info("Saved close-price plot → %s", out_path)


def plot_equity(equity_df: pd.DataFrame, out_path: str | Path) -> None:
    """Plot the equity curve with the position size used underneath.

    ``equity_df`` needs ``timestamp``, ``equity`` and ``current_size``.
    """
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)

    ts = pd.to_datetime(equity_df["timestamp"], utc=True)
    fig, (ax_eq, ax_size) = plt.subplots(
        2, 1, figsize=(14, 7), sharex=True, gridspec_kw={"height_ratios": [3, 1]}
    )
    ax_eq.plot(ts, equity_df["equity"], linewidth=0.8, color="#1f77b4")
    ax_eq.set_title("Equity")
    ax_eq.grid(True, alpha=0.3)

    ax_size.step(ts, equity_df["current_size"], where="post", linewidth=0.8, color="#555555")
    ax_size.set_ylabel("Size")
    ax_size.set_xlabel("Time")
    ax_size.grid(True, alpha=0.3)

    fig.tight_layout()
    fig.savefig(out_path, dpi=100)
    plt.close(fig)

    log.info("Saved equity plot → %s", out_path)
