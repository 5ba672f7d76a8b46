"""Fail-fast data-integrity checks for bar DataFrames."""

from __future__ import annotations

import pandas as pd


def validate_bars(df: pd.DataFrame) -> None:
    """Validate a raw bar DataFrame *before* it is replayed.

    Raises ``ValueError`` on the first problem found so that malformed bars
    never reach the pattern detectors or the paper broker.
    """

    # 1. Timestamp column exists with no nulls ──────────────────────────
    if "time" not in df.columns:
        raise ValueError("Missing 'time' column")
    if df["time"].isna().any():
        n = int(df["time"].isna().sum())
        raise ValueError(f"Null timestamps found: {n} rows")

    # 2. Strictly increasing time ───────────────────────────────────────
    times = pd.to_datetime(df["time"], utc=True)

    n_dupes = int(times.duplicated().sum())
    if n_dupes > 0:
        raise ValueError(f"Duplicate timestamps found: {n_dupes}")

    if not times.is_monotonic_increasing:
        raise ValueError("Timestamps not monotonic increasing")

    # 3. OHLC present, no NaNs, consistent extremes ────────────────────
    ohlc = ["open", "high", "low", "close"]
    missing = [c for c in ohlc if c not in df.columns]
    if missing:
        raise ValueError(f"Missing price columns: {missing}")

    na_cols = [c for c in ohlc if df[c].isna().any()]
    if na_cols:
        raise ValueError(f"NaN values in {na_cols}")

    inverted = int((df["high"] < df["low"]).sum())
    if inverted > 0:
        raise ValueError(f"High below low: {inverted} rows")

    # 4. Volume / spread sanity ────────────────────────────────────────
    if "volume" in df.columns:
        neg = int((df["volume"] < 0).sum())
        if neg > 0:
            raise ValueError(f"Negative volume found: {neg} rows")

    if "spread" in df.columns:
        neg = int((df["spread"] < 0).sum())
        if neg > 0:
            raise ValueError(f"Negative spread found: {neg} rows")
