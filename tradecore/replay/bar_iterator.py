"""Deterministic bar iterator with strict timestamp validation."""

from __future__ import annotations

import logging
from typing import Generator

import pandas as pd

from .bar import Bar

log = logging.getLogger(__name__)


class BarIterator:
    """Yields :class:`Bar` objects in strict chronological order.

    Guarantees:
    - ``time`` column exists and is ``datetime64[ns, UTC]``
    - a ``volume`` column exists (aliased from MT5 ``tick_volume`` /
      ``real_volume`` when needed, zero otherwise)
    - rows are sorted ascending by ``time``
    """

    def __init__(self, df: pd.DataFrame) -> None:
        df = self._validate_and_clean(df)
        self._df = df
        self._n_bars = len(df)

    # -- public API --------------------------------------------------------

    def __len__(self) -> int:
        return self._n_bars

    def __iter__(self) -> Generator[Bar, None, None]:
        for row in self._df.itertuples(index=False):
            yield Bar(
                open_time=row.time,
                open=float(row.open),
                high=float(row.high),
                low=float(row.low),
                close=float(row.close),
                volume=float(row.volume),
            )

    @property
    def df(self) -> pd.DataFrame:
        """Return the cleaned DataFrame (read-only copy)."""
        return self._df.copy()

    # -- validation --------------------------------------------------------

    @staticmethod
    def _validate_and_clean(df: pd.DataFrame) -> pd.DataFrame:
        if "time" not in df.columns:
            raise ValueError("DataFrame must contain a 'time' column")
        if df.empty:
            raise ValueError("DataFrame contains no bars")

        df = df.copy()
        df["time"] = pd.to_datetime(df["time"], utc=True)

        if "volume" not in df.columns:
            if "tick_volume" in df.columns:
                log.info("Aliasing 'tick_volume' to 'volume'")
                df["volume"] = df["tick_volume"]
            elif "real_volume" in df.columns:
                log.info("Aliasing 'real_volume' to 'volume'")
                df["volume"] = df["real_volume"]
            else:
                log.warning("No volume column found; volume treated as 0")
                df["volume"] = 0.0

        df = df.sort_values("time").reset_index(drop=True)

        assert df["time"].is_monotonic_increasing, (
            "Timestamps are not monotonic increasing after sort — data integrity issue"
        )

        log.info(
            "BarIterator: %s bars, %s → %s",
            f"{len(df):,}",
            df["time"].iloc[0].isoformat(),
            df["time"].iloc[-1].isoformat(),
        )

        return df
