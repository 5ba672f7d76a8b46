"""Fixed-capacity ring buffer of the most recent completed bars."""

from __future__ import annotations

import numpy as np
import pandas as pd

from .bar import Bar

_OPEN, _HIGH, _LOW, _CLOSE, _VOLUME = range(5)


class BarWindow:
    """Append-only window over the last ``capacity`` bars.

    Prices live in a preallocated ``(capacity, 5)`` numpy arena and open
    times in a parallel ``int64`` array (UTC nanoseconds).  ``_head`` points
    at the slot the next bar will be written to; once the window is full the
    oldest bar is overwritten.
    """

    def __init__(self, capacity: int = 3, tz: str = "UTC") -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._capacity = capacity
        self._tz = tz
        self._ohlcv = np.zeros((capacity, 5), dtype=np.float64)
        self._times = np.zeros(capacity, dtype=np.int64)
        self._head = 0
        self._count = 0

    # -- public API ----------------------------------------------------------

    def __len__(self) -> int:
        return self._count

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def last_time(self) -> pd.Timestamp | None:
        if self._count == 0:
            return None
        return self._time_at((self._head - 1) % self._capacity)

    def append(self, bar: Bar) -> None:
        """Store *bar*; its open time must be strictly after the last one."""
        ns = _to_ns(bar.open_time)
        if self._count and ns <= self._times[(self._head - 1) % self._capacity]:
            raise ValueError(
                f"Bar at {bar.open_time.isoformat()} is not after "
                f"last bar {self.last_time.isoformat()}"
            )
        self._ohlcv[self._head] = (bar.open, bar.high, bar.low, bar.close, bar.volume)
        self._times[self._head] = ns
        self._head = (self._head + 1) % self._capacity
        self._count = min(self._count + 1, self._capacity)

    def latest(self, n: int) -> list[Bar]:
        """Return up to *n* most recent bars, oldest first."""
        n = min(n, self._count)
        bars = []
        for offset in range(n, 0, -1):
            idx = (self._head - offset) % self._capacity
            row = self._ohlcv[idx]
            bars.append(
                Bar(
                    open_time=self._time_at(idx),
                    open=float(row[_OPEN]),
                    high=float(row[_HIGH]),
                    low=float(row[_LOW]),
                    close=float(row[_CLOSE]),
                    volume=float(row[_VOLUME]),
                )
            )
        return bars

    def to_frame(self) -> pd.DataFrame:
        """Window contents as an OHLCV DataFrame, oldest first."""
        bars = self.latest(self._count)
        return pd.DataFrame(
            {
                "time": [b.open_time for b in bars],
                "open": [b.open for b in bars],
                "high": [b.high for b in bars],
                "low": [b.low for b in bars],
                "close": [b.close for b in bars],
                "volume": [b.volume for b in bars],
            }
        )

    # -- helpers -------------------------------------------------------------

    def _time_at(self, idx: int) -> pd.Timestamp:
        return pd.Timestamp(int(self._times[idx]), unit="ns", tz="UTC").tz_convert(self._tz)


def _to_ns(ts: pd.Timestamp) -> int:
    ts = pd.Timestamp(ts)
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return int(ts.tz_convert("UTC").value)
