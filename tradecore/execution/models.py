"""Execution-layer value objects: quotes, orders, positions, deals, fills."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import pandas as pd

from tradecore.strategy.signal import Direction


@dataclass(frozen=True)
class Quote:
    time: pd.Timestamp
    bid: float
    ask: float

    def entry_price(self, direction: Direction) -> float:
        """Price paid to open: ask for long, bid for short."""
        return self.ask if direction is Direction.LONG else self.bid

    def exit_price(self, direction: Direction) -> float:
        """Price received to close: bid for long, ask for short."""
        return self.bid if direction is Direction.LONG else self.ask


@dataclass(frozen=True)
class OpenOrder:
    """Market entry instruction handed to the execution gateway."""

    direction: Direction
    size: float
    price: float
    stop_price: float
    take_profit_price: float
    reason: str = ""


@dataclass(frozen=True)
class Position:
    """Open position as reported by the execution layer (read-only here)."""

    ticket: int
    direction: Direction
    size: float
    open_price: float
    stop_price: Optional[float]
    take_profit_price: Optional[float]
    open_time: pd.Timestamp


@dataclass(frozen=True)
class ClosedDeal:
    """An entry-closing deal from the trade history."""

    profit: float
    volume: float
    close_time: pd.Timestamp


@dataclass(frozen=True)
class Fill:
    """One completed round-trip trade — maps 1:1 to a trades.csv row."""

    entry_ts: str
    exit_ts: str
    side: str  # "long" or "short"
    qty: float
    entry_price: float
    exit_price: float
    pnl: float
    exit_reason: str = ""

    def to_dict(self) -> dict:
        return {
            "entry_ts": self.entry_ts,
            "exit_ts": self.exit_ts,
            "side": self.side,
            "qty": self.qty,
            "entry_price": self.entry_price,
            "exit_price": self.exit_price,
            "pnl": self.pnl,
            "exit_reason": self.exit_reason,
        }
