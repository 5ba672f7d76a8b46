"""Protocol definitions for the engine's external collaborators.

Every call that can fail returns a :class:`~tradecore.errors.Result`
instead of raising, so the controller sees failures as values.
"""

from __future__ import annotations

from typing import Optional, Protocol, Sequence, runtime_checkable

import pandas as pd

from tradecore.errors import Result
from tradecore.replay.bar import Bar
from tradecore.strategy.signal import Direction
from .models import ClosedDeal, Position, Quote


@runtime_checkable
class MarketDataProvider(Protocol):
    """Bars and live quotes for one instrument (MT5, paper broker, mock)."""

    def get_recent_bars(self, instrument: str, timeframe: str, count: int) -> Result[Sequence[Bar]]:
        """Most recent *completed* bars, oldest first."""
        ...

    def get_quote(self, instrument: str) -> Result[Quote]: ...


@runtime_checkable
class TradeHistoryProvider(Protocol):
    def get_closed_deals(
        self,
        instrument: str,
        strategy_id: int,
        start: pd.Timestamp,
        end: pd.Timestamp,
    ) -> Result[Sequence[ClosedDeal]]:
        """Entry-closing deals for this instrument/strategy in ``[start, end]``."""
        ...


@runtime_checkable
class ExecutionGateway(Protocol):
    def open(
        self,
        direction: Direction,
        size: float,
        price: float,
        stop_price: float,
        take_profit_price: float,
    ) -> Result[int]:
        """Market entry; returns the ticket on success."""
        ...

    def modify_stop(self, position_id: int, new_stop: float) -> Result[None]: ...

    def close(self, position_id: int) -> Result[None]: ...

    def has_open_position(self, instrument: str, strategy_id: int) -> bool: ...

    def get_open_position(self, instrument: str, strategy_id: int) -> Optional[Position]: ...
