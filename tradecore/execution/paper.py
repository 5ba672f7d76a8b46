"""PaperBroker — in-process simulation of the three engine collaborators.

Used by the backtest runner.  The broker is advanced one completed bar at a
time *before* the engine sees that bar:

  advance(bar) → stop / take-profit resolution inside the bar →
  quote set to the bar close (bid = close, ask = close + spread)

Entries therefore fill at the closing quote of the bar that triggered them
and protective levels are checked from the next bar on.  When a single bar
touches both the stop and the target the stop is assumed to fill first.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import replace
from typing import Optional, Sequence

import pandas as pd

from tradecore.errors import ErrorKind, Result
from tradecore.replay.bar import Bar
from tradecore.strategy.signal import Direction
from .models import ClosedDeal, Fill, Position, Quote

log = logging.getLogger(__name__)


class PaperBroker:
    """Single-instrument simulated broker.

    Parameters
    ----------
    instrument : str
        Symbol the broker serves; other symbols get ``DATA_UNAVAILABLE``.
    strategy_id : int
        Magic number stamped on every position and deal.
    spread : float
        Ask − bid, in price units.
    contract_size : float
        P&L multiplier per unit of size (100 000 for a standard FX lot).
    starting_capital : float
        Initial balance for the equity curve.
    """

    def __init__(
        self,
        instrument: str,
        strategy_id: int,
        spread: float = 0.0,
        contract_size: float = 1.0,
        starting_capital: float = 10_000.0,
    ) -> None:
        self.instrument = instrument
        self.strategy_id = strategy_id
        self.spread = spread
        self.contract_size = contract_size
        self.balance = starting_capital

        self._tickets = itertools.count(1)
        self._bars: list[Bar] = []
        self._quote: Optional[Quote] = None
        self._position: Optional[Position] = None
        self._deals: list[ClosedDeal] = []
        self.fills: list[Fill] = []

    # -- replay --------------------------------------------------------------

    def advance(self, bar: Bar, close_time: pd.Timestamp) -> None:
        """Resolve protective levels inside *bar*, then quote its close."""
        self._bars.append(bar)
        if self._position is not None and self._position.open_time < close_time:
            self._resolve_levels(bar, close_time)
        self._quote = Quote(time=close_time, bid=bar.close, ask=bar.close + self.spread)

    def unrealized_pnl(self) -> float:
        if self._position is None or self._quote is None:
            return 0.0
        return self._pnl(self._position, self._quote.exit_price(self._position.direction))

    @property
    def equity(self) -> float:
        return self.balance + self.unrealized_pnl()

    @property
    def position(self) -> Optional[Position]:
        return self._position

    def flatten(self, reason: str = "end_of_data") -> None:
        if self._position is not None and self._quote is not None:
            pos = self._position
            price = self._quote.exit_price(pos.direction)
            self._book_exit(pos, price, self._quote.time, reason)
            log.info("Flattened ticket %s @ %.5f (%s)", pos.ticket, price, reason)

    # -- MarketDataProvider ----------------------------------------------------

    def get_recent_bars(self, instrument: str, timeframe: str, count: int) -> Result:
        if instrument != self.instrument:
            return Result.failure(ErrorKind.DATA_UNAVAILABLE, f"unknown symbol {instrument}")
        return Result.success(list(self._bars[-count:]))

    def get_quote(self, instrument: str) -> Result:
        if instrument != self.instrument or self._quote is None:
            return Result.failure(ErrorKind.DATA_UNAVAILABLE, f"no quote for {instrument}")
        return Result.success(self._quote)

    # -- TradeHistoryProvider --------------------------------------------------

    def get_closed_deals(
        self,
        instrument: str,
        strategy_id: int,
        start: pd.Timestamp,
        end: pd.Timestamp,
    ) -> Result:
        if instrument != self.instrument or strategy_id != self.strategy_id:
            return Result.success([])
        deals: Sequence[ClosedDeal] = [d for d in self._deals if start <= d.close_time <= end]
        return Result.success(deals)

    # -- ExecutionGateway ------------------------------------------------------

    def open(
        self,
        direction: Direction,
        size: float,
        price: float,
        stop_price: float,
        take_profit_price: float,
    ) -> Result:
        if self._quote is None:
            return Result.failure(ErrorKind.EXECUTION_REJECTED, "market closed")
        if self._position is not None:
            return Result.failure(ErrorKind.EXECUTION_REJECTED, "position already open")
        if size <= 0:
            return Result.failure(ErrorKind.EXECUTION_REJECTED, f"invalid volume {size}")

        fill_price = self._quote.entry_price(direction)
        ticket = next(self._tickets)
        self._position = Position(
            ticket=ticket,
            direction=direction,
            size=size,
            open_price=fill_price,
            stop_price=stop_price,
            take_profit_price=take_profit_price,
            open_time=self._quote.time,
        )
        return Result.success(ticket)

    def modify_stop(self, position_id: int, new_stop: float) -> Result:
        pos = self._position
        if pos is None or pos.ticket != position_id:
            return Result.failure(ErrorKind.EXECUTION_REJECTED, f"no position {position_id}")
        market = self._quote.exit_price(pos.direction)
        if (market - new_stop) * pos.direction.sign <= 0:
            return Result.failure(
                ErrorKind.EXECUTION_REJECTED, f"invalid stop {new_stop:.5f} vs {market:.5f}"
            )
        self._position = replace(pos, stop_price=new_stop)
        return Result.success()

    def close(self, position_id: int) -> Result:
        pos = self._position
        if pos is None or pos.ticket != position_id:
            return Result.failure(ErrorKind.EXECUTION_REJECTED, f"no position {position_id}")
        self._book_exit(pos, self._quote.exit_price(pos.direction), self._quote.time, "close")
        return Result.success()

    def has_open_position(self, instrument: str, strategy_id: int) -> bool:
        return self.get_open_position(instrument, strategy_id) is not None

    def get_open_position(self, instrument: str, strategy_id: int) -> Optional[Position]:
        if instrument != self.instrument or strategy_id != self.strategy_id:
            return None
        return self._position

    # -- helpers ---------------------------------------------------------------

    def _resolve_levels(self, bar: Bar, close_time: pd.Timestamp) -> None:
        pos = self._position
        if pos.direction is Direction.LONG:
            # long exits on the bid
            if pos.stop_price is not None and bar.low <= pos.stop_price:
                self._book_exit(pos, min(pos.stop_price, bar.open), close_time, "stop_loss")
            elif pos.take_profit_price is not None and bar.high >= pos.take_profit_price:
                self._book_exit(pos, max(pos.take_profit_price, bar.open), close_time, "take_profit")
        else:
            # short exits on the ask
            ask_high, ask_low, ask_open = (
                bar.high + self.spread, bar.low + self.spread, bar.open + self.spread
            )
            if pos.stop_price is not None and ask_high >= pos.stop_price:
                self._book_exit(pos, max(pos.stop_price, ask_open), close_time, "stop_loss")
            elif pos.take_profit_price is not None and ask_low <= pos.take_profit_price:
                self._book_exit(pos, min(pos.take_profit_price, ask_open), close_time, "take_profit")

    def _book_exit(self, pos: Position, price: float, at: pd.Timestamp, reason: str) -> None:
        pnl = self._pnl(pos, price)
        self.balance += pnl
        self._deals.append(ClosedDeal(profit=pnl, volume=pos.size, close_time=at))
        self.fills.append(
            Fill(
                entry_ts=pos.open_time.isoformat(),
                exit_ts=at.isoformat(),
                side=pos.direction.value,
                qty=pos.size,
                entry_price=pos.open_price,
                exit_price=price,
                pnl=pnl,
                exit_reason=reason,
            )
        )
        self._position = None

    def _pnl(self, pos: Position, exit_price: float) -> float:
        return (exit_price - pos.open_price) * pos.direction.sign * pos.size * self.contract_size
