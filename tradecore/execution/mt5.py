"""Concrete collaborators backed by the MetaTrader5 Python package.

One :class:`MT5Broker` serves all three engine interfaces for a single
symbol.  Positions and deals are attributed to the strategy through the MT5
``magic`` number, which is the engine's ``strategy_id``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional

import pandas as pd

from tradecore.errors import ErrorKind, Result
from tradecore.replay.bar import Bar
from tradecore.strategy.signal import Direction
from .models import ClosedDeal, Position, Quote

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class MT5Settings:
    """Terminal connection and order-routing settings."""

    path: str | None = None
    login: int | None = None
    server: str | None = None
    password: str | None = None
    init_retries: int = 15
    init_retry_delay: float = 2.0
    deviation: int = 20
    comment: str = "tradecore"

    @classmethod
    def from_dict(cls, cfg: dict | None) -> "MT5Settings":
        cfg = cfg or {}
        return cls(
            path=cfg.get("path"),
            login=cfg.get("login"),
            server=cfg.get("server"),
            password=cfg.get("password"),
            init_retries=int(cfg.get("init_retries", 15)),
            init_retry_delay=float(cfg.get("init_retry_delay", 2.0)),
            deviation=int(cfg.get("deviation", 20)),
            comment=str(cfg.get("comment", "tradecore")),
        )


class MT5Broker:
    """Connect to a running MT5 terminal and trade one symbol."""

    def __init__(self, instrument: str, strategy_id: int, settings: MT5Settings,
                 mt5_module=None) -> None:
        self.instrument = instrument
        self.strategy_id = strategy_id
        self.settings = settings
        self._mt5 = mt5_module  # lazy import unless injected

    # -- lazy import so the package loads on any OS ------------------------

    def _lib(self):
        if self._mt5 is None:
            import MetaTrader5 as _mt5
            self._mt5 = _mt5
        return self._mt5

    # -- session -------------------------------------------------------------

    def connect(self) -> None:
        mt5 = self._lib()
        s = self.settings
        kwargs: dict = {}
        if s.path:
            kwargs["path"] = s.path
        if s.login:
            kwargs["login"] = s.login
        if s.server:
            kwargs["server"] = s.server
        if s.password:
            kwargs["password"] = s.password

        for attempt in range(1, s.init_retries + 1):
            if mt5.initialize(**kwargs):
                break
            last_err = mt5.last_error()
            code = last_err[0] if last_err else None
            if code == -6 and attempt < s.init_retries:
                log.warning(
                    "MT5 not yet authorised (attempt %d/%d), retrying in %.0fs ...",
                    attempt, s.init_retries, s.init_retry_delay,
                )
                time.sleep(s.init_retry_delay)
            else:
                raise RuntimeError(
                    f"MT5 initialize() failed after {attempt} attempt(s): {last_err}\n"
                    "Make sure the MetaTrader 5 terminal is running and logged in."
                )

        if not mt5.symbol_select(self.instrument, True):
            mt5.shutdown()
            raise RuntimeError(f"Failed to select symbol: {self.instrument}")

        log.info("Connected to MT5 — %s magic=%s", self.instrument, self.strategy_id)

    def disconnect(self) -> None:
        self._lib().shutdown()
        log.info("Disconnected from MT5")

    # -- MarketDataProvider ----------------------------------------------------

    def get_recent_bars(self, instrument: str, timeframe: str, count: int) -> Result:
        mt5 = self._lib()
        tf = getattr(mt5, f"TIMEFRAME_{str(timeframe).upper()}", None)
        if tf is None:
            return Result.failure(ErrorKind.DATA_UNAVAILABLE, f"unknown timeframe {timeframe}")
        # position 0 is the bar still forming
        rates = mt5.copy_rates_from_pos(instrument, tf, 1, count)
        if rates is None or len(rates) == 0:
            return Result.failure(
                ErrorKind.DATA_UNAVAILABLE, f"copy_rates_from_pos failed: {mt5.last_error()}"
            )
        bars = [
            Bar(
                open_time=pd.to_datetime(r["time"], unit="s", utc=True),
                open=float(r["open"]),
                high=float(r["high"]),
                low=float(r["low"]),
                close=float(r["close"]),
                volume=float(r["tick_volume"]),
            )
            for r in rates
        ]
        return Result.success(bars)

    def get_quote(self, instrument: str) -> Result:
        mt5 = self._lib()
        tick = mt5.symbol_info_tick(instrument)
        if tick is None:
            return Result.failure(
                ErrorKind.DATA_UNAVAILABLE, f"symbol_info_tick failed: {mt5.last_error()}"
            )
        return Result.success(
            Quote(
                time=pd.to_datetime(tick.time, unit="s", utc=True),
                bid=float(tick.bid),
                ask=float(tick.ask),
            )
        )

    # -- TradeHistoryProvider --------------------------------------------------

    def get_closed_deals(
        self,
        instrument: str,
        strategy_id: int,
        start: pd.Timestamp,
        end: pd.Timestamp,
    ) -> Result:
        mt5 = self._lib()
        deals = mt5.history_deals_get(
            pd.Timestamp(start).tz_convert("UTC").to_pydatetime(),
            pd.Timestamp(end).tz_convert("UTC").to_pydatetime(),
        )
        if deals is None:
            return Result.failure(
                ErrorKind.HISTORY_QUERY_FAILED, f"history_deals_get failed: {mt5.last_error()}"
            )
        closed = [
            ClosedDeal(
                profit=float(d.profit + d.swap + d.commission),
                volume=float(d.volume),
                close_time=pd.to_datetime(d.time, unit="s", utc=True),
            )
            for d in deals
            if d.symbol == instrument
            and d.magic == strategy_id
            and d.entry == mt5.DEAL_ENTRY_OUT
        ]
        return Result.success(closed)

    # -- ExecutionGateway ------------------------------------------------------

    def open(
        self,
        direction: Direction,
        size: float,
        price: float,
        stop_price: float,
        take_profit_price: float,
    ) -> Result:
        mt5 = self._lib()
        order_type = mt5.ORDER_TYPE_BUY if direction is Direction.LONG else mt5.ORDER_TYPE_SELL
        result = self._send({
            "action": mt5.TRADE_ACTION_DEAL,
            "symbol": self.instrument,
            "volume": float(size),
            "type": order_type,
            "price": float(price),
            "sl": float(stop_price),
            "tp": float(take_profit_price),
        })
        if not result.ok:
            return result
        return Result.success(int(result.value.order))

    def modify_stop(self, position_id: int, new_stop: float) -> Result:
        mt5 = self._lib()
        position = self._find_position(position_id)
        if position is None:
            return Result.failure(ErrorKind.EXECUTION_REJECTED, f"no position {position_id}")
        result = self._send({
            "action": mt5.TRADE_ACTION_SLTP,
            "symbol": self.instrument,
            "position": int(position_id),
            "sl": float(new_stop),
            "tp": float(position.tp),
        })
        return Result.success() if result.ok else result

    def close(self, position_id: int) -> Result:
        mt5 = self._lib()
        position = self._find_position(position_id)
        if position is None:
            return Result.failure(ErrorKind.EXECUTION_REJECTED, f"no position {position_id}")
        tick = mt5.symbol_info_tick(self.instrument)
        if tick is None:
            return Result.failure(ErrorKind.EXECUTION_REJECTED, "no tick to close against")
        is_buy = position.type == mt5.POSITION_TYPE_BUY
        result = self._send({
            "action": mt5.TRADE_ACTION_DEAL,
            "symbol": self.instrument,
            "position": int(position_id),
            "volume": float(position.volume),
            "type": mt5.ORDER_TYPE_SELL if is_buy else mt5.ORDER_TYPE_BUY,
            "price": float(tick.bid if is_buy else tick.ask),
        })
        return Result.success() if result.ok else result

    def has_open_position(self, instrument: str, strategy_id: int) -> bool:
        return self.get_open_position(instrument, strategy_id) is not None

    def get_open_position(self, instrument: str, strategy_id: int) -> Optional[Position]:
        mt5 = self._lib()
        positions = mt5.positions_get(symbol=instrument) or ()
        for p in positions:
            if p.magic != strategy_id:
                continue
            return Position(
                ticket=int(p.ticket),
                direction=Direction.LONG if p.type == mt5.POSITION_TYPE_BUY else Direction.SHORT,
                size=float(p.volume),
                open_price=float(p.price_open),
                stop_price=float(p.sl) or None,
                take_profit_price=float(p.tp) or None,
                open_time=pd.to_datetime(p.time, unit="s", utc=True),
            )
        return None

    # -- helpers ---------------------------------------------------------------

    def _find_position(self, ticket: int):
        positions = self._lib().positions_get(ticket=int(ticket)) or ()
        return positions[0] if positions else None

    def _send(self, request: dict) -> Result:
        mt5 = self._lib()
        request = {
            **request,
            "magic": self.strategy_id,
            "deviation": self.settings.deviation,
            "comment": self.settings.comment,
            "type_time": mt5.ORDER_TIME_GTC,
            "type_filling": mt5.ORDER_FILLING_IOC,
        }
        result = mt5.order_send(request)
        if result is None:
            return Result.failure(
                ErrorKind.EXECUTION_REJECTED, f"order_send failed: {mt5.last_error()}"
            )
        if result.retcode != mt5.TRADE_RETCODE_DONE:
            return Result.failure(
                ErrorKind.EXECUTION_REJECTED, f"retcode={result.retcode} {result.comment}"
            )
        return Result.success(result)
