"""TradeController — per-bar and per-tick decision logic, mode-agnostic.

Orchestrates the per-bar pipeline:
  idempotence guard → bar window → open-position management → sizing →
  halt / session gate → confirmation → detection → entry

Handlers take the current :class:`EngineState` and return a
:class:`CycleOutcome` holding the next state plus every instruction sent to
the execution gateway.  Backtest and live mode both drive this same core;
:class:`TradingEngine` keeps the latest state for hosts that just want
``on_bar_closed(bar)`` / ``on_tick(quote)``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

import pandas as pd

from tradecore.errors import ConfigurationInvalid, CycleError, ErrorKind
from tradecore.execution.models import OpenOrder, Position, Quote
from tradecore.execution.protocols import (
    ExecutionGateway,
    MarketDataProvider,
    TradeHistoryProvider,
)
from tradecore.replay.bar import Bar
from tradecore.replay.bar_window import BarWindow
from tradecore.risk.sizing import RiskState, SizingPolicy
from tradecore.session.gate import SessionGate
from tradecore.strategy.confirmation import Outcome, SignalConfirmation
from tradecore.strategy.detectors import resolve_conflict
from tradecore.strategy.signal import Direction, PendingSignal
from .config import EngineConfig

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineState:
    """Everything the engine remembers between events.

    ``window`` is a ring buffer and is appended to in place; every other
    field is replaced, never mutated.
    """

    window: BarWindow
    risk: RiskState
    pending: Optional[PendingSignal] = None
    last_bar_time: Optional[pd.Timestamp] = None


class ActionKind(str, Enum):
    OPEN = "open"
    MODIFY_STOP = "modify_stop"
    CLOSE = "close"


@dataclass(frozen=True)
class Action:
    """One instruction sent to the gateway and whether it was accepted."""

    kind: ActionKind
    ok: bool
    position_id: Optional[int] = None
    order: Optional[OpenOrder] = None
    stop_price: Optional[float] = None
    reason: str = ""


@dataclass(frozen=True)
class CycleOutcome:
    """Next state plus what happened during one handler call.

    ``events`` are short tags (``signal_staged``, ``signal_confirmed``,
    ``signal_expired``, ``blocked:<REASON>``…) for counting in reports.
    """

    state: EngineState
    actions: tuple = ()
    errors: tuple = ()
    events: tuple = ()


class TradeController:
    """Stateless decision core over :class:`EngineState`.

    Parameters
    ----------
    config : EngineConfig
        Validated engine configuration.
    market, history, gateway
        The three external collaborators.
    """

    def __init__(
        self,
        config: EngineConfig,
        market: MarketDataProvider,
        history: TradeHistoryProvider,
        gateway: ExecutionGateway,
    ) -> None:
        problems = config.trade.validate()
        if problems:
            raise ConfigurationInvalid(problems)
        self.config = config
        self.market = market
        self.history = history
        self.gateway = gateway

        self.detector = config.detector
        self.gate = SessionGate(config.session)
        self.sizing = SizingPolicy(config.sizing, config.instrument, config.strategy_id)
        self.confirmation = SignalConfirmation(config.confirmation, config.bar_period)

    # -- state ---------------------------------------------------------------

    def initial_state(self, risk: Optional[RiskState] = None) -> EngineState:
        capacity = max(self.detector.required_bars, 3)
        fresh = self.sizing.initial_state(None if risk is None else risk.current_size)
        if risk is not None:
            # carried-over day aggregates, sizes re-bounded by the config
            fresh = replace(
                risk,
                base_size=fresh.base_size,
                max_size=fresh.max_size,
                increment=fresh.increment,
                current_size=fresh.current_size,
            )
        return EngineState(window=BarWindow(capacity), risk=fresh)

    # -- handlers ------------------------------------------------------------

    def on_bar_closed(self, state: EngineState, bar: Bar) -> CycleOutcome:
        """Process one completed bar through the full pipeline."""
        if state.last_bar_time is not None and bar.open_time <= state.last_bar_time:
            log.debug("Bar %s already processed — skipped", bar.open_time.isoformat())
            return CycleOutcome(state)

        # ── BAR WINDOW ──
        state.window.append(bar)
        state = replace(state, last_bar_time=bar.open_time)
        now = bar.open_time + self.config.bar_period

        actions: list[Action] = []
        errors: list[CycleError] = []
        events: list[str] = []

        def outcome(st: EngineState) -> CycleOutcome:
            return CycleOutcome(st, tuple(actions), tuple(errors), tuple(events))

        # ── OPEN POSITION: manage it, no new entries ──
        if self.gateway.has_open_position(self.config.instrument, self.config.strategy_id):
            if state.pending is not None:
                state = self._count_bar(state, bar, events)
            position = self.gateway.get_open_position(
                self.config.instrument, self.config.strategy_id
            )
            if position is None:
                log.warning("Gateway reports an open position but returned none")
                return outcome(state)
            quote = self._quote(errors)
            if quote is not None:
                self._manage_position(position, quote, actions, errors)
            return outcome(state)

        # ── SIZING: once per cycle ──
        update = self.sizing.refresh(state.risk, now, self.history)
        state = replace(state, risk=update.state)
        if update.error is not None:
            errors.append(update.error)

        # ── HALT / SESSION GATE ──
        blocked = None
        if state.risk.halted_for_day:
            blocked = "HALTED_FOR_DAY"
        else:
            decision = self.gate.check(now)
            if not decision.allowed:
                blocked = decision.reason
        if blocked is not None:
            events.append(f"blocked:{blocked.split(':')[0]}")
            if state.pending is not None:
                state = self._count_bar(state, bar, events)
            log.debug("Entries blocked at %s: %s", now.isoformat(), blocked)
            return outcome(state)

        # ── CONFIRMATION ──
        if state.pending is not None:
            step = self.confirmation.step(state.pending, bar)
            if step.outcome is Outcome.CONFIRMED:
                events.append("signal_confirmed")
                if self._enter(state, step.signal.direction, step.signal.strategy_tag,
                               actions, errors):
                    return outcome(replace(state, pending=None))
                # rejected or no quote: the bar still counts against the signal
                return outcome(self._count_bar(state, bar, events))
            state = replace(state, pending=step.pending)
            if step.outcome is Outcome.WAITING:
                return outcome(state)
            events.append("signal_expired")

        # ── DETECTION ──
        signals = self.detector.detect(state.window.latest(self.detector.required_bars))
        signal = resolve_conflict(signals)
        if signal is None:
            if signals:
                events.append("signal_conflict")
            return outcome(state)

        events.append("signal_detected")
        if not self.confirmation.enabled:
            self._enter(state, signal.direction, signal.strategy_tag, actions, errors)
            return outcome(state)

        state = replace(state, pending=self.confirmation.stage(state.pending, signal))
        events.append("signal_staged")
        return outcome(state)

    def on_tick(self, state: EngineState, quote: Quote) -> CycleOutcome:
        """Intra-bar position management; never detects or enters."""
        if not self.gateway.has_open_position(self.config.instrument, self.config.strategy_id):
            return CycleOutcome(state)
        position = self.gateway.get_open_position(self.config.instrument, self.config.strategy_id)
        if position is None:
            return CycleOutcome(state)
        actions: list[Action] = []
        errors: list[CycleError] = []
        self._manage_position(position, quote, actions, errors)
        return CycleOutcome(state, tuple(actions), tuple(errors))

    # -- entries -------------------------------------------------------------

    def _count_bar(self, state: EngineState, bar: Bar, events: list) -> EngineState:
        """Charge *bar* to the pending signal without letting it confirm."""
        step = self.confirmation.count_bar(state.pending, bar)
        if step.pending is None:
            events.append("signal_expired")
        return replace(state, pending=step.pending)

    def _enter(
        self,
        state: EngineState,
        direction: Direction,
        tag: str,
        actions: list,
        errors: list,
    ) -> bool:
        """Open at the live quote; returns ``True`` when the gateway accepted."""
        quote = self._quote(errors)
        if quote is None:
            return False

        trade = self.config.trade
        price = quote.entry_price(direction)
        sign = direction.sign
        order = OpenOrder(
            direction=direction,
            size=state.risk.current_size,
            price=price,
            stop_price=price - sign * trade.stop_distance,
            take_profit_price=price + sign * trade.take_profit_distance,
            reason=tag,
        )
        result = self.gateway.open(
            order.direction, order.size, order.price, order.stop_price, order.take_profit_price
        )
        actions.append(Action(ActionKind.OPEN, result.ok, result.value, order=order, reason=tag))
        if not result.ok:
            log.warning("Open %s %.2f @ %.5f rejected: %s",
                        direction.value, order.size, price, result.message)
            errors.append(CycleError(ErrorKind.EXECUTION_REJECTED, result.message))
            return False

        log.info("Opened %s %.2f @ %.5f SL=%.5f TP=%.5f (%s) ticket=%s",
                 direction.value, order.size, price, order.stop_price,
                 order.take_profit_price, tag, result.value)
        return True

    # -- open position -------------------------------------------------------

    def _manage_position(
        self, position: Position, quote: Quote, actions: list, errors: list
    ) -> None:
        trade = self.config.trade

        # Timed exit
        if trade.max_hold_hours is not None:
            held = quote.time - position.open_time
            if held > pd.Timedelta(hours=trade.max_hold_hours):
                result = self.gateway.close(position.ticket)
                actions.append(
                    Action(ActionKind.CLOSE, result.ok, position.ticket, reason="max_hold")
                )
                if result.ok:
                    log.info("Closed ticket %s after %s (max hold)", position.ticket, held)
                else:
                    log.warning("Close of ticket %s rejected: %s", position.ticket, result.message)
                    errors.append(CycleError(ErrorKind.EXECUTION_REJECTED, result.message))
                return

        # Trailing stop, tighten only
        new_stop = trailing_stop(position, quote, trade.trailing_distance)
        if new_stop is None:
            return
        result = self.gateway.modify_stop(position.ticket, new_stop)
        actions.append(
            Action(ActionKind.MODIFY_STOP, result.ok, position.ticket,
                   stop_price=new_stop, reason="trailing")
        )
        if result.ok:
            log.info("Trailed stop of ticket %s to %.5f", position.ticket, new_stop)
        else:
            log.warning("Stop modify of ticket %s rejected: %s", position.ticket, result.message)
            errors.append(CycleError(ErrorKind.EXECUTION_REJECTED, result.message))

    def _quote(self, errors: list) -> Optional[Quote]:
        result = self.market.get_quote(self.config.instrument)
        if not result.ok:
            log.warning("No quote for %s, skipping: %s", self.config.instrument, result.message)
            errors.append(CycleError(ErrorKind.DATA_UNAVAILABLE, result.message))
            return None
        return result.value


def trailing_stop(
    position: Position, quote: Quote, distance: Optional[float]
) -> Optional[float]:
    """Return the tightened stop, or ``None`` when it should stay put.

    The stop follows price at *distance* once the position is more than
    *distance* in profit, and only ever moves in the favourable direction.
    """
    if distance is None:
        return None
    sign = position.direction.sign
    price = quote.exit_price(position.direction)
    if (price - position.open_price) * sign <= distance:
        return None
    candidate = price - sign * distance
    if position.stop_price is not None and (candidate - position.stop_price) * sign <= 0:
        return None
    return candidate


class TradingEngine:
    """Holds the current :class:`EngineState` around a controller.

    Parameters
    ----------
    controller : TradeController
        The decision core.
    state : EngineState, optional
        Starting state; a fresh one is created when omitted.
    """

    def __init__(self, controller: TradeController, state: Optional[EngineState] = None) -> None:
        self.controller = controller
        self.state = state if state is not None else controller.initial_state()

    @classmethod
    def configure(
        cls,
        config: EngineConfig,
        market: MarketDataProvider,
        history: TradeHistoryProvider,
        gateway: ExecutionGateway,
        risk: Optional[RiskState] = None,
    ) -> "TradingEngine":
        """One-time setup; raises ``ConfigurationInvalid`` on bad values."""
        controller = TradeController(config, market, history, gateway)
        return cls(controller, controller.initial_state(risk))

    def bootstrap(self, now: pd.Timestamp) -> tuple:
        """Rebuild in-process state at startup.

        Fills the bar window from the market-data provider without trading
        on it and refreshes sizing from today's closed deals.  Returns the
        recoverable errors met on the way.
        """
        ctl = self.controller
        errors = []
        result = ctl.market.get_recent_bars(
            ctl.config.instrument, ctl.config.timeframe, self.state.window.capacity
        )
        if result.ok:
            for bar in result.value or ():
                if self.state.last_bar_time is None or bar.open_time > self.state.last_bar_time:
                    self.state.window.append(bar)
                    self.state = replace(self.state, last_bar_time=bar.open_time)
        else:
            log.warning("Could not preload bars: %s", result.message)
            errors.append(CycleError(ErrorKind.DATA_UNAVAILABLE, result.message))

        update = ctl.sizing.refresh(self.state.risk, now, ctl.history)
        self.state = replace(self.state, risk=update.state)
        if update.error is not None:
            errors.append(update.error)
        log.info("Bootstrapped: %d bars, size %.2f, halted=%s",
                 len(self.state.window), self.state.risk.current_size,
                 self.state.risk.halted_for_day)
        return tuple(errors)

    def on_bar_closed(self, bar: Bar) -> CycleOutcome:
        out = self.controller.on_bar_closed(self.state, bar)
        self.state = out.state
        return out

    def on_tick(self, quote: Quote) -> CycleOutcome:
        out = self.controller.on_tick(self.state, quote)
        self.state = out.state
        return out
