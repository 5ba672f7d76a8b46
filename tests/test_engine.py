"""Tests for the trade controller pipeline with mocked collaborators."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date
from unittest.mock import MagicMock

import pandas as pd
import pytest

from tradecore.engine.config import EngineConfig
from tradecore.engine.core import ActionKind, TradingEngine, trailing_stop
from tradecore.errors import ErrorKind, Result
from tradecore.execution.models import ClosedDeal, Position, Quote
from tradecore.replay import Bar
from tradecore.risk import RiskState
from tradecore.strategy import Direction, RawSignal

T0 = pd.Timestamp("2024-03-04 10:00", tz="UTC")  # Monday
H = pd.Timedelta(hours=1)


# ── helpers ────────────────────────────────────────────────────────────────


def _config(**overrides) -> EngineConfig:
    raw = {
        "symbol": "EURUSD",
        "timeframe": "H1",
        "strategy_id": 1001,
        "detector": {"type": "engulfing"},
        "confirmation": {"enabled": True, "confirm_bars": 3, "window_bars": 5},
        "sizing": {"base_size": 0.01, "max_size": 0.1, "increment": 0.01},
        "trade": {
            "point": 0.01,
            "stop_loss_points": 200,
            "take_profit_points": 400,
            "trailing_points": 50,
            "max_hold_hours": 24,
        },
    }
    raw.update(overrides)
    return EngineConfig.from_dict(raw)


def _collaborators(bid=102.5, ask=102.52):
    market = MagicMock()
    market.get_quote.return_value = Result.success(Quote(T0, bid, ask))
    history = MagicMock()
    history.get_closed_deals.return_value = Result.success([])
    gateway = MagicMock()
    gateway.has_open_position.return_value = False
    gateway.get_open_position.return_value = None
    gateway.open.return_value = Result.success(42)
    gateway.modify_stop.return_value = Result.success()
    gateway.close.return_value = Result.success()
    return market, history, gateway


def _engine(config=None, **kwargs):
    market, history, gateway = _collaborators(**kwargs)
    engine = TradingEngine.configure(config or _config(), market, history, gateway)
    return engine, market, history, gateway


def _bar(i, o, h, l, c, v=100.0) -> Bar:
    return Bar(open_time=T0 + i * H, open=o, high=h, low=l, close=c, volume=v)


# bar 0 bearish, bar 1 bullish engulfing: LONG signal, reference 102
PREV = _bar(0, 100, 100.5, 97.5, 98)
ENGULF = _bar(1, 97, 102, 96, 101)
INSIDE = _bar(2, 101, 101.8, 100, 101.5)  # no breakout of 102
BREAKOUT = _bar(2, 101, 103, 100, 102.5)


def _events(outcomes) -> list[str]:
    return [e for out in outcomes for e in out.events]


# ── entry path ─────────────────────────────────────────────────────────────


class TestEntry:
    def test_signal_is_staged_then_confirmed_and_opened(self):
        engine, _, _, gateway = _engine()
        outs = [engine.on_bar_closed(PREV), engine.on_bar_closed(ENGULF)]
        assert "signal_staged" in _events(outs)
        assert engine.state.pending is not None
        assert engine.state.pending.confirmation_deadline == ENGULF.open_time + 5 * H
        gateway.open.assert_not_called()

        out = engine.on_bar_closed(BREAKOUT)
        assert "signal_confirmed" in out.events
        direction, size, price, stop, take_profit = gateway.open.call_args.args
        assert direction is Direction.LONG
        assert size == pytest.approx(0.01)
        assert price == pytest.approx(102.52)  # long fills at the ask
        assert stop == pytest.approx(100.52)
        assert take_profit == pytest.approx(106.52)
        assert out.actions[0].kind is ActionKind.OPEN
        assert out.actions[0].ok
        assert out.actions[0].position_id == 42
        assert engine.state.pending is None

    def test_short_entry_uses_bid(self):
        engine, _, _, gateway = _engine(_config(confirmation={"enabled": False}))
        engine.on_bar_closed(_bar(0, 98, 100.5, 97.5, 100))
        engine.on_bar_closed(_bar(1, 101, 102, 96, 97))  # bearish engulfing
        direction, _, price, stop, take_profit = gateway.open.call_args.args
        assert direction is Direction.SHORT
        assert price == pytest.approx(102.5)
        assert stop == pytest.approx(104.5)
        assert take_profit == pytest.approx(98.5)

    def test_immediate_mode_opens_on_signal_bar(self):
        engine, _, _, gateway = _engine(_config(confirmation={"enabled": False}))
        engine.on_bar_closed(PREV)
        out = engine.on_bar_closed(ENGULF)
        assert gateway.open.call_count == 1
        assert "signal_staged" not in out.events
        assert engine.state.pending is None

    def test_expires_without_breakout(self):
        engine, _, _, gateway = _engine()
        engine.on_bar_closed(PREV)
        engine.on_bar_closed(ENGULF)
        outs = [
            engine.on_bar_closed(replace(INSIDE, open_time=T0 + i * H)) for i in (2, 3, 4)
        ]
        assert "signal_expired" in _events(outs)
        assert engine.state.pending is None
        gateway.open.assert_not_called()

    def test_size_follows_risk_state(self):
        engine, _, history, gateway = _engine(_config(confirmation={"enabled": False}))
        history.get_closed_deals.return_value = Result.success(
            [ClosedDeal(profit=-25.0, volume=0.01, close_time=T0)]
        )
        engine.on_bar_closed(PREV)
        engine.on_bar_closed(ENGULF)
        assert gateway.open.call_args.args[1] == pytest.approx(0.02)


# ── failures ───────────────────────────────────────────────────────────────


class TestFailures:
    def test_rejected_open_keeps_pending_signal(self):
        engine, _, _, gateway = _engine()
        engine.on_bar_closed(PREV)
        engine.on_bar_closed(ENGULF)
        gateway.open.return_value = Result.failure(ErrorKind.EXECUTION_REJECTED, "10019")
        out = engine.on_bar_closed(BREAKOUT)
        assert [e.kind for e in out.errors] == [ErrorKind.EXECUTION_REJECTED]
        assert not out.actions[0].ok
        assert engine.state.pending is not None

        # next bar breaks again and the retry goes through
        gateway.open.return_value = Result.success(43)
        engine.on_bar_closed(_bar(3, 102.5, 103.5, 102, 103))
        assert gateway.open.call_count == 2
        assert engine.state.pending is None

    def test_rejected_open_counts_against_confirm_bars(self):
        cfg = _config(confirmation={"confirm_bars": 1, "window_bars": 5})
        engine, _, _, gateway = _engine(cfg)
        engine.on_bar_closed(PREV)
        engine.on_bar_closed(ENGULF)
        gateway.open.return_value = Result.failure(ErrorKind.EXECUTION_REJECTED, "10019")
        out = engine.on_bar_closed(BREAKOUT)
        assert "signal_expired" in out.events
        assert engine.state.pending is None

        # a later breakout is past the one confirmation bar
        gateway.open.return_value = Result.success(43)
        engine.on_bar_closed(_bar(3, 102.5, 103.5, 102, 103))
        assert gateway.open.call_count == 1

    def test_missing_quote_skips_entry(self):
        engine, market, _, gateway = _engine()
        engine.on_bar_closed(PREV)
        engine.on_bar_closed(ENGULF)
        market.get_quote.return_value = Result.failure(ErrorKind.DATA_UNAVAILABLE, "no tick")
        out = engine.on_bar_closed(BREAKOUT)
        assert [e.kind for e in out.errors] == [ErrorKind.DATA_UNAVAILABLE]
        gateway.open.assert_not_called()
        assert engine.state.pending is not None

    def test_history_failure_is_recorded_and_cycle_continues(self):
        engine, _, history, _ = _engine()
        history.get_closed_deals.return_value = Result.failure(
            ErrorKind.HISTORY_QUERY_FAILED, "timeout"
        )
        engine.on_bar_closed(PREV)
        out = engine.on_bar_closed(ENGULF)
        assert ErrorKind.HISTORY_QUERY_FAILED in [e.kind for e in out.errors]
        assert "signal_staged" in out.events


# ── guards ─────────────────────────────────────────────────────────────────


class TestGuards:
    def test_same_bar_twice_is_a_noop(self):
        engine, _, history, _ = _engine()
        engine.on_bar_closed(PREV)
        engine.on_bar_closed(ENGULF)
        state = engine.state
        calls = history.get_closed_deals.call_count
        out = engine.on_bar_closed(ENGULF)
        assert out.state is state
        assert out.actions == () and out.events == ()
        assert history.get_closed_deals.call_count == calls
        assert len(engine.state.window) == 2

    def test_halted_day_blocks_entries(self):
        engine, _, history, gateway = _engine(_config(confirmation={"enabled": False}))
        history.get_closed_deals.return_value = Result.success(
            [ClosedDeal(profit=15.0, volume=0.01, close_time=T0)]
        )
        engine.on_bar_closed(PREV)
        out = engine.on_bar_closed(ENGULF)
        assert "blocked:HALTED_FOR_DAY" in out.events
        assert engine.state.risk.halted_for_day
        gateway.open.assert_not_called()

    def test_session_gate_uses_bar_close_time(self):
        cfg = _config(session={"trading_hours": [8, 12]}, confirmation={"enabled": False})
        engine, _, _, gateway = _engine(cfg)
        engine.on_bar_closed(PREV)
        out = engine.on_bar_closed(ENGULF)  # 11:00 bar closes at 12:00
        assert "blocked:OUTSIDE_HOURS" in out.events
        gateway.open.assert_not_called()

    def test_gate_expires_pending_at_deadline(self):
        cfg = _config(session={"trading_hours": [8, 13]},
                      confirmation={"confirm_bars": 10, "window_bars": 2})
        engine, _, _, gateway = _engine(cfg)
        engine.on_bar_closed(PREV)
        engine.on_bar_closed(ENGULF)  # staged, deadline 13:00
        engine.on_bar_closed(replace(INSIDE, open_time=T0 + 2 * H))
        assert engine.state.pending is not None
        out = engine.on_bar_closed(replace(BREAKOUT, open_time=T0 + 3 * H))  # closes 14:00
        assert "blocked:OUTSIDE_HOURS" in out.events
        assert "signal_expired" in out.events
        assert engine.state.pending is None
        gateway.open.assert_not_called()

    def test_gated_bar_counts_against_confirm_bars(self):
        cfg = _config(session={"news": [{"time": "13:00", "minutes": 5}]},
                      confirmation={"confirm_bars": 1, "window_bars": 5})
        engine, _, _, gateway = _engine(cfg)
        engine.on_bar_closed(PREV)
        engine.on_bar_closed(ENGULF)  # staged at 12:00
        out = engine.on_bar_closed(INSIDE)  # closes 13:00, inside the news window
        assert "blocked:NEWS_WINDOW" in out.events
        assert "signal_expired" in out.events
        assert engine.state.pending is None

        engine.on_bar_closed(replace(BREAKOUT, open_time=T0 + 3 * H))
        gateway.open.assert_not_called()

    def test_conflicting_signals_discarded(self):
        @dataclass(frozen=True)
        class BothWays:
            name: str = "both"
            required_bars: int = 1

            def detect(self, bars):
                t = bars[-1].open_time
                return [
                    RawSignal(Direction.LONG, t, 1.0, self.name, 1.0),
                    RawSignal(Direction.SHORT, t, 1.0, self.name, 1.0),
                ]

        cfg = replace(_config(confirmation={"enabled": False}), detector=BothWays())
        engine, _, _, gateway = _engine(cfg)
        out = engine.on_bar_closed(PREV)
        assert "signal_conflict" in out.events
        gateway.open.assert_not_called()


# ── open position ──────────────────────────────────────────────────────────


def _position(direction=Direction.LONG, open_price=100.0, stop=98.0, opened=T0) -> Position:
    take_profit = open_price + direction.sign * 4.0
    return Position(7, direction, 0.01, open_price, stop, take_profit, opened)


class TestOpenPosition:
    def _with_position(self, position, quote):
        engine, market, history, gateway = _engine()
        gateway.has_open_position.return_value = True
        gateway.get_open_position.return_value = position
        market.get_quote.return_value = Result.success(quote)
        return engine, gateway

    def test_no_entries_while_position_open(self):
        engine, gateway = self._with_position(_position(), Quote(T0, 100.1, 100.12))
        engine.on_bar_closed(PREV)
        out = engine.on_bar_closed(ENGULF)
        gateway.open.assert_not_called()
        assert "signal_staged" not in out.events
        assert engine.state.pending is None

    def test_pending_signal_expires_while_position_open(self):
        engine, market, _, gateway = _engine()
        engine.on_bar_closed(PREV)
        engine.on_bar_closed(ENGULF)
        assert engine.state.pending is not None

        gateway.has_open_position.return_value = True
        gateway.get_open_position.return_value = _position()
        market.get_quote.return_value = Result.success(Quote(T0 + 2 * H, 100.1, 100.12))
        outs = [
            engine.on_bar_closed(replace(INSIDE, open_time=T0 + i * H)) for i in (2, 3, 4)
        ]
        assert _events(outs).count("signal_expired") == 1
        assert "signal_expired" in outs[-1].events
        assert engine.state.pending is None
        gateway.open.assert_not_called()

    def test_trailing_stop_tightens_long(self):
        engine, gateway = self._with_position(_position(), Quote(T0 + H, 101.0, 101.02))
        out = engine.on_tick(Quote(T0 + H, 101.0, 101.02))
        gateway.modify_stop.assert_called_once_with(7, pytest.approx(100.5))
        assert out.actions[0].kind is ActionKind.MODIFY_STOP

    def test_trailing_never_loosens(self):
        engine, gateway = self._with_position(
            _position(stop=100.8), Quote(T0 + H, 101.0, 101.02)
        )
        engine.on_tick(Quote(T0 + H, 101.0, 101.02))
        gateway.modify_stop.assert_not_called()

    def test_trailing_waits_for_profit(self):
        engine, gateway = self._with_position(_position(), Quote(T0 + H, 100.4, 100.42))
        engine.on_tick(Quote(T0 + H, 100.4, 100.42))
        gateway.modify_stop.assert_not_called()

    def test_timed_exit_closes(self):
        late = Quote(T0 + 25 * H, 100.2, 100.22)
        engine, gateway = self._with_position(_position(), late)
        out = engine.on_tick(late)
        gateway.close.assert_called_once_with(7)
        assert out.actions[0].kind is ActionKind.CLOSE
        gateway.modify_stop.assert_not_called()

    def test_rejected_stop_modify_is_reported(self):
        quote = Quote(T0 + H, 101.0, 101.02)
        engine, gateway = self._with_position(_position(), quote)
        gateway.modify_stop.return_value = Result.failure(
            ErrorKind.EXECUTION_REJECTED, "10016 invalid stops"
        )
        state = engine.state
        out = engine.on_tick(quote)
        assert [e.kind for e in out.errors] == [ErrorKind.EXECUTION_REJECTED]
        assert out.actions[0].kind is ActionKind.MODIFY_STOP
        assert out.actions[0].ok is False
        assert out.actions[0].stop_price == pytest.approx(100.5)
        assert out.state is state

    def test_rejected_timed_exit_is_reported(self):
        late = Quote(T0 + 25 * H, 100.2, 100.22)
        engine, gateway = self._with_position(_position(), late)
        gateway.close.return_value = Result.failure(ErrorKind.EXECUTION_REJECTED, "market closed")
        state = engine.state
        out = engine.on_tick(late)
        assert [e.kind for e in out.errors] == [ErrorKind.EXECUTION_REJECTED]
        assert out.actions[0].kind is ActionKind.CLOSE
        assert out.actions[0].ok is False
        assert out.state is state
        gateway.modify_stop.assert_not_called()

    def test_bar_close_manages_position(self):
        quote = Quote(T0 + 2 * H, 101.0, 101.02)
        engine, gateway = self._with_position(_position(), quote)
        engine.on_bar_closed(PREV)
        gateway.modify_stop.assert_called_once()

    def test_on_tick_without_position(self):
        engine, _, _, gateway = _engine()
        out = engine.on_tick(Quote(T0, 100.0, 100.02))
        assert out.actions == ()
        gateway.modify_stop.assert_not_called()
        gateway.open.assert_not_called()


class TestTrailingStop:
    def test_short_trails_from_ask(self):
        pos = _position(Direction.SHORT, open_price=100.0, stop=102.0)
        assert trailing_stop(pos, Quote(T0, 98.98, 99.0), 0.5) == pytest.approx(99.5)

    def test_disabled(self):
        assert trailing_stop(_position(), Quote(T0, 105.0, 105.02), None) is None


# ── setup ──────────────────────────────────────────────────────────────────


class TestSetup:
    def test_bootstrap_preloads_window(self):
        engine, market, _, gateway = _engine()
        market.get_recent_bars.return_value = Result.success([PREV, ENGULF])
        errors = engine.bootstrap(T0 + 2 * H)
        assert errors == ()
        assert len(engine.state.window) == 2
        assert engine.state.last_bar_time == ENGULF.open_time
        # already-seen bar is ignored, no signal is traded from history
        engine.on_bar_closed(ENGULF)
        assert engine.state.pending is None
        gateway.open.assert_not_called()

    def test_bootstrap_reports_missing_bars(self):
        engine, market, _, _ = _engine()
        market.get_recent_bars.return_value = Result.failure(ErrorKind.DATA_UNAVAILABLE, "down")
        errors = engine.bootstrap(T0)
        assert [e.kind for e in errors] == [ErrorKind.DATA_UNAVAILABLE]

    def test_configure_rebounds_carried_risk(self):
        market, history, gateway = _collaborators()
        carried = RiskState(base_size=0.5, max_size=5.0, increment=0.5, current_size=5.0,
                            daily_deal_count=3)
        engine = TradingEngine.configure(_config(), market, history, gateway, risk=carried)
        assert engine.state.risk.current_size == pytest.approx(0.1)
        assert engine.state.risk.base_size == pytest.approx(0.01)
        assert engine.state.risk.daily_deal_count == 3

    def test_carried_losing_day_size_holds_across_bars(self):
        market, history, gateway = _collaborators()
        history.get_closed_deals.return_value = Result.success(
            [ClosedDeal(profit=-20.0, volume=0.01, close_time=T0)]
        )
        carried = RiskState(base_size=0.01, max_size=0.1, increment=0.01, current_size=0.02,
                            day_key=date(2024, 3, 4))
        engine = TradingEngine.configure(_config(), market, history, gateway, risk=carried)
        for i in range(5):
            engine.on_bar_closed(replace(INSIDE, open_time=T0 + i * H))
            assert engine.state.risk.current_size == pytest.approx(0.02)

    def test_window_holds_at_least_three_bars(self):
        engine, _, _, _ = _engine()
        assert engine.state.window.capacity == 3
