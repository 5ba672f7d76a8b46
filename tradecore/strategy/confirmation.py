"""Signal confirmation — defer a raw signal until price breaks its bar.

Two states: idle (``pending is None``) and pending.  The machine itself is
stateless; it maps the current :class:`PendingSignal` (or ``None``) plus a
new bar to the next one, so the engine state object stays the single owner
of the pending signal.

Transitions
-----------
* idle → pending: :meth:`SignalConfirmation.stage`.
* pending → idle (confirmed): a bar at or before the deadline trades
  strictly beyond ``reference_extreme`` (above for long, below for short).
* pending → idle (expired): the deadline is reached, or ``confirm_bars``
  bars have been seen, without a breakout.  Bars on which the signal could
  not be traded still count (:meth:`SignalConfirmation.count_bar`).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

import pandas as pd

from tradecore.errors import ConfigurationInvalid
from tradecore.replay.bar import Bar
from .signal import Direction, PendingSignal, RawSignal

log = logging.getLogger(__name__)

MIN_CONFIRM_BARS = 1
MAX_CONFIRM_BARS = 10


@dataclass(frozen=True)
class ConfirmationConfig:
    """Confirmation parameters.

    * ``enabled`` — ``False`` makes every raw signal immediately actionable.
    * ``confirm_bars`` — C: how many bars after the signal bar may confirm.
    * ``window_bars`` — K: deadline = signal bar time + K bar periods.
    """

    enabled: bool = True
    confirm_bars: int = 3
    window_bars: int = 5

    def validate(self) -> list[str]:
        problems = []
        if not MIN_CONFIRM_BARS <= self.confirm_bars <= MAX_CONFIRM_BARS:
            problems.append(
                f"confirm_bars must be in [{MIN_CONFIRM_BARS}, {MAX_CONFIRM_BARS}], "
                f"got {self.confirm_bars}"
            )
        if self.window_bars < 1:
            problems.append(f"window_bars must be >= 1, got {self.window_bars}")
        return problems


class Outcome(str, Enum):
    WAITING = "waiting"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"


@dataclass(frozen=True)
class ConfirmationStep:
    """Result of feeding one bar to a pending signal.

    ``pending`` is the signal to keep (``None`` once confirmed or expired);
    ``signal`` is the signal that was evaluated, so a confirmed step still
    carries the direction to trade.
    """

    outcome: Outcome
    pending: Optional[PendingSignal]
    signal: PendingSignal


class SignalConfirmation:
    def __init__(self, config: ConfirmationConfig, bar_period: pd.Timedelta) -> None:
        problems = config.validate()
        if bar_period <= pd.Timedelta(0):
            problems.append(f"bar_period must be positive, got {bar_period}")
        if problems:
            raise ConfigurationInvalid(problems)
        self.config = config
        self.bar_period = bar_period

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def stage(self, pending: Optional[PendingSignal], signal: RawSignal) -> PendingSignal:
        """Promote *signal* to the pending slot.

        Raises ``RuntimeError`` when a signal is already pending; it must
        confirm or expire first.
        """
        if pending is not None:
            raise RuntimeError(
                f"A {pending.direction.value} signal from "
                f"{pending.created_at.isoformat()} is already pending"
            )
        deadline = signal.source_bar_time + self.config.window_bars * self.bar_period
        staged = PendingSignal(
            direction=signal.direction,
            reference_extreme=signal.reference_extreme,
            created_at=signal.source_bar_time,
            confirmation_deadline=deadline,
            strategy_tag=signal.strategy_tag,
        )
        log.info(
            "Staged %s signal (%s) ref=%.5f deadline=%s",
            staged.direction.value,
            staged.strategy_tag,
            staged.reference_extreme,
            deadline.isoformat(),
        )
        return staged

    def step(self, pending: PendingSignal, bar: Bar) -> ConfirmationStep:
        """Evaluate one bar that closed after the signal bar."""
        if bar.open_time > pending.confirmation_deadline:
            return self._expired(pending, bar.open_time)

        if _breaks_reference(pending, bar):
            log.info(
                "Confirmed %s signal from %s on bar %s",
                pending.direction.value,
                pending.created_at.isoformat(),
                bar.open_time.isoformat(),
            )
            return ConfirmationStep(Outcome.CONFIRMED, None, pending)

        return self.count_bar(pending, bar)

    def count_bar(self, pending: PendingSignal, bar: Bar) -> ConfirmationStep:
        """Use up one of the ``confirm_bars`` without testing for a breakout.

        Applied to bars on which the signal could not be traded: entries
        gated or halted, a position already open, or the entry order failed.
        """
        seen = pending.bars_seen + 1
        if bar.open_time >= pending.confirmation_deadline or seen >= self.config.confirm_bars:
            return self._expired(pending, bar.open_time)
        return ConfirmationStep(Outcome.WAITING, replace(pending, bars_seen=seen), pending)

    @staticmethod
    def _expired(pending: PendingSignal, at: pd.Timestamp) -> ConfirmationStep:
        log.info(
            "Expired %s signal from %s at %s",
            pending.direction.value,
            pending.created_at.isoformat(),
            at.isoformat(),
        )
        return ConfirmationStep(Outcome.EXPIRED, None, pending)


def _breaks_reference(pending: PendingSignal, bar: Bar) -> bool:
    if pending.direction is Direction.LONG:
        return bar.high > pending.reference_extreme
    return bar.low < pending.reference_extreme
