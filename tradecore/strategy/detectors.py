"""Bar-geometry pattern detectors.

Every detector is a pure function of the most recent completed bars
(oldest first) and returns a list of :class:`RawSignal`.  An empty list
means "no signal" — including the case where the window does not yet hold
enough bars.  Callers that care about warm-up should compare
``len(window)`` with ``detector.required_bars`` themselves.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol, Sequence, runtime_checkable

from tradecore.replay.bar import Bar
from .signal import Direction, RawSignal

log = logging.getLogger(__name__)


@runtime_checkable
class Detector(Protocol):
    @property
    def name(self) -> str: ...

    @property
    def required_bars(self) -> int: ...

    def detect(self, bars: Sequence[Bar]) -> list[RawSignal]: ...


def _signal(direction: Direction, bar: Bar, tag: str, strength: float) -> RawSignal:
    reference = bar.high if direction is Direction.LONG else bar.low
    return RawSignal(
        direction=direction,
        source_bar_time=bar.open_time,
        reference_extreme=reference,
        strategy_tag=tag,
        strength=strength,
    )


@dataclass(frozen=True)
class ShadowVolumeDetector:
    """Volume spike with a dominant wick.

    Long when the latest bar's volume exceeds the previous bar's by
    ``volume_multiplier`` and its lower shadow is longer than the upper one;
    short on the same volume condition with the upper shadow longer.
    """

    volume_multiplier: float = 1.5
    name: str = "shadow_volume"
    required_bars: int = 2

    def detect(self, bars: Sequence[Bar]) -> list[RawSignal]:
        if len(bars) < self.required_bars:
            return []
        prev, cur = bars[-2], bars[-1]
        if not cur.volume > prev.volume * self.volume_multiplier:
            return []

        upper, lower = cur.upper_shadow, cur.lower_shadow
        strength = abs(lower - upper)
        signals = []
        if lower > upper:
            signals.append(_signal(Direction.LONG, cur, self.name, strength))
        if upper > lower:
            signals.append(_signal(Direction.SHORT, cur, self.name, strength))
        return signals


@dataclass(frozen=True)
class EngulfingDetector:
    """Two-bar engulfing reversal.

    The current body must open beyond the previous close, close beyond the
    previous open, and the current high/low must exceed the previous bar's
    range on both ends.
    """

    name: str = "engulfing"
    required_bars: int = 2

    def detect(self, bars: Sequence[Bar]) -> list[RawSignal]:
        if len(bars) < self.required_bars:
            return []
        prev, cur = bars[-2], bars[-1]
        wider = cur.high > prev.high and cur.low < prev.low
        if not wider:
            return []

        if (
            prev.is_bullish
            and cur.is_bearish
            and cur.open > prev.close
            and cur.close < prev.open
        ):
            return [_signal(Direction.SHORT, cur, self.name, cur.body)]

        if (
            prev.is_bearish
            and cur.is_bullish
            and cur.open < prev.close
            and cur.close > prev.open
        ):
            return [_signal(Direction.LONG, cur, self.name, cur.body)]

        return []


@dataclass(frozen=True)
class OutsideBarDetector:
    """Outside bar faded against its own close.

    A bearish outside bar that closes below the previous bar's low points
    long (exhaustion); a bullish one closing above the previous high points
    short.
    """

    name: str = "outside_bar"
    required_bars: int = 2

    def detect(self, bars: Sequence[Bar]) -> list[RawSignal]:
        if len(bars) < self.required_bars:
            return []
        prev, cur = bars[-2], bars[-1]
        if not (cur.high > prev.high and cur.low < prev.low):
            return []

        if cur.is_bearish and cur.close < prev.low:
            return [_signal(Direction.LONG, cur, self.name, cur.range)]
        if cur.is_bullish and cur.close > prev.high:
            return [_signal(Direction.SHORT, cur, self.name, cur.range)]
        return []


def resolve_conflict(signals: Sequence[RawSignal]) -> RawSignal | None:
    """Reduce one bar's signals to at most one.

    Opposing signals are settled by strength; a tie discards both.
    """
    if not signals:
        return None
    longs = [s for s in signals if s.direction is Direction.LONG]
    shorts = [s for s in signals if s.direction is Direction.SHORT]
    if not longs or not shorts:
        return max(signals, key=lambda s: s.strength)

    best_long = max(longs, key=lambda s: s.strength)
    best_short = max(shorts, key=lambda s: s.strength)
    if best_long.strength > best_short.strength:
        return best_long
    if best_short.strength > best_long.strength:
        return best_short

    log.warning(
        "Opposing signals of equal strength %.5f at %s — both discarded",
        best_long.strength,
        best_long.source_bar_time.isoformat(),
    )
    return None
