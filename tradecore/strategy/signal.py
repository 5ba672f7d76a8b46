"""Signals — output of the pattern detectors and the confirmation stage."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import pandas as pd


class Direction(str, Enum):
    LONG = "long"
    SHORT = "short"

    @property
    def sign(self) -> int:
        return 1 if self is Direction.LONG else -1

    @property
    def opposite(self) -> "Direction":
        return Direction.SHORT if self is Direction.LONG else Direction.LONG


@dataclass(frozen=True)
class RawSignal:
    """What a detector saw on the latest bar — NOT an execution instruction.

    Attributes
    ----------
    direction : Direction
        Side the pattern points to.
    source_bar_time : pd.Timestamp
        Open time of the bar that produced the pattern.
    reference_extreme : float
        Breakout level for confirmation: the source bar's high for a long
        signal, its low for a short one.
    strategy_tag : str
        Name of the detector that fired.
    strength : float
        Geometric magnitude of the pattern, only used to break ties when
        both directions fire on the same bar.
    """

    direction: Direction
    source_bar_time: pd.Timestamp
    reference_extreme: float
    strategy_tag: str
    strength: float = 0.0


@dataclass(frozen=True)
class PendingSignal:
    """A staged signal waiting for a breakout of ``reference_extreme``.

    ``confirmation_deadline`` is fixed when the signal is staged and never
    extended.  ``bars_seen`` counts bars evaluated since staging.
    """

    direction: Direction
    reference_extreme: float
    created_at: pd.Timestamp
    confirmation_deadline: pd.Timestamp
    strategy_tag: str = ""
    bars_seen: int = 0
