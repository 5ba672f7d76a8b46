"""Replay package — bars, the bounded bar window, deterministic iteration."""

from .bar import Bar
from .bar_iterator import BarIterator
from .bar_window import BarWindow
from .validation import validate_bars

__all__ = ["Bar", "BarIterator", "BarWindow", "validate_bars"]
