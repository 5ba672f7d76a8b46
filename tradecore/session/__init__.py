"""Session package — time-of-day / weekday / news permission gate."""

from .gate import (
    GateDecision,
    Impact,
    NewsWindow,
    SessionGate,
    SessionPolicy,
    parse_news_windows,
    parse_weekdays,
)

__all__ = [
    "GateDecision",
    "Impact",
    "NewsWindow",
    "SessionGate",
    "SessionPolicy",
    "parse_news_windows",
    "parse_weekdays",
]
