"""
Session Gate — trading-hour, weekday and news-window permission check.

All three checks must pass for an entry to be allowed:

  • Trading hours  — half-open ``[start_hour, end_hour)`` in exchange-local
    time; ``start_hour > end_hour`` wraps over midnight (22 → 6 allows
    22:00–05:59).  ``start_hour == end_hour`` is rejected at construction.
  • Weekdays       — local weekday must be in ``allowed_weekdays``.
  • News windows   — blocked when the local time-of-day is within
    ``avoidance_minutes`` of a scheduled event whose impact is at least
    ``min_news_impact``.  Saturday and Sunday skip this check.

Each block carries a reason code so the engine can count blocks per cause.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import time
from enum import IntEnum
from typing import Iterable, Optional

import pandas as pd
import pytz

from tradecore.errors import ConfigurationInvalid

WEEKDAY_NAMES = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")
ALL_WEEKDAYS = frozenset(range(7))
_MINUTES_PER_DAY = 24 * 60


class Impact(IntEnum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3

    @classmethod
    def parse(cls, value) -> "Impact":
        if isinstance(value, Impact):
            return value
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ConfigurationInvalid(
                f"Unknown news impact '{value}' (expected low/medium/high)"
            ) from None


@dataclass(frozen=True)
class NewsWindow:
    """A daily scheduled event to stay away from."""

    time_of_day: time
    avoidance_minutes: int
    impact: Impact = Impact.HIGH

    @property
    def minute_of_day(self) -> int:
        return self.time_of_day.hour * 60 + self.time_of_day.minute


@dataclass(frozen=True)
class SessionPolicy:
    """Immutable per-run session configuration."""

    trading_hours: Optional[tuple[int, int]] = None
    allowed_weekdays: frozenset = ALL_WEEKDAYS
    news_windows: tuple = ()
    min_news_impact: Impact = Impact.HIGH
    timezone: str = "UTC"

    def validate(self) -> list[str]:
        problems = []
        if self.trading_hours is not None:
            start, end = self.trading_hours
            for label, hour in (("start_hour", start), ("end_hour", end)):
                if not 0 <= hour <= 23:
                    problems.append(f"{label} must be in 0..23, got {hour}")
            if start == end:
                problems.append(f"start_hour and end_hour must differ, both are {start}")
        bad_days = [d for d in self.allowed_weekdays if d not in ALL_WEEKDAYS]
        if bad_days:
            problems.append(f"allowed_weekdays out of range: {sorted(bad_days)}")
        if not self.allowed_weekdays:
            problems.append("allowed_weekdays must not be empty")
        for w in self.news_windows:
            if w.avoidance_minutes < 0:
                problems.append(
                    f"avoidance_minutes must be >= 0, got {w.avoidance_minutes} "
                    f"for news at {w.time_of_day}"
                )
        if self.timezone not in pytz.all_timezones_set:
            problems.append(f"Unknown timezone '{self.timezone}'")
        return problems


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    reason: str = ""


@dataclass
class SessionGate:
    """Pure predicate over a timestamp; no state beyond its policy."""

    policy: SessionPolicy = field(default_factory=SessionPolicy)

    def __post_init__(self) -> None:
        problems = self.policy.validate()
        if problems:
            raise ConfigurationInvalid(problems)
        self._tz = pytz.timezone(self.policy.timezone)

    def local(self, ts: pd.Timestamp) -> pd.Timestamp:
        ts = pd.Timestamp(ts)
        if ts.tzinfo is None:
            ts = ts.tz_localize("UTC")
        return ts.tz_convert(self._tz)

    def check(self, ts: pd.Timestamp) -> GateDecision:
        """Returns the decision and, when blocked, the reason code."""
        now = self.local(ts)

        if not self._in_trading_hours(now.hour):
            start, end = self.policy.trading_hours
            return GateDecision(False, f"OUTSIDE_HOURS: {now.hour:02d}h not in [{start}, {end})")

        if now.weekday() not in self.policy.allowed_weekdays:
            return GateDecision(False, f"WEEKDAY_BLOCKED: {WEEKDAY_NAMES[now.weekday()]}")

        window = self._active_news_window(now)
        if window is not None:
            return GateDecision(
                False,
                f"NEWS_WINDOW: {window.time_of_day.strftime('%H:%M')} "
                f"±{window.avoidance_minutes}m ({window.impact.name.lower()})",
            )

        return GateDecision(True)

    def is_allowed(self, ts: pd.Timestamp) -> bool:
        return self.check(ts).allowed

    # -- checks --------------------------------------------------------------

    def _in_trading_hours(self, hour: int) -> bool:
        if self.policy.trading_hours is None:
            return True
        start, end = self.policy.trading_hours
        if start < end:
            return start <= hour < end
        return hour >= start or hour < end

    def _active_news_window(self, now: pd.Timestamp) -> Optional[NewsWindow]:
        if now.weekday() >= 5:
            return None
        minute = now.hour * 60 + now.minute
        for window in self.policy.news_windows:
            if window.impact < self.policy.min_news_impact:
                continue
            diff = abs(minute - window.minute_of_day)
            diff = min(diff, _MINUTES_PER_DAY - diff)
            if diff <= window.avoidance_minutes:
                return window
        return None


# ---------------------------------------------------------------------------
# Config helpers
# ---------------------------------------------------------------------------

def parse_weekdays(values: Optional[Iterable]) -> frozenset:
    """Accept weekday names (``"mon"``…) or numbers (0=Monday)."""
    if values is None:
        return ALL_WEEKDAYS
    days = set()
    for v in values:
        if isinstance(v, int):
            days.add(v)
            continue
        key = str(v).strip().lower()[:3]
        if key not in WEEKDAY_NAMES:
            raise ConfigurationInvalid(f"Unknown weekday '{v}'")
        days.add(WEEKDAY_NAMES.index(key))
    return frozenset(days)


def parse_news_windows(entries: Optional[Iterable[dict]]) -> tuple:
    """Build news windows from ``{"time": "HH:MM", "minutes": N, "impact": ...}``.

    Windows are returned sorted by time of day.
    """
    windows = []
    for entry in entries or ():
        raw = str(entry.get("time", ""))
        try:
            hh, mm = raw.split(":")
            tod = time(int(hh), int(mm))
        except ValueError:
            raise ConfigurationInvalid(f"Bad news time '{raw}' (expected HH:MM)") from None
        windows.append(
            NewsWindow(
                time_of_day=tod,
                avoidance_minutes=int(entry.get("minutes", 30)),
                impact=Impact.parse(entry.get("impact", "high")),
            )
        )
    return tuple(sorted(windows, key=lambda w: w.minute_of_day))
