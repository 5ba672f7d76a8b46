"""Immutable engine configuration, loaded from YAML and validated up front."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import pandas as pd
import yaml

from tradecore.errors import ConfigurationInvalid
from tradecore.risk.sizing import SizingConfig, SizingRule
from tradecore.session.gate import (
    ALL_WEEKDAYS,
    Impact,
    SessionPolicy,
    parse_news_windows,
    parse_weekdays,
)
from tradecore.strategy.confirmation import ConfirmationConfig
from tradecore.strategy.detectors import Detector
from tradecore.strategy.registry import build_detector

_MT5_TIMEFRAME = re.compile(r"^(M|H|D|W)(\d+)$")
_MT5_UNITS = {"M": "min", "H": "h", "D": "D", "W": "W"}


def parse_timeframe(timeframe: str) -> pd.Timedelta:
    """``"M5"``/``"H1"``/``"D1"`` (MT5 style) or any pandas offset (``"5min"``)."""
    m = _MT5_TIMEFRAME.match(str(timeframe).upper())
    if m:
        unit, n = m.groups()
        return pd.Timedelta(int(n), unit=_MT5_UNITS[unit])
    try:
        return pd.Timedelta(timeframe)
    except ValueError:
        raise ConfigurationInvalid(f"Unrecognised timeframe '{timeframe}'") from None


@dataclass(frozen=True)
class TradeConfig:
    """Entry offsets and open-position management, in points.

    * ``point`` — price value of one point (e.g. ``0.0001`` on EURUSD).
    * ``trailing_points`` — ``None`` disables the trailing stop.
    * ``max_hold_hours`` — ``None`` disables the timed exit.
    """

    point: float = 0.0001
    stop_loss_points: float = 200.0
    take_profit_points: float = 400.0
    trailing_points: Optional[float] = None
    max_hold_hours: Optional[float] = 24.0

    def validate(self) -> list[str]:
        problems = []
        if self.point <= 0:
            problems.append(f"point must be positive, got {self.point}")
        if self.stop_loss_points <= 0:
            problems.append(f"stop_loss_points must be positive, got {self.stop_loss_points}")
        if self.take_profit_points <= 0:
            problems.append(f"take_profit_points must be positive, got {self.take_profit_points}")
        if self.trailing_points is not None and self.trailing_points <= 0:
            problems.append(f"trailing_points must be positive, got {self.trailing_points}")
        if self.max_hold_hours is not None and self.max_hold_hours <= 0:
            problems.append(f"max_hold_hours must be positive, got {self.max_hold_hours}")
        return problems

    @property
    def stop_distance(self) -> float:
        return self.stop_loss_points * self.point

    @property
    def take_profit_distance(self) -> float:
        return self.take_profit_points * self.point

    @property
    def trailing_distance(self) -> Optional[float]:
        if self.trailing_points is None:
            return None
        return self.trailing_points * self.point


@dataclass(frozen=True)
class EngineConfig:
    """Everything the trade controller needs for one instrument/strategy."""

    instrument: str
    timeframe: str
    strategy_id: int
    detector: Detector
    bar_period: pd.Timedelta
    confirmation: ConfirmationConfig = field(default_factory=ConfirmationConfig)
    session: SessionPolicy = field(default_factory=SessionPolicy)
    sizing: SizingConfig = field(default_factory=SizingConfig)
    trade: TradeConfig = field(default_factory=TradeConfig)

    @classmethod
    def from_dict(cls, cfg: dict) -> "EngineConfig":
        """Build and validate; every problem found is reported at once."""
        problems: list[str] = []

        def attempt(fn, *args, **kwargs):
            try:
                return fn(*args, **kwargs)
            except ConfigurationInvalid as exc:
                problems.extend(exc.problems)
            except (TypeError, ValueError) as exc:
                problems.append(str(exc))
            return None

        instrument = cfg.get("symbol") or cfg.get("instrument")
        if not instrument:
            problems.append("symbol is required")
        timeframe = str(cfg.get("timeframe", "H1"))
        bar_period = attempt(parse_timeframe, timeframe)
        tz = cfg.get("timezone", "UTC")

        detector = attempt(build_detector, cfg.get("detector", {"type": "engulfing"}))

        conf_raw = cfg.get("confirmation", {}) or {}
        confirmation = attempt(
            lambda: ConfirmationConfig(
                enabled=bool(conf_raw.get("enabled", True)),
                confirm_bars=int(conf_raw.get("confirm_bars", 3)),
                window_bars=int(conf_raw.get("window_bars", 5)),
            )
        )

        sess_raw = cfg.get("session", {}) or {}
        hours = sess_raw.get("trading_hours")
        if hours is not None and len(hours) != 2:
            problems.append(f"trading_hours must be [start_hour, end_hour], got {hours}")
            hours = None
        weekdays = attempt(parse_weekdays, sess_raw.get("weekdays"))
        news = attempt(parse_news_windows, sess_raw.get("news"))
        impact = attempt(Impact.parse, sess_raw.get("min_news_impact", "high"))
        session = attempt(
            lambda: SessionPolicy(
                trading_hours=tuple(int(h) for h in hours) if hours is not None else None,
                allowed_weekdays=ALL_WEEKDAYS if weekdays is None else weekdays,
                news_windows=news or (),
                min_news_impact=impact or Impact.HIGH,
                timezone=tz,
            )
        )

        size_raw = cfg.get("sizing", {}) or {}
        sizing = attempt(
            lambda: SizingConfig(
                base_size=float(size_raw.get("base_size", 0.01)),
                max_size=float(size_raw.get("max_size", 1.0)),
                increment=float(size_raw.get("increment", 0.01)),
                rule=SizingRule(size_raw.get("rule", "fixed_step")),
                deal_count_reset=size_raw.get("deal_count_reset"),
                timezone=tz,
            )
        )

        trade_raw = cfg.get("trade", {}) or {}
        trade = attempt(
            lambda: TradeConfig(
                point=float(trade_raw.get("point", 0.0001)),
                stop_loss_points=float(trade_raw.get("stop_loss_points", 200)),
                take_profit_points=float(trade_raw.get("take_profit_points", 400)),
                trailing_points=_opt_float(trade_raw.get("trailing_points")),
                max_hold_hours=_opt_float(trade_raw.get("max_hold_hours", 24)),
            )
        )

        for part in (confirmation, session, sizing, trade):
            if part is not None:
                problems.extend(part.validate())

        if problems:
            raise ConfigurationInvalid(problems)

        return cls(
            instrument=str(instrument),
            timeframe=timeframe,
            strategy_id=int(cfg.get("strategy_id", 0)),
            detector=detector,
            bar_period=bar_period,
            confirmation=confirmation,
            session=session,
            sizing=sizing,
            trade=trade,
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "EngineConfig":
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_dict(yaml.safe_load(f) or {})


def _opt_float(value) -> Optional[float]:
    return None if value is None else float(value)
