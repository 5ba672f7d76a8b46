"""Adaptive position sizing driven by the day's realised P&L.

The engine calls :meth:`SizingPolicy.refresh` once per bar-processing cycle
and uses the returned :class:`RiskState`:

* a new exchange-local calendar day resets the daily aggregates and lifts
  ``halted_for_day``;
* a losing day so far raises ``current_size`` according to the configured
  :class:`SizingRule`;
* a winning day resets ``current_size`` to ``base_size`` and halts new
  entries until the next day;
* a flat day (no closing deals, or exact breakeven) leaves the size alone.

``current_size`` is clamped into ``[base_size, max_size]`` on every path,
including a failed history query, which keeps the previous size.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date
from enum import Enum
from typing import Optional

import pandas as pd
import pytz

from tradecore.errors import ConfigurationInvalid, CycleError, ErrorKind
from tradecore.execution.protocols import TradeHistoryProvider

log = logging.getLogger(__name__)


class SizingRule(str, Enum):
    """How a losing day raises the size.

    * ``fixed_step`` — one ``increment`` above the size the day started
      with, so consecutive losing days climb one step each.
    * ``day_volume`` — ``base_size`` plus the day's traded volume.
    * ``deal_count`` — ``base_size`` plus ``increment`` per closed deal
      today, back to ``base_size`` once the count exceeds
      ``deal_count_reset``.
    """

    FIXED_STEP = "fixed_step"
    DAY_VOLUME = "day_volume"
    DEAL_COUNT = "deal_count"


@dataclass(frozen=True)
class SizingConfig:
    base_size: float = 0.01
    max_size: float = 1.0
    increment: float = 0.01
    rule: SizingRule = SizingRule.FIXED_STEP
    deal_count_reset: Optional[int] = None
    timezone: str = "UTC"

    def validate(self) -> list[str]:
        problems = []
        if self.base_size <= 0:
            problems.append(f"base_size must be positive, got {self.base_size}")
        if self.max_size < self.base_size:
            problems.append(
                f"max_size ({self.max_size}) must be >= base_size ({self.base_size})"
            )
        if self.increment < 0:
            problems.append(f"increment must be >= 0, got {self.increment}")
        if self.deal_count_reset is not None and self.deal_count_reset < 1:
            problems.append(f"deal_count_reset must be >= 1, got {self.deal_count_reset}")
        if self.timezone not in pytz.all_timezones_set:
            problems.append(f"Unknown timezone '{self.timezone}'")
        return problems


@dataclass(frozen=True)
class RiskState:
    """Sizing and same-day aggregates; replaced, never mutated."""

    base_size: float
    max_size: float
    increment: float
    current_size: float
    day_key: Optional[date] = None
    daily_realized_pnl: float = 0.0
    daily_deal_count: int = 0
    daily_volume: float = 0.0
    halted_for_day: bool = False
    day_start_size: Optional[float] = None


@dataclass(frozen=True)
class SizingUpdate:
    state: RiskState
    error: Optional[CycleError] = None


class SizingPolicy:
    """Stateless rules over :class:`RiskState`.

    Parameters
    ----------
    config : SizingConfig
        Sizes, increment and the loss rule.
    instrument, strategy_id : str, int
        Filter for the trade-history query.
    """

    def __init__(self, config: SizingConfig, instrument: str, strategy_id: int) -> None:
        problems = config.validate()
        if problems:
            raise ConfigurationInvalid(problems)
        self._cfg = config
        self._tz = pytz.timezone(config.timezone)
        self._instrument = instrument
        self._strategy_id = strategy_id

    # -- public API ----------------------------------------------------------

    def initial_state(self, current_size: Optional[float] = None) -> RiskState:
        size = self._cfg.base_size if current_size is None else current_size
        return RiskState(
            base_size=self._cfg.base_size,
            max_size=self._cfg.max_size,
            increment=self._cfg.increment,
            current_size=self._clamp(size),
        )

    def day_key(self, now: pd.Timestamp) -> date:
        return self._local(now).date()

    def refresh(
        self,
        state: RiskState,
        now: pd.Timestamp,
        history: TradeHistoryProvider,
    ) -> SizingUpdate:
        """Recompute size and halt flag from today's closed deals."""
        # 0. Day rollover
        key = self.day_key(now)
        if key != state.day_key:
            if state.day_key is not None:
                log.info("New trading day %s — daily aggregates reset", key)
            state = replace(
                state,
                day_key=key,
                daily_realized_pnl=0.0,
                daily_deal_count=0,
                daily_volume=0.0,
                halted_for_day=False,
                day_start_size=state.current_size,
            )

        # 1. Today's closed deals
        day_start = self._local(now).normalize()
        result = history.get_closed_deals(self._instrument, self._strategy_id, day_start, now)
        if not result.ok:
            log.warning("Trade history unavailable, keeping size %.2f: %s",
                        state.current_size, result.message)
            return SizingUpdate(state, CycleError(ErrorKind.HISTORY_QUERY_FAILED, result.message))

        deals = list(result.value or ())
        pnl = float(sum(d.profit for d in deals))
        volume = float(sum(d.volume for d in deals))
        state = replace(
            state,
            daily_realized_pnl=pnl,
            daily_deal_count=len(deals),
            daily_volume=volume,
        )
        if state.day_start_size is None:
            # Carried in mid-day: a size held on a losing day already has the step applied
            start = state.current_size - self._cfg.increment if pnl < 0 else state.current_size
            state = replace(state, day_start_size=self._clamp(start))

        # 2. Size from the day's result
        if pnl < 0:
            size = self._loss_size(state)
        elif pnl > 0:
            size = self._cfg.base_size
            if not state.halted_for_day:
                log.info("Day %s closed %.2f in profit — entries halted until tomorrow", key, pnl)
            state = replace(state, halted_for_day=True)
        else:
            size = state.current_size

        return SizingUpdate(replace(state, current_size=self._clamp(size)))

    # -- helpers -------------------------------------------------------------

    def _loss_size(self, state: RiskState) -> float:
        cfg = self._cfg
        if cfg.rule is SizingRule.DAY_VOLUME:
            return cfg.base_size + state.daily_volume
        if cfg.rule is SizingRule.DEAL_COUNT:
            if cfg.deal_count_reset is not None and state.daily_deal_count > cfg.deal_count_reset:
                return cfg.base_size
            return cfg.base_size + cfg.increment * state.daily_deal_count
        start = state.day_start_size if state.day_start_size is not None else state.current_size
        return start + cfg.increment

    def _clamp(self, size: float) -> float:
        return round(min(max(size, self._cfg.base_size), self._cfg.max_size), 8)

    def _local(self, ts: pd.Timestamp) -> pd.Timestamp:
        ts = pd.Timestamp(ts)
        if ts.tzinfo is None:
            ts = ts.tz_localize("UTC")
        return ts.tz_convert(self._tz)
