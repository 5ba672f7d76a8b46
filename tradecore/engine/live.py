"""Live loop — drives the engine from a MetaTrader 5 terminal.

Ticks are delivered to the engine one at a time from this single thread:
every poll calls ``on_tick`` with the latest quote, and ``on_bar_closed``
runs whenever the newest completed bar differs from the last one handled.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Optional

import pandas as pd
import yaml

from tradecore.engine.config import EngineConfig
from tradecore.engine.core import CycleOutcome, TradingEngine
from tradecore.execution.mt5 import MT5Broker, MT5Settings

log = logging.getLogger(__name__)


def poll_once(engine: TradingEngine, broker: MT5Broker) -> list[CycleOutcome]:
    """One polling step: bar-close work first, then tick management."""
    cfg = engine.controller.config
    outcomes = []

    bars = broker.get_recent_bars(cfg.instrument, cfg.timeframe, 1)
    if bars.ok and bars.value:
        latest = bars.value[-1]
        last = engine.state.last_bar_time
        if last is None or latest.open_time > last:
            outcomes.append(engine.on_bar_closed(latest))
    elif not bars.ok:
        log.warning("Bar poll failed: %s", bars.message)

    quote = broker.get_quote(cfg.instrument)
    if quote.ok:
        outcomes.append(engine.on_tick(quote.value))
    else:
        log.warning("Quote poll failed: %s", quote.message)
    return outcomes


def run_live(config_path: str, max_polls: Optional[int] = None) -> None:
    """Connect, bootstrap state from the terminal, and poll until stopped."""
    with open(Path(config_path), "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f)

    engine_cfg = EngineConfig.from_dict(cfg)
    poll_seconds = float(cfg.get("poll_seconds", 1.0))
    broker = MT5Broker(
        engine_cfg.instrument, engine_cfg.strategy_id, MT5Settings.from_dict(cfg.get("mt5"))
    )

    broker.connect()
    try:
        engine = TradingEngine.configure(engine_cfg, broker, broker, broker)
        engine.bootstrap(pd.Timestamp.now(tz="UTC"))
        log.info("Live loop on %s %s every %.1fs",
                 engine_cfg.instrument, engine_cfg.timeframe, poll_seconds)

        polls = 0
        while max_polls is None or polls < max_polls:
            for out in poll_once(engine, broker):
                for err in out.errors:
                    log.warning("%s: %s", err.kind.value, err.message)
            polls += 1
            time.sleep(poll_seconds)
    except KeyboardInterrupt:
        log.info("Interrupted — shutting down")
    finally:
        broker.disconnect()
