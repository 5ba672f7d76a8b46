"""Unified entry point for tradecore modules."""

import argparse
import logging
import sys

log = logging.getLogger(__name__)


def main():
    if len(sys.argv) < 2:
        logging.basicConfig(level=logging.INFO)
        log.error("Usage: python -m tradecore <module> [args...]")
        log.error("Available modules:")
        log.error("  backtest  - Replay a bar snapshot through the engine")
        log.error("  live      - Trade from a running MetaTrader 5 terminal")
        sys.exit(1)

    module = sys.argv[1]
    if module not in ("backtest", "live"):
        logging.basicConfig(level=logging.INFO)
        log.error("Unknown module: %s", module)
        sys.exit(1)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(message)s",
        datefmt="%H:%M:%S",
    )
    p = argparse.ArgumentParser(prog=f"tradecore {module}")
    p.add_argument("--config", required=True, help="Path to YAML config file")
    args = p.parse_args(sys.argv[2:])

    from tradecore.errors import ConfigurationInvalid

    try:
        if module == "backtest":
            from tradecore.engine.runner import run_backtest
            run_id = run_backtest(args.config)
            log.info("Finished — run_id: %s", run_id)
        else:
            from tradecore.engine.live import run_live
            run_live(args.config)
    except ConfigurationInvalid as exc:
        for problem in exc.problems:
            log.error("config: %s", problem)
        sys.exit(2)


if __name__ == "__main__":
    main()
