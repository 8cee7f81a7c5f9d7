#!/usr/bin/env python3
"""
CLI script to replay a bar CSV through an entry strategy.

Usage:
    python scripts/run_backtest.py --csv data/nifty_1m.csv --strategy red_candle_high_break

CSV format expected (any row order; newest-first exports are re-sorted):
    timestamp,open,high,low,close,volume,oi
    2025-11-19T09:15:00+0530,95.00,96.70,92.10,93.20,12000,0
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Optional

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import structlog

from barreplay.config import get_settings
from barreplay.core.logging import configure_logging
from barreplay.services.backtest.data import parse_bars_csv
from barreplay.services.backtest.engines.bar_replay.engine import run_backtest
from barreplay.services.backtest.engines.bar_replay.errors import DataError
from barreplay.services.backtest.engines.bar_replay.types import (
    Parameters,
    SameBarPolicy,
    StopMode,
)
from barreplay.services.backtest.report import format_backtest_report
from barreplay.services.strategy.registry import get_strategy, list_strategies

logger = structlog.get_logger(__name__)


def build_parser(default_strategy: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Replay OHLC bars through an entry strategy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Default parameters
    python scripts/run_backtest.py --csv data/option_1m.csv

    # Fixed 15 point stop, target 20, flat by 09:40
    python scripts/run_backtest.py --csv data/option_1m.csv --stop-mode fixed \\
        --fixed-stop 15 --target 20 --time-exit 09:40

    # Skip entries whose bar also reaches the stop
    python scripts/run_backtest.py --csv data/option_1m.csv --same-bar-policy reject_ambiguous
        """,
    )
    parser.add_argument("--csv", help="Path to bar CSV file")
    parser.add_argument(
        "--strategy",
        default=default_strategy,
        help=f"Strategy id (default: {default_strategy})",
    )
    parser.add_argument(
        "--stop-mode",
        choices=[m.value for m in StopMode],
        default=None,
        help="Initial stop placement",
    )
    parser.add_argument("--fixed-stop", type=float, default=None, help="Points below entry for fixed stop")
    parser.add_argument("--no-trailing", action="store_true", help="Disable trailing stop")
    parser.add_argument("--trailing-trigger", type=float, default=None, help="Profit that engages trailing")
    parser.add_argument("--trailing-step", type=float, default=None, help="Trailing stop step size")
    parser.add_argument(
        "--no-cost-to-cost",
        action="store_true",
        help="First trail moves stop to entry + (trigger - step) instead of entry",
    )
    parser.add_argument("--target", type=float, default=None, help="Profit target in points")
    parser.add_argument("--time-exit", default=None, help="Exit cutoff time (HH:MM)")
    parser.add_argument(
        "--same-bar-policy",
        choices=[p.value for p in SameBarPolicy],
        default=None,
        help="Handling of entry bars that also reach the stop",
    )
    parser.add_argument(
        "--volatility-threshold",
        type=float,
        default=None,
        help="Volatile-bar threshold for red_green_flexible",
    )
    parser.add_argument("--list-strategies", action="store_true", help="List strategies and exit")
    parser.add_argument("--no-trades", action="store_true", help="Omit per-trade lines from the report")
    parser.add_argument("--json", action="store_true", help="Output results as JSON")
    return parser


def params_from_args(args: argparse.Namespace, settings) -> dict:
    """Collect run parameters, letting CLI flags override settings defaults."""
    params: dict = {
        "initial_stop_mode": args.stop_mode or settings.default_initial_stop_mode,
        "time_exit_cutoff": args.time_exit or settings.default_time_exit,
        "session_timezone": settings.session_timezone,
    }
    if args.fixed_stop is not None:
        params["fixed_stop_points"] = args.fixed_stop
    if args.no_trailing:
        params["trailing_enabled"] = False
    if args.trailing_trigger is not None:
        params["trailing_trigger"] = args.trailing_trigger
    if args.trailing_step is not None:
        params["trailing_step"] = args.trailing_step
    if args.no_cost_to_cost:
        params["cost_to_cost"] = False
    if args.target is not None:
        params["profit_target"] = args.target
    if args.same_bar_policy:
        params["same_bar_policy"] = args.same_bar_policy
    return params


def main(argv: Optional[list[str]] = None) -> int:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)

    parser = build_parser(settings.default_strategy)
    args = parser.parse_args(argv)

    if args.list_strategies:
        for s in list_strategies():
            print(f"{s.id:<24} {s.name} - {s.description}")
        return 0

    if not args.csv:
        parser.error("--csv is required unless --list-strategies is given")

    try:
        strategy = get_strategy(args.strategy)
    except KeyError as e:
        parser.error(str(e.args[0]))

    path = Path(args.csv)
    if not path.exists():
        print(f"Error: file not found: {path}", file=sys.stderr)
        return 1

    try:
        parsed = parse_bars_csv(
            path.read_bytes(),
            filename=path.name,
            max_rows=settings.max_rows,
            max_file_size_mb=settings.max_file_size_mb,
        )
    except DataError as e:
        logger.error("Failed to load bars", filename=path.name, error=e.message, **e.details)
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    session_options = {}
    if strategy.id == "red_green_flexible":
        session_options["volatility_threshold"] = (
            args.volatility_threshold
            if args.volatility_threshold is not None
            else settings.volatility_threshold
        )

    params = Parameters.from_dict(params_from_args(args, settings))
    result = run_backtest(parsed.bars, strategy, params, session_options=session_options)
    result.warnings[:0] = parsed.warnings

    if args.json:
        output = result.to_dict()
        output["strategy"] = strategy.id
        output["parameters"] = params.to_dict()
        print(json.dumps(output, indent=2))
    else:
        print(
            format_backtest_report(
                result, strategy.name, params=params, show_trades=not args.no_trades
            )
        )
    return 0


if __name__ == "__main__":
    sys.exit(main())
