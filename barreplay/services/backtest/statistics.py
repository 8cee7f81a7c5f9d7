"""Summary statistics over a closed-trade ledger.

Pure functions: no logging, no state. An empty ledger produces a fully
zero-filled summary so callers never special-case "no trades".
"""

from typing import Sequence

import numpy as np

from barreplay.services.backtest.engines.bar_replay.types import (
    Bar,
    RunSummary,
    SkippedSetup,
    Trade,
)


def max_drawdown(pls: Sequence[float]) -> float:
    """Largest peak-to-trough fall of cumulative P/L (>= 0).

    The curve starts at 0 before the first trade.
    """
    if not pls:
        return 0.0
    equity = np.concatenate(([0.0], np.cumsum(np.asarray(pls, dtype=float))))
    peaks = np.maximum.accumulate(equity)
    return round(float((peaks - equity).max()), 2)


def summarize(
    trades: Sequence[Trade],
    skipped_setups: Sequence[SkippedSetup],
    bars: Sequence[Bar],
) -> RunSummary:
    """Reduce the ledger to a RunSummary.

    Winners are trades with pl > 0; everything else (break-even included)
    counts as a loss.
    """
    summary = RunSummary(
        skipped_setups=len(skipped_setups),
        total_bars=len(bars),
        start_time=bars[0].timestamp.isoformat() if bars else "",
        end_time=bars[-1].timestamp.isoformat() if bars else "",
    )
    if not trades:
        return summary

    pls = [t.pl for t in trades]
    wins = [pl for pl in pls if pl > 0]
    losses = [pl for pl in pls if pl <= 0]

    exit_breakdown: dict[str, int] = {}
    for t in trades:
        key = t.exit_reason.value
        exit_breakdown[key] = exit_breakdown.get(key, 0) + 1

    summary.total_trades = len(trades)
    summary.winning_trades = len(wins)
    summary.losing_trades = len(losses)
    summary.net_pl = round(sum(pls), 2)
    summary.avg_win = round(sum(wins) / len(wins), 2) if wins else 0.0
    summary.avg_loss = round(sum(losses) / len(losses), 2) if losses else 0.0
    summary.largest_win = round(max(wins), 2) if wins else 0.0
    summary.largest_loss = round(min(losses), 2) if losses else 0.0
    summary.win_rate = round(len(wins) / len(trades), 4)
    summary.max_drawdown = max_drawdown(pls)
    summary.exit_breakdown = exit_breakdown
    return summary
