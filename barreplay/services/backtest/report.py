"""Plain-text rendering of replay results."""

from typing import Optional

from barreplay.services.backtest.engines.bar_replay.types import Parameters, RunResult


def format_backtest_report(
    result: RunResult,
    strategy_name: str,
    params: Optional[Parameters] = None,
    show_trades: bool = True,
) -> str:
    """Format backtest results as a readable report."""
    s = result.summary
    lines = []
    lines.append("=" * 70)
    lines.append(f"BAR REPLAY BACKTEST REPORT - {strategy_name}")
    lines.append("=" * 70)
    lines.append(f"Period: {s.start_time or '-'} to {s.end_time or '-'}")
    lines.append(f"Total bars analyzed: {s.total_bars}")
    lines.append("")

    if params is not None:
        lines.append("-" * 40)
        lines.append("PARAMETERS")
        lines.append("-" * 40)
        lines.append(f"Initial stop:          {params.initial_stop_mode}")
        if params.initial_stop_mode == "fixed":
            lines.append(f"Fixed stop points:     {params.fixed_stop_points}")
        if params.trailing_enabled:
            mode = "cost-to-cost" if params.cost_to_cost else "trigger offset"
            lines.append(
                f"Trailing:              trigger {params.trailing_trigger}, "
                f"step {params.trailing_step} ({mode})"
            )
        else:
            lines.append("Trailing:              disabled")
        target = f"{params.profit_target}" if params.profit_target else "disabled"
        lines.append(f"Profit target:         {target}")
        cutoff = (
            params.time_exit_cutoff.strftime("%H:%M")
            if params.time_exit_cutoff
            else "disabled"
        )
        lines.append(f"Time exit:             {cutoff}")
        lines.append(f"Same-bar policy:       {params.same_bar_policy}")
        lines.append("")

    lines.append("-" * 40)
    lines.append("TRADE RESULTS")
    lines.append("-" * 40)
    lines.append(f"Total trades:          {s.total_trades}")
    lines.append(f"Wins / Losses:         {s.winning_trades} / {s.losing_trades}")
    lines.append(f"Win rate:              {s.win_rate * 100:.1f}%")
    lines.append(f"Net P/L (points):      {s.net_pl:+.2f}")
    lines.append(f"Average win:           {s.avg_win:+.2f}")
    lines.append(f"Average loss:          {s.avg_loss:+.2f}")
    lines.append(f"Largest win:           {s.largest_win:+.2f}")
    lines.append(f"Largest loss:          {s.largest_loss:+.2f}")
    lines.append(f"Max drawdown:          {s.max_drawdown:.2f}")
    lines.append(f"Skipped setups:        {s.skipped_setups}")
    lines.append("")

    if s.exit_breakdown:
        lines.append("-" * 40)
        lines.append("EXIT BREAKDOWN")
        lines.append("-" * 40)
        for reason, count in sorted(s.exit_breakdown.items(), key=lambda kv: -kv[1]):
            lines.append(f"{reason:<22} {count}")
        lines.append("")

    if show_trades and result.trades:
        lines.append("-" * 40)
        lines.append("TRADES")
        lines.append("-" * 40)
        for i, t in enumerate(result.trades, 1):
            lines.append(
                f"#{i:<3} {t.entry_time.strftime('%Y-%m-%d %H:%M')} "
                f"@ {t.entry_price:.2f} -> {t.exit_time.strftime('%H:%M')} "
                f"@ {t.exit_price:.2f}  {t.pl:+.2f}  {t.exit_reason.value}"
            )
        lines.append("")

    if result.warnings:
        lines.append("-" * 40)
        lines.append("WARNINGS")
        lines.append("-" * 40)
        for w in result.warnings:
            lines.append(f"- {w}")
        lines.append("")

    lines.append("=" * 70)
    return "\n".join(lines)
