"""Grid search over replay parameters.

Every combination runs with its own Parameters, session and lifecycle
manager, so trials never share state.
"""

import itertools
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence, Union

import structlog

from barreplay.services.backtest.engines.bar_replay.engine import run_backtest
from barreplay.services.backtest.engines.bar_replay.types import (
    Bar,
    Parameters,
    RunSummary,
)
from barreplay.services.strategy.strategies.base import StrategyDescriptor

logger = structlog.get_logger(__name__)

MAX_GRID_SIZE = 500

OBJECTIVES = ("net_pl", "win_rate", "avg_trade")


@dataclass
class SweepTrial:
    """One evaluated parameter combination."""

    trial_index: int
    params: dict[str, Any]
    summary: RunSummary
    score: float
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "trial_index": self.trial_index,
            "params": dict(self.params),
            "score": self.score,
            "summary": self.summary.to_dict(),
            "warnings": list(self.warnings),
        }


def compute_objective(summary: RunSummary, objective: str) -> float:
    """Score a run summary. Higher is better."""
    if objective == "net_pl":
        return summary.net_pl
    if objective == "win_rate":
        return summary.win_rate
    if objective == "avg_trade":
        if summary.total_trades == 0:
            return 0.0
        return round(summary.net_pl / summary.total_trades, 2)
    raise ValueError(f"Unknown objective '{objective}'. Valid: {list(OBJECTIVES)}")


def expand_grid(grid: dict[str, Any], max_trials: int = MAX_GRID_SIZE) -> list[dict[str, Any]]:
    """
    Expand a parameter grid into combinations.

    Values may be a list of candidates, a ``{"min", "max"}`` range
    (discretized to 5 points) or a single fixed value.
    """
    param_lists: dict[str, list[Any]] = {}
    for name, spec in grid.items():
        if isinstance(spec, (list, tuple)):
            param_lists[name] = list(spec)
        elif isinstance(spec, dict) and "min" in spec and "max" in spec:
            min_val = spec["min"]
            max_val = spec["max"]
            step = (max_val - min_val) / 4
            param_lists[name] = [min_val + i * step for i in range(5)]
        else:
            param_lists[name] = [spec]

    grid_size = 1
    for values in param_lists.values():
        grid_size *= len(values)

    if grid_size > max_trials:
        logger.warning(
            "Grid size exceeds maximum, truncating",
            grid_size=grid_size,
            max_size=max_trials,
        )

    names = list(param_lists.keys())
    combinations = []
    for values in itertools.product(*(param_lists[n] for n in names)):
        if len(combinations) >= max_trials:
            break
        combinations.append(dict(zip(names, values)))
    return combinations


def run_parameter_sweep(
    bars: Sequence[Bar],
    strategy: StrategyDescriptor,
    base_params: Union[Parameters, dict[str, Any], None],
    grid: dict[str, Any],
    objective: str = "net_pl",
    top_n: Optional[int] = 10,
    session_options: Optional[dict[str, Any]] = None,
    max_trials: int = MAX_GRID_SIZE,
) -> list[SweepTrial]:
    """
    Run one replay per grid combination and rank by objective.

    Args:
        bars: Chronological bars shared by every trial
        strategy: Strategy to replay
        base_params: Parameters the grid values are layered over
        grid: Parameter name -> candidate values
        objective: "net_pl", "win_rate" or "avg_trade"
        top_n: Number of best trials to return (None for all)
        session_options: Extra keyword arguments for each session
        max_trials: Cap on the number of combinations evaluated

    Returns:
        Trials sorted best-first; ties keep grid order
    """
    if objective not in OBJECTIVES:
        raise ValueError(f"Unknown objective '{objective}'. Valid: {list(OBJECTIVES)}")

    if isinstance(base_params, Parameters):
        base = base_params.to_dict()
    else:
        base = dict(base_params or {})

    combinations = expand_grid(grid, max_trials=max_trials)
    logger.info(
        "Starting parameter sweep",
        strategy=strategy.id,
        trials=len(combinations),
        objective=objective,
    )

    trials: list[SweepTrial] = []
    for idx, combo in enumerate(combinations):
        params = Parameters.from_dict({**base, **combo})
        result = run_backtest(bars, strategy, params, session_options=session_options)
        trials.append(
            SweepTrial(
                trial_index=idx,
                params=combo,
                summary=result.summary,
                score=compute_objective(result.summary, objective),
                warnings=result.warnings,
            )
        )

    ranked = sorted(trials, key=lambda t: t.score, reverse=True)

    if ranked:
        logger.info(
            "Parameter sweep complete",
            strategy=strategy.id,
            trials=len(ranked),
            best_score=ranked[0].score,
            best_params=ranked[0].params,
        )

    return ranked if top_n is None else ranked[:top_n]
