"""Type definitions for the bar replay backtest engine."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, time
from enum import Enum
from typing import Any, Optional

import structlog

from barreplay.utils.time import parse_time_of_day, validate_timezone

from .errors import ConfigurationError

logger = structlog.get_logger(__name__)


class StopMode(str, Enum):
    """Initial stop placement."""

    REFERENCE_LOW = "reference_low"
    FIXED = "fixed"
    ENTRY_LOW = "entry_low"


class SameBarPolicy(str, Enum):
    """How an entry bar that also reaches the stop is treated."""

    WICK_TOLERANT = "wick_tolerant"
    REJECT_AMBIGUOUS = "reject_ambiguous"


class ExitReason(str, Enum):
    """Why a trade was closed."""

    STOP_LOSS = "Stop Loss Hit"
    TRAILING_STOP = "Trailing Stop Hit"
    TARGET = "Target Hit"
    TIME_EXIT = "Time Exit"
    END_OF_DATA = "End of Data"


@dataclass(frozen=True)
class Bar:
    """One OHLC(V) sample. Frozen so reference bars are safe snapshots."""

    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    open_interest: float = 0.0

    @property
    def is_bearish(self) -> bool:
        return self.open > self.close

    @property
    def is_bullish(self) -> bool:
        return self.close > self.open

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
            "open_interest": self.open_interest,
        }


# Original UI parameter names -> field names
_PARAM_ALIASES: dict[str, str] = {
    "initialSL": "initial_stop_mode",
    "initialStopMode": "initial_stop_mode",
    "fixedSLPoints": "fixed_stop_points",
    "fixedStopPoints": "fixed_stop_points",
    "trailingEnabled": "trailing_enabled",
    "trailingTrigger": "trailing_trigger",
    "trailingBy": "trailing_step",
    "trailingStep": "trailing_step",
    "costToCost": "cost_to_cost",
    "profitTarget": "profit_target",
    "timeExit": "time_exit_cutoff",
    "timeExitCutoff": "time_exit_cutoff",
    "sameBarPolicy": "same_bar_policy",
    "sessionTimezone": "session_timezone",
}


def _as_float(name: str, value: Any) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(
            f"Parameter '{name}' must be numeric, got {value!r}",
            {"param": name, "value": value},
        )
    if not math.isfinite(result):
        raise ConfigurationError(
            f"Parameter '{name}' must be finite, got {value!r}",
            {"param": name, "value": value},
        )
    return result


def _as_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value.strip().lower() in ("true", "1", "yes", "on"):
        return True
    if isinstance(value, str) and value.strip().lower() in ("false", "0", "no", "off"):
        return False
    raise ConfigurationError(
        f"Parameter '{name}' must be a boolean, got {value!r}",
        {"param": name, "value": value},
    )


@dataclass(frozen=True)
class Parameters:
    """Run parameters. Fixed for the lifetime of a run."""

    initial_stop_mode: str = StopMode.REFERENCE_LOW.value
    fixed_stop_points: float = 10.0
    trailing_enabled: bool = True
    trailing_trigger: float = 5.0
    trailing_step: float = 5.0
    cost_to_cost: bool = True
    profit_target: Optional[float] = None
    time_exit_cutoff: Optional[time] = None
    same_bar_policy: str = SameBarPolicy.WICK_TOLERANT.value
    session_timezone: Optional[str] = None
    warnings: tuple[str, ...] = field(default=(), compare=False)

    def __post_init__(self) -> None:
        # Instances built directly skip from_dict; repair the values that
        # would otherwise fault mid-run
        repaired: list[str] = []
        if self.trailing_enabled and self.trailing_step <= 0:
            repaired.append(
                f"Parameter 'trailing_step' must be > 0, got {self.trailing_step}; "
                "trailing disabled"
            )
            object.__setattr__(self, "trailing_enabled", False)
        if self.session_timezone is not None:
            try:
                _parse_timezone("session_timezone", self.session_timezone)
            except ConfigurationError as e:
                repaired.append(f"{e.message}; using bar timestamp offsets")
                object.__setattr__(self, "session_timezone", None)
        if repaired:
            for w in repaired:
                logger.warning("Parameter fallback", detail=w)
            object.__setattr__(self, "warnings", tuple(self.warnings) + tuple(repaired))

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Parameters:
        """Build parameters, falling back to defaults on bad values.

        Accepts snake_case field names and the legacy camelCase names (``initialSL``,
        ``timeExit``, ...). Every fallback is recorded in ``warnings``.
        """
        raw: dict[str, Any] = {}
        for key, value in d.items():
            raw[_PARAM_ALIASES.get(key, key)] = value

        defaults = cls()
        warnings: list[str] = []
        values: dict[str, Any] = {}

        def _take(name: str, parse) -> None:
            value = raw.get(name)
            if value is None:
                return
            try:
                values[name] = parse(name, value)
            except ConfigurationError as e:
                warnings.append(f"{e.message}; using default {getattr(defaults, name)!r}")

        _take("initial_stop_mode", _parse_stop_mode)
        _take("fixed_stop_points", _as_float)
        _take("trailing_enabled", _as_bool)
        _take("trailing_trigger", _as_float)
        _take("trailing_step", _as_float)
        _take("cost_to_cost", _as_bool)
        _take("profit_target", _parse_profit_target)
        _take("time_exit_cutoff", _parse_cutoff)
        _take("same_bar_policy", _parse_same_bar_policy)
        _take("session_timezone", _parse_timezone)

        # Disabled-by-falsy values (0, "") arrive here as explicit None
        for name in ("profit_target", "time_exit_cutoff", "session_timezone"):
            if name in values and values[name] is None:
                values.pop(name)

        trailing_enabled = values.get("trailing_enabled", defaults.trailing_enabled)
        trailing_step = values.get("trailing_step", defaults.trailing_step)
        if trailing_enabled and trailing_step <= 0:
            warnings.append(
                f"Parameter 'trailing_step' must be > 0, got {trailing_step}; "
                "trailing disabled"
            )
            values["trailing_enabled"] = False

        unknown = sorted(set(raw) - set(cls.__dataclass_fields__) - {"warnings"})
        if unknown:
            warnings.append(f"Ignored unknown parameters: {unknown}")

        for w in warnings:
            logger.warning("Parameter fallback", detail=w)

        return cls(**values, warnings=tuple(warnings))

    def to_dict(self) -> dict[str, Any]:
        return {
            "initial_stop_mode": self.initial_stop_mode,
            "fixed_stop_points": self.fixed_stop_points,
            "trailing_enabled": self.trailing_enabled,
            "trailing_trigger": self.trailing_trigger,
            "trailing_step": self.trailing_step,
            "cost_to_cost": self.cost_to_cost,
            "profit_target": self.profit_target,
            "time_exit_cutoff": (
                self.time_exit_cutoff.strftime("%H:%M:%S")
                if self.time_exit_cutoff
                else None
            ),
            "same_bar_policy": self.same_bar_policy,
            "session_timezone": self.session_timezone,
        }


def _parse_profit_target(name: str, value: Any) -> Optional[float]:
    target = _as_float(name, value)
    if target < 0:
        raise ConfigurationError(
            f"Parameter '{name}' must be >= 0, got {value!r}",
            {"param": name, "value": value},
        )
    # 0 means "no target"
    return target or None


def _parse_cutoff(name: str, value: Any) -> Optional[time]:
    if isinstance(value, str) and not value.strip():
        return None
    try:
        return parse_time_of_day(value)
    except ValueError as e:
        raise ConfigurationError(str(e), {"param": name, "value": value})


def _parse_same_bar_policy(name: str, value: Any) -> str:
    policy = str(value).strip().lower()
    valid = [p.value for p in SameBarPolicy]
    if policy not in valid:
        raise ConfigurationError(
            f"Unknown {name} '{value}'. Valid: {valid}",
            {"param": name, "value": value},
        )
    return policy


def _parse_stop_mode(name: str, value: Any) -> str:
    mode = str(value).strip().lower()
    valid = [m.value for m in StopMode]
    if mode not in valid:
        raise ConfigurationError(
            f"Unknown {name} '{value}'. Valid: {valid}",
            {"param": name, "value": value},
        )
    return mode


def _parse_timezone(name: str, value: Any) -> Optional[str]:
    if isinstance(value, str) and not value.strip():
        return None
    try:
        return validate_timezone(value)
    except ValueError as e:
        raise ConfigurationError(str(e), {"param": name, "value": value})


@dataclass(frozen=True)
class TrailingStopUpdate:
    """One upward move of the trailing stop."""

    time: datetime
    profit: float
    new_stop: float
    steps: int


@dataclass(frozen=True)
class ExitDecision:
    """Result of a lifecycle manager exit check."""

    exit_price: float
    reason: ExitReason
    time: datetime

    @property
    def is_stop(self) -> bool:
        return self.reason in (ExitReason.STOP_LOSS, ExitReason.TRAILING_STOP)


@dataclass(frozen=True)
class Trade:
    """Completed trade record."""

    entry_time: datetime
    entry_price: float
    exit_time: datetime
    exit_price: float
    pl: float
    exit_reason: ExitReason
    initial_stop: float
    final_stop: float
    trailing_history: tuple[TrailingStopUpdate, ...]
    highest_profit: float
    reference_bar: Bar
    entry_bar: Bar

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_time": self.entry_time.isoformat(),
            "entry_price": self.entry_price,
            "exit_time": self.exit_time.isoformat(),
            "exit_price": self.exit_price,
            "pl": self.pl,
            "exit_reason": self.exit_reason.value,
            "initial_stop": self.initial_stop,
            "final_stop": self.final_stop,
            "trailing_history": [
                {
                    "time": u.time.isoformat(),
                    "profit": u.profit,
                    "new_stop": u.new_stop,
                    "steps": u.steps,
                }
                for u in self.trailing_history
            ],
            "highest_profit": self.highest_profit,
            "reference_bar": self.reference_bar.to_dict(),
            "entry_bar": self.entry_bar.to_dict(),
        }


@dataclass(frozen=True)
class SkippedSetup:
    """A detected entry that was rejected instead of traded."""

    timestamp: datetime
    bar_index: int
    entry_price: float
    initial_stop: float
    reference_bar: Bar
    entry_bar: Bar
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "bar_index": self.bar_index,
            "entry_price": self.entry_price,
            "initial_stop": self.initial_stop,
            "reference_bar": self.reference_bar.to_dict(),
            "entry_bar": self.entry_bar.to_dict(),
            "reason": self.reason,
        }


@dataclass
class RunSummary:
    """Aggregate statistics over a closed-trade ledger."""

    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    net_pl: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    win_rate: float = 0.0
    max_drawdown: float = 0.0
    skipped_setups: int = 0
    exit_breakdown: dict[str, int] = field(default_factory=dict)
    total_bars: int = 0
    start_time: str = ""
    end_time: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_trades": self.total_trades,
            "winning_trades": self.winning_trades,
            "losing_trades": self.losing_trades,
            "net_pl": self.net_pl,
            "avg_win": self.avg_win,
            "avg_loss": self.avg_loss,
            "largest_win": self.largest_win,
            "largest_loss": self.largest_loss,
            "win_rate": self.win_rate,
            "max_drawdown": self.max_drawdown,
            "skipped_setups": self.skipped_setups,
            "exit_breakdown": dict(self.exit_breakdown),
            "total_bars": self.total_bars,
            "start_time": self.start_time,
            "end_time": self.end_time,
        }


@dataclass
class RunResult:
    """Result of one replay run."""

    trades: list[Trade]
    skipped_setups: list[SkippedSetup]
    summary: RunSummary
    events: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "trades": [t.to_dict() for t in self.trades],
            "skipped_setups": [s.to_dict() for s in self.skipped_setups],
            "summary": self.summary.to_dict(),
            "warnings": list(self.warnings),
        }
