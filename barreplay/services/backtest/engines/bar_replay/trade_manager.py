"""Trade lifecycle: initial stop, trailing stop, target, time exit."""

from __future__ import annotations

import math
from datetime import datetime
from typing import Optional

import structlog

from barreplay.utils.time import local_time_of_day

from .contracts import SOURCE_ENGINE, TraceFn, make_event, resolve_trace
from .errors import AmbiguousBarError, ReplayError
from .types import (
    Bar,
    ExitDecision,
    ExitReason,
    Parameters,
    StopMode,
    Trade,
    TrailingStopUpdate,
)

logger = structlog.get_logger(__name__)

# Guards floor() against float noise, e.g. (12.000000001 - 5) / 5
_STEP_EPSILON = 1e-9


class TradeLifecycleManager:
    """Owns one long position from entry to exit.

    A fresh manager is built for every trade. Exit checks always use the
    stop as it stood before the bar; trailing moves computed from a bar
    only apply from the next bar on.
    """

    def __init__(self, params: Parameters, trace: Optional[TraceFn] = None):
        self.params = params
        self._trace = resolve_trace(trace)
        self.entry_price: float = 0.0
        self.entry_time: Optional[datetime] = None
        self.reference_bar: Optional[Bar] = None
        self.entry_bar: Optional[Bar] = None
        self.initial_stop: float = 0.0
        self.current_stop: float = 0.0
        self.highest_profit: float = 0.0
        self.trailing_history: list[TrailingStopUpdate] = []

    def enter(
        self,
        entry_price: float,
        entry_time: datetime,
        reference_bar: Bar,
        entry_bar: Bar,
    ) -> None:
        self.entry_price = entry_price
        self.entry_time = entry_time
        self.reference_bar = reference_bar
        self.entry_bar = entry_bar
        self.initial_stop = self.compute_initial_stop(
            self.params, entry_price, reference_bar, entry_bar
        )
        self.current_stop = self.initial_stop
        self.highest_profit = 0.0
        self.trailing_history = []

    @staticmethod
    def compute_initial_stop(
        params: Parameters,
        entry_price: float,
        reference_bar: Bar,
        entry_bar: Bar,
    ) -> float:
        """Initial stop for the configured mode.

        Unknown modes fall back to the reference bar low.
        """
        mode = params.initial_stop_mode
        if mode == StopMode.FIXED.value:
            return entry_price - params.fixed_stop_points
        if mode == StopMode.ENTRY_LOW.value:
            return entry_bar.low
        if mode != StopMode.REFERENCE_LOW.value:
            logger.warning(
                "Unknown initial stop mode, using reference_low",
                initial_stop_mode=mode,
            )
        return reference_bar.low

    @classmethod
    def check_entry_collision(
        cls,
        params: Parameters,
        entry_price: float,
        reference_bar: Bar,
        entry_bar: Bar,
    ) -> None:
        """Raise AmbiguousBarError if the entry bar spans entry and stop.

        With both levels inside one bar, OHLC alone cannot tell whether
        the fill or the stop came first.
        """
        stop = cls.compute_initial_stop(params, entry_price, reference_bar, entry_bar)
        if entry_bar.low <= stop and entry_bar.high >= entry_price:
            raise AmbiguousBarError(
                "Entry and stop both hit in the same bar (ambiguous)",
                {"entry_price": entry_price, "initial_stop": stop},
            )

    def check_exit(self, bar: Bar, bar_index: int = -1) -> Optional[ExitDecision]:
        """Evaluate exits for one bar. First match wins.

        1. Stop (initial or trailed)
        2. Profit target
        3. Time-of-day cutoff
        Without an exit, the trailing stop is updated for the next bar.
        """
        self.highest_profit = max(self.highest_profit, bar.high - self.entry_price)

        if bar.low <= self.current_stop:
            reason = (
                ExitReason.STOP_LOSS
                if self.current_stop == self.initial_stop
                else ExitReason.TRAILING_STOP
            )
            return ExitDecision(self.current_stop, reason, bar.timestamp)

        if self.params.profit_target:
            target_price = self.entry_price + self.params.profit_target
            if bar.high >= target_price:
                return ExitDecision(target_price, ExitReason.TARGET, bar.timestamp)

        cutoff = self.params.time_exit_cutoff
        if cutoff is not None:
            if local_time_of_day(bar.timestamp, self.params.session_timezone) >= cutoff:
                return ExitDecision(bar.close, ExitReason.TIME_EXIT, bar.timestamp)

        if self.params.trailing_enabled:
            self._update_trailing_stop(bar, bar_index)

        return None

    def _update_trailing_stop(self, bar: Bar, bar_index: int) -> None:
        p = self.params
        profit = bar.high - self.entry_price
        if profit < p.trailing_trigger:
            return

        # Whole steps above the trigger; large bars can jump several at once
        steps = math.floor((profit - p.trailing_trigger) / p.trailing_step + _STEP_EPSILON)
        if p.cost_to_cost:
            candidate = self.entry_price + p.trailing_step * steps
        else:
            candidate = (
                self.entry_price
                + (p.trailing_trigger - p.trailing_step)
                + p.trailing_step * steps
            )

        if candidate <= self.current_stop:
            return

        self.current_stop = candidate
        update = TrailingStopUpdate(
            time=bar.timestamp,
            profit=round(profit, 2),
            new_stop=candidate,
            steps=steps,
        )
        self.trailing_history.append(update)
        self._trace(
            make_event(
                "stop_trailed",
                bar_index,
                bar,
                "in_trade",
                SOURCE_ENGINE,
                profit=update.profit,
                new_stop=candidate,
                steps=steps,
            )
        )

    def get_summary(
        self,
        exit_price: float,
        exit_reason: ExitReason,
        exit_time: datetime,
    ) -> Trade:
        """Freeze the position into a Trade record."""
        if self.entry_time is None or self.reference_bar is None or self.entry_bar is None:
            raise ReplayError("get_summary called before enter")
        return Trade(
            entry_time=self.entry_time,
            entry_price=self.entry_price,
            exit_time=exit_time,
            exit_price=exit_price,
            pl=round(exit_price - self.entry_price, 2),
            exit_reason=exit_reason,
            initial_stop=self.initial_stop,
            final_stop=self.current_stop,
            trailing_history=tuple(self.trailing_history),
            highest_profit=self.highest_profit,
            reference_bar=self.reference_bar,
            entry_bar=self.entry_bar,
        )
