"""
Four Red Candle Break (bearish-run confirmation breakout).

Setup:
- At least 4 consecutive bearish bars; the last one is the reference.
- The first bullish bar after the run is the confirmation bar.
- Enter at the confirmation high if it is exceeded within 2 bars.
- A fresh 4+ run replaces the reference at any point before entry.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional, Sequence

from barreplay.services.backtest.engines.bar_replay.contracts import (
    TraceFn,
    resolve_trace,
)
from barreplay.services.backtest.engines.bar_replay.types import Bar

from .base import DEFAULT_MAX_WAIT_BARS, EntrySignal, StrategyDescriptor, emit

MIN_BEARISH_RUN = 4


class FourBearishPhase(Enum):
    SEEK_RUN = "seek_run"
    SEEK_CONFIRMATION = "seek_confirmation"
    WAIT_BREAKOUT = "wait_breakout"


def bearish_run_length(history: Sequence[Bar], index: int, limit: int) -> int:
    """Consecutive bearish bars ending at ``index``, counted up to ``limit``."""
    count = 0
    i = index
    while i >= 0 and count < limit and history[i].is_bearish:
        count += 1
        i -= 1
    return count


class FourBearishRunSession:
    def __init__(
        self,
        trace: Optional[TraceFn] = None,
        min_run: int = MIN_BEARISH_RUN,
        max_wait_bars: int = DEFAULT_MAX_WAIT_BARS,
    ):
        self._trace = resolve_trace(trace)
        self.min_run = min_run
        self.max_wait_bars = max_wait_bars
        self.reset()

    def reset(self) -> None:
        self.phase = FourBearishPhase.SEEK_RUN
        self.reference: Optional[Bar] = None
        self.confirmation: Optional[Bar] = None
        self.bars_since_confirmation = 0

    def on_exit(self) -> None:
        self.reset()

    def _ends_run(self, history: Sequence[Bar], index: int) -> bool:
        return index >= self.min_run - 1 and (
            bearish_run_length(history, index, self.min_run) >= self.min_run
        )

    def check_entry(
        self, bar: Bar, index: int, history: Sequence[Bar]
    ) -> Optional[EntrySignal]:
        if bar.is_bearish and self._ends_run(history, index):
            evt_type = (
                "reference_set"
                if self.phase == FourBearishPhase.SEEK_RUN
                else "reference_shifted"
            )
            self.reference = bar
            self.confirmation = None
            self.bars_since_confirmation = 0
            self.phase = FourBearishPhase.SEEK_CONFIRMATION
            emit(
                self._trace,
                evt_type,
                index,
                bar,
                self.phase.value,
                reference_high=bar.high,
                reference_low=bar.low,
                reference_type="bearish_run",
            )
            return None

        if self.phase == FourBearishPhase.SEEK_RUN:
            # Run completed on the previous bar while the session was reset
            if bar.is_bullish and index >= 1 and self._ends_run(history, index - 1):
                previous = history[index - 1]
                self.reference = previous
                emit(
                    self._trace,
                    "reference_set",
                    index,
                    bar,
                    self.phase.value,
                    reference_high=previous.high,
                    reference_low=previous.low,
                    reference_type="bearish_run",
                )
                self._set_confirmation(bar, index)
            return None

        if self.phase == FourBearishPhase.SEEK_CONFIRMATION:
            if bar.is_bullish:
                self._set_confirmation(bar, index)
            return None

        reference, confirmation = self.reference, self.confirmation
        assert reference is not None and confirmation is not None

        self.bars_since_confirmation += 1
        if bar.high > confirmation.high:
            emit(
                self._trace,
                "entry_signal",
                index,
                bar,
                self.phase.value,
                entry_price=confirmation.high,
                reference_high=reference.high,
                reference_low=reference.low,
            )
            return EntrySignal(
                entry_price=confirmation.high,
                reference_bar=reference,
                reference_type="bearish_run",
            )

        if self.bars_since_confirmation >= self.max_wait_bars:
            emit(
                self._trace,
                "reference_expired",
                index,
                bar,
                self.phase.value,
                bars_waited=self.bars_since_confirmation,
            )
            self.reset()
        return None

    def _set_confirmation(self, bar: Bar, index: int) -> None:
        assert self.reference is not None
        self.confirmation = bar
        self.bars_since_confirmation = 0
        self.phase = FourBearishPhase.WAIT_BREAKOUT
        emit(
            self._trace,
            "confirmation_set",
            index,
            bar,
            self.phase.value,
            confirmation_high=bar.high,
            reference_high=self.reference.high,
        )


FOUR_RED_CANDLE_BREAK = StrategyDescriptor(
    id="four_red_candle_break",
    name="Four Red Candle Break",
    description="Enter on break of green candle high after 4+ consecutive red candles",
    factory=FourBearishRunSession,
)
