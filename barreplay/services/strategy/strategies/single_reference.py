"""
Red Candle High Break (single-reference breakout).

Setup:
- Any bearish bar becomes the reference.
- While waiting, a newer bearish bar replaces the reference (shift).
- A non-bearish bar whose high exceeds the reference high enters at the
  reference high.
- The reference expires after 2 unsuccessful non-bearish bars.
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


class SingleReferencePhase(Enum):
    SEEK_REFERENCE = "seek_reference"
    WAIT_BREAKOUT = "wait_breakout"


class SingleReferenceBreakoutSession:
    def __init__(
        self,
        trace: Optional[TraceFn] = None,
        max_wait_bars: int = DEFAULT_MAX_WAIT_BARS,
    ):
        self._trace = resolve_trace(trace)
        self.max_wait_bars = max_wait_bars
        self.reset()

    def reset(self) -> None:
        self.phase = SingleReferencePhase.SEEK_REFERENCE
        self.reference: Optional[Bar] = None
        self.bars_since_reference = 0

    def on_exit(self) -> None:
        self.reset()

    def check_entry(
        self, bar: Bar, index: int, history: Sequence[Bar]
    ) -> Optional[EntrySignal]:
        if self.phase == SingleReferencePhase.SEEK_REFERENCE:
            if bar.is_bearish:
                self._set_reference(bar, index, "reference_set")
            return None

        reference = self.reference
        assert reference is not None

        if bar.is_bearish:
            self._set_reference(bar, index, "reference_shifted")
            return None

        if bar.high > reference.high:
            emit(
                self._trace,
                "entry_signal",
                index,
                bar,
                self.phase.value,
                entry_price=reference.high,
                reference_high=reference.high,
                reference_low=reference.low,
            )
            return EntrySignal(
                entry_price=reference.high,
                reference_bar=reference,
                reference_type="bearish",
            )

        self.bars_since_reference += 1
        if self.bars_since_reference >= self.max_wait_bars:
            emit(
                self._trace,
                "reference_expired",
                index,
                bar,
                self.phase.value,
                bars_waited=self.bars_since_reference,
            )
            self.reset()
        return None

    def _set_reference(self, bar: Bar, index: int, evt_type: str) -> None:
        self.reference = bar
        self.bars_since_reference = 0
        self.phase = SingleReferencePhase.WAIT_BREAKOUT
        emit(
            self._trace,
            evt_type,
            index,
            bar,
            self.phase.value,
            reference_high=bar.high,
            reference_low=bar.low,
            reference_type="bearish",
        )


RED_CANDLE_HIGH_BREAK = StrategyDescriptor(
    id="red_candle_high_break",
    name="Red Candle High Break",
    description="Enter when price breaks above the high of the latest red candle",
    factory=SingleReferenceBreakoutSession,
)
