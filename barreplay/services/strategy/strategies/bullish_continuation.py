"""
Green Candle Continuation.

Setup:
- The first bullish bar becomes the reference.
- Enter at the reference high if either of the next 2 bars exceeds it.
- On timeout, a bullish 2nd bar immediately becomes the new reference,
  so back-to-back setups are never skipped.
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


class BullishContinuationPhase(Enum):
    SEEK_REFERENCE = "seek_reference"
    WAIT_BREAKOUT = "wait_breakout"


class BullishContinuationSession:
    def __init__(
        self,
        trace: Optional[TraceFn] = None,
        max_wait_bars: int = DEFAULT_MAX_WAIT_BARS,
    ):
        self._trace = resolve_trace(trace)
        self.max_wait_bars = max_wait_bars
        self.reset()

    def reset(self) -> None:
        self.phase = BullishContinuationPhase.SEEK_REFERENCE
        self.reference: Optional[Bar] = None
        self.bars_waited = 0

    def on_exit(self) -> None:
        self.reset()

    def check_entry(
        self, bar: Bar, index: int, history: Sequence[Bar]
    ) -> Optional[EntrySignal]:
        if self.phase == BullishContinuationPhase.SEEK_REFERENCE:
            if bar.is_bullish:
                self._set_reference(bar, index)
            return None

        reference = self.reference
        assert reference is not None

        self.bars_waited += 1
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
                reference_type="bullish",
            )

        if self.bars_waited >= self.max_wait_bars:
            emit(
                self._trace,
                "reference_expired",
                index,
                bar,
                self.phase.value,
                bars_waited=self.bars_waited,
            )
            self.reset()
            if bar.is_bullish:
                self._set_reference(bar, index)
        return None

    def _set_reference(self, bar: Bar, index: int) -> None:
        self.reference = bar
        self.bars_waited = 0
        self.phase = BullishContinuationPhase.WAIT_BREAKOUT
        emit(
            self._trace,
            "reference_set",
            index,
            bar,
            self.phase.value,
            reference_high=bar.high,
            reference_low=bar.low,
            reference_type="bullish",
        )


GREEN_CONTINUATION = StrategyDescriptor(
    id="green_continuation",
    name="Green Candle Continuation",
    description="Enter when a green candle's high is exceeded within the next 2 candles",
    factory=BullishContinuationSession,
)
