"""
Whatever Breaks (naive adjacent breakout).

Every bar is a reference candidate. If the next bar breaks its high,
enter at that high; otherwise the next bar becomes the reference. No
filters and no timeout.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional, Sequence

from barreplay.services.backtest.engines.bar_replay.contracts import (
    TraceFn,
    resolve_trace,
)
from barreplay.services.backtest.engines.bar_replay.types import Bar

from .base import EntrySignal, StrategyDescriptor, emit


class NaiveAdjacentPhase(Enum):
    SEEK_REFERENCE = "seek_reference"
    WAIT_BREAKOUT = "wait_breakout"


class NaiveAdjacentSession:
    def __init__(self, trace: Optional[TraceFn] = None):
        self._trace = resolve_trace(trace)
        self.reset()

    def reset(self) -> None:
        self.phase = NaiveAdjacentPhase.SEEK_REFERENCE
        self.reference: Optional[Bar] = None

    def on_exit(self) -> None:
        self.reset()

    def check_entry(
        self, bar: Bar, index: int, history: Sequence[Bar]
    ) -> Optional[EntrySignal]:
        reference = self.reference
        if reference is None:
            self._set_reference(bar, index, "reference_set")
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
                reference_type="any",
            )

        self._set_reference(bar, index, "reference_shifted")
        return None

    def _set_reference(self, bar: Bar, index: int, evt_type: str) -> None:
        self.reference = bar
        self.phase = NaiveAdjacentPhase.WAIT_BREAKOUT
        emit(
            self._trace,
            evt_type,
            index,
            bar,
            self.phase.value,
            reference_high=bar.high,
            reference_low=bar.low,
            reference_type="any",
        )


WHATEVER_BREAKS = StrategyDescriptor(
    id="whatever_breaks",
    name="Whatever Breaks",
    description="Enter on any candle high breakout - simplest momentum strategy",
    factory=NaiveAdjacentSession,
)
