"""
Red-Green Flexible Breakout (volatility-adaptive).

A bar is volatile when its directional range reaches the threshold
(7 points by default):

- bearish bar: high - close (the full downward push, wick included)
- bullish bar: close - low

Rules:
- A volatile bar starts a 1-bar cooling period. Cooling is extended
  for as long as the following bars stay volatile.
- Cooling triggered by a bearish bar ends by taking the first calm bar
  as the reference, whatever its direction.
- Cooling triggered by a bullish bar ends in a hard reset: only a
  bearish bar may become the next reference.
- Bearish references wait 2 bars and shift to newer bearish bars;
  bullish references wait 1 bar and never shift.
- Entering on a volatile bar makes the next setup cool first, even if
  its reference candidate is calm.

Designed for: index options, 1-min timeframe, volatile opening minutes.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional, Sequence

from barreplay.services.backtest.engines.bar_replay.contracts import (
    TraceFn,
    resolve_trace,
)
from barreplay.services.backtest.engines.bar_replay.types import Bar

from .base import EntrySignal, StrategyDescriptor, bar_direction, emit

DEFAULT_VOLATILITY_THRESHOLD = 7.0

MAX_WAIT_BARS = {"bearish": 2, "bullish": 1}


class VolatilityPhase(Enum):
    SEEK_REFERENCE = "seek_reference"
    COOLING = "cooling"
    WAIT_BREAKOUT = "wait_breakout"


def directional_range(bar: Bar) -> float:
    """Size of the bar's move in its own direction. Dojis have none."""
    if bar.is_bearish:
        return bar.high - bar.close
    if bar.is_bullish:
        return bar.close - bar.low
    return 0.0


class VolatilityAdaptiveSession:
    def __init__(
        self,
        trace: Optional[TraceFn] = None,
        volatility_threshold: float = DEFAULT_VOLATILITY_THRESHOLD,
    ):
        self._trace = resolve_trace(trace)
        self.volatility_threshold = volatility_threshold
        # Sticky across resets
        self.force_cooling = False
        self._signal_volatile = False
        self._entered_volatile = False
        self.reset()

    def reset(self) -> None:
        self.phase = VolatilityPhase.SEEK_REFERENCE
        self.reference: Optional[Bar] = None
        self.reference_type: Optional[str] = None
        self.bars_since_reference = 0
        self.cooling_trigger: Optional[str] = None

    def on_entry(self) -> None:
        self._entered_volatile = self._signal_volatile
        self.reset()
        self.force_cooling = self._entered_volatile

    def on_exit(self) -> None:
        self.reset()
        self.force_cooling = self._entered_volatile
        self._entered_volatile = False

    def check_entry(
        self, bar: Bar, index: int, history: Sequence[Bar]
    ) -> Optional[EntrySignal]:
        size = directional_range(bar)
        volatile = size >= self.volatility_threshold

        if self.phase == VolatilityPhase.COOLING:
            if volatile:
                self.cooling_trigger = bar_direction(bar)
                emit(
                    self._trace,
                    "cooling_extended",
                    index,
                    bar,
                    self.phase.value,
                    directional_range=round(size, 2),
                    trigger_direction=self.cooling_trigger,
                )
                return None

            trigger = self.cooling_trigger
            self.force_cooling = False
            self.cooling_trigger = None
            self.phase = VolatilityPhase.SEEK_REFERENCE
            emit(
                self._trace,
                "cooling_complete",
                index,
                bar,
                self.phase.value,
                trigger_direction=trigger,
            )
            if trigger == "bearish":
                self._set_reference(
                    bar, index, "bearish" if bar.is_bearish else "bullish"
                )
                return None
            # Bullish trigger: hard reset, judge this bar as a fresh candidate

        if self.phase == VolatilityPhase.SEEK_REFERENCE:
            if volatile:
                self._start_cooling(bar, index, size)
            elif bar.is_bearish:
                if self.force_cooling:
                    self._start_cooling(bar, index, size)
                else:
                    self._set_reference(bar, index, "bearish")
            return None

        reference, reference_type = self.reference, self.reference_type
        assert reference is not None and reference_type is not None

        self.bars_since_reference += 1
        if bar.high > reference.high:
            self._signal_volatile = volatile
            emit(
                self._trace,
                "entry_signal",
                index,
                bar,
                self.phase.value,
                entry_price=reference.high,
                reference_high=reference.high,
                reference_low=reference.low,
                reference_type=reference_type,
                volatile=volatile,
            )
            return EntrySignal(
                entry_price=reference.high,
                reference_bar=reference,
                reference_type=reference_type,
            )

        if volatile:
            self._start_cooling(bar, index, size)
            return None

        if bar.is_bearish and reference_type == "bearish":
            self._set_reference(bar, index, "bearish", evt_type="reference_shifted")
            return None

        if self.bars_since_reference >= MAX_WAIT_BARS[reference_type]:
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

    def _start_cooling(self, bar: Bar, index: int, size: float) -> None:
        self.reset()
        self.phase = VolatilityPhase.COOLING
        self.cooling_trigger = bar_direction(bar)
        emit(
            self._trace,
            "cooling_started",
            index,
            bar,
            self.phase.value,
            directional_range=round(size, 2),
            trigger_direction=self.cooling_trigger,
            forced=self.force_cooling,
        )

    def _set_reference(
        self,
        bar: Bar,
        index: int,
        reference_type: str,
        evt_type: str = "reference_set",
    ) -> None:
        self.reference = bar
        self.reference_type = reference_type
        self.bars_since_reference = 0
        self.phase = VolatilityPhase.WAIT_BREAKOUT
        emit(
            self._trace,
            evt_type,
            index,
            bar,
            self.phase.value,
            reference_high=bar.high,
            reference_low=bar.low,
            reference_type=reference_type,
        )


RED_GREEN_FLEXIBLE = StrategyDescriptor(
    id="red_green_flexible",
    name="Red-Green Flexible Breakout",
    description="Volatility-adaptive breakout with cooling after big candles",
    factory=VolatilityAdaptiveSession,
)
