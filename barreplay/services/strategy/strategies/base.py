"""
Strategy session contract.

A strategy is a descriptor that creates one session per run. The
session owns all of its state (reference bar, counters, phase) and is
fed every bar of the run in order:

    session = strategy.create_session(trace=events.append)
    for i, bar in enumerate(bars):
        signal = session.check_entry(bar, i, bars)

Sessions may also expose ``on_entry()`` / ``on_exit()`` hooks, called by
the engine when a position opens or closes. Variants implement the
protocol structurally; there is no shared base class.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, Sequence, runtime_checkable

from barreplay.services.backtest.engines.bar_replay.contracts import (
    SOURCE_SESSION,
    TraceFn,
    make_event,
)
from barreplay.services.backtest.engines.bar_replay.types import Bar

# Reference bars wait at most this many bars for a breakout
DEFAULT_MAX_WAIT_BARS = 2


@dataclass(frozen=True)
class EntrySignal:
    """Request to open a long position at ``entry_price``."""

    entry_price: Optional[float]
    reference_bar: Optional[Bar] = None
    reference_type: Optional[str] = None

    def is_well_formed(self) -> bool:
        return (
            isinstance(self.entry_price, (int, float))
            and not isinstance(self.entry_price, bool)
            and math.isfinite(self.entry_price)
        )


@runtime_checkable
class StrategySession(Protocol):
    """Per-run entry state machine."""

    def check_entry(
        self, bar: Bar, index: int, history: Sequence[Bar]
    ) -> Optional[EntrySignal]:
        ...


SessionFactory = Callable[..., StrategySession]


@dataclass(frozen=True)
class StrategyDescriptor:
    """Catalog entry for a strategy variant."""

    id: str
    name: str
    description: str
    factory: SessionFactory

    def create_session(
        self, trace: Optional[TraceFn] = None, **options: Any
    ) -> StrategySession:
        """Create a fresh session. Never reuse a session across runs."""
        return self.factory(trace=trace, **options)


def emit(
    trace: TraceFn,
    evt_type: str,
    index: int,
    bar: Bar,
    phase: str,
    **payload: Any,
) -> None:
    """Send a session transition event to the trace sink."""
    trace(make_event(evt_type, index, bar, phase, SOURCE_SESSION, **payload))


def bar_direction(bar: Bar) -> str:
    if bar.is_bearish:
        return "bearish"
    if bar.is_bullish:
        return "bullish"
    return "doji"
