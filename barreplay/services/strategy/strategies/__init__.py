"""
Entry strategy sessions for the bar replay engine.

Each strategy is a descriptor whose ``create_session()`` returns a
self-contained state machine deciding, bar by bar, whether to enter.
"""

from barreplay.services.strategy.strategies.base import (
    EntrySignal,
    StrategyDescriptor,
    StrategySession,
)
from barreplay.services.strategy.strategies.bullish_continuation import (
    GREEN_CONTINUATION,
    BullishContinuationSession,
)
from barreplay.services.strategy.strategies.four_bearish_run import (
    FOUR_RED_CANDLE_BREAK,
    FourBearishRunSession,
)
from barreplay.services.strategy.strategies.naive_adjacent import (
    WHATEVER_BREAKS,
    NaiveAdjacentSession,
)
from barreplay.services.strategy.strategies.single_reference import (
    RED_CANDLE_HIGH_BREAK,
    SingleReferenceBreakoutSession,
)
from barreplay.services.strategy.strategies.volatility_adaptive import (
    RED_GREEN_FLEXIBLE,
    VolatilityAdaptiveSession,
)

__all__ = [
    # Contract
    "EntrySignal",
    "StrategyDescriptor",
    "StrategySession",
    # Red Candle High Break
    "RED_CANDLE_HIGH_BREAK",
    "SingleReferenceBreakoutSession",
    # Four Red Candle Break
    "FOUR_RED_CANDLE_BREAK",
    "FourBearishRunSession",
    # Green Candle Continuation
    "GREEN_CONTINUATION",
    "BullishContinuationSession",
    # Red-Green Flexible
    "RED_GREEN_FLEXIBLE",
    "VolatilityAdaptiveSession",
    # Whatever Breaks
    "WHATEVER_BREAKS",
    "NaiveAdjacentSession",
]
