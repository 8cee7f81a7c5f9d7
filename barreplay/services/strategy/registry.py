"""
Strategy registry.

Central catalog of the entry strategies available to the replay engine.
Add new descriptors to ``_STRATEGIES`` to make them selectable by id.
"""

from typing import Any

from barreplay.services.strategy.strategies import (
    FOUR_RED_CANDLE_BREAK,
    GREEN_CONTINUATION,
    RED_CANDLE_HIGH_BREAK,
    RED_GREEN_FLEXIBLE,
    WHATEVER_BREAKS,
    StrategyDescriptor,
)

_STRATEGIES: dict[str, StrategyDescriptor] = {
    s.id: s
    for s in (
        RED_CANDLE_HIGH_BREAK,
        FOUR_RED_CANDLE_BREAK,
        GREEN_CONTINUATION,
        RED_GREEN_FLEXIBLE,
        WHATEVER_BREAKS,
    )
}


def get_strategy(strategy_id: str) -> StrategyDescriptor:
    """Look up a strategy by id.

    Raises:
        KeyError: If the id is not registered.
    """
    try:
        return _STRATEGIES[strategy_id]
    except KeyError:
        raise KeyError(
            f"Unknown strategy '{strategy_id}'. Valid: {sorted(_STRATEGIES)}"
        ) from None


def list_strategies() -> list[StrategyDescriptor]:
    """All registered strategies, in registration order."""
    return list(_STRATEGIES.values())


def get_strategy_options() -> list[dict[str, Any]]:
    """id/name/description for selection menus."""
    return [
        {"id": s.id, "name": s.name, "description": s.description}
        for s in _STRATEGIES.values()
    ]
