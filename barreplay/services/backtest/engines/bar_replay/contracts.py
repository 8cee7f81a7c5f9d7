"""Bar replay trace event contracts.

Single source of truth for event schema. Strategy sessions and the
engine emit events through an injectable ``TraceFn`` instead of printing;
tests and the CLI consume them as plain dicts keyed by these constants.

Versioned: bump REPLAY_EVENT_SCHEMA_VERSION when adding required keys or
changing semantics. Optional keys can be added without a version bump.
"""

from __future__ import annotations

from typing import Any, Callable, Optional

from .types import Bar

REPLAY_EVENT_SCHEMA_VERSION = "1.0.0"

TraceFn = Callable[[dict[str, Any]], None]

SOURCE_SESSION = "session"
SOURCE_ENGINE = "engine"

# Common keys present on every event
COMMON_REQUIRED_KEYS = frozenset(
    {
        "type",
        "bar_index",
        "ts",
        "phase",
        "source",
    }
)

# Per-type required payload keys (beyond common)
REPLAY_EVENT_TYPES: dict[str, frozenset[str]] = {
    # Strategy session transitions
    "reference_set": frozenset({"reference_high", "reference_low", "reference_type"}),
    "reference_shifted": frozenset(
        {"reference_high", "reference_low", "reference_type"}
    ),
    "reference_expired": frozenset({"bars_waited"}),
    "confirmation_set": frozenset({"confirmation_high", "reference_high"}),
    "cooling_started": frozenset({"directional_range", "trigger_direction"}),
    "cooling_extended": frozenset({"directional_range", "trigger_direction"}),
    "cooling_complete": frozenset({"trigger_direction"}),
    "entry_signal": frozenset({"entry_price", "reference_high", "reference_low"}),
    # Engine / trade lifecycle
    "trade_opened": frozenset({"entry_price", "initial_stop"}),
    "stop_trailed": frozenset({"profit", "new_stop", "steps"}),
    "trade_closed": frozenset({"exit_price", "exit_reason", "pl"}),
    "wick_tolerated": frozenset({"stop", "bar_low"}),
    "setup_skipped": frozenset({"entry_price", "initial_stop", "reason"}),
    "signal_discarded": frozenset({"reason"}),
    "session_fault": frozenset({"error"}),
}

# Union of all required keys (useful for quick membership tests)
ALL_REQUIRED_KEYS = COMMON_REQUIRED_KEYS | frozenset().union(
    *REPLAY_EVENT_TYPES.values()
)


def make_event(
    evt_type: str,
    bar_index: int,
    bar: Bar,
    phase: str,
    source: str,
    **payload: Any,
) -> dict[str, Any]:
    """Build an event dict with the common keys filled in."""
    evt: dict[str, Any] = {
        "type": evt_type,
        "bar_index": bar_index,
        "ts": bar.timestamp.isoformat(),
        "phase": phase,
        "source": source,
        "schema_version": REPLAY_EVENT_SCHEMA_VERSION,
    }
    evt.update(payload)
    return evt


def noop_trace(event: dict[str, Any]) -> None:
    """Default trace sink."""


def resolve_trace(trace: Optional[TraceFn]) -> TraceFn:
    return trace if trace is not None else noop_trace


def validate_events(events: list[dict]) -> list[str]:
    """Validate event list against contracts. Returns list of error strings.

    Cheap enough to run in tests and debug mode. Returns empty list if valid.
    """
    errors: list[str] = []
    for i, evt in enumerate(events):
        evt_type = evt.get("type", "<missing>")

        missing_common = COMMON_REQUIRED_KEYS - set(evt.keys())
        if missing_common:
            errors.append(
                f"Event {i} ({evt_type}): missing common keys {sorted(missing_common)}"
            )

        type_keys = REPLAY_EVENT_TYPES.get(str(evt_type))
        if type_keys is None:
            errors.append(
                f"Event {i}: unknown type '{evt_type}'. "
                f"Valid: {sorted(REPLAY_EVENT_TYPES.keys())}"
            )
        else:
            missing_type = type_keys - set(evt.keys())
            if missing_type:
                errors.append(
                    f"Event {i} ({evt_type}): missing payload keys "
                    f"{sorted(missing_type)}"
                )

    return errors
