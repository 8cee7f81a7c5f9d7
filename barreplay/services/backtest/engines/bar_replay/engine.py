"""Bar replay backtest engine (simulation loop)."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Callable, Optional, Union

import structlog

from barreplay.services.backtest.statistics import summarize
from barreplay.services.strategy.strategies.base import (
    EntrySignal,
    StrategyDescriptor,
    StrategySession,
)

from .contracts import SOURCE_ENGINE, TraceFn, make_event, validate_events
from .errors import AmbiguousBarError
from .trade_manager import TradeLifecycleManager
from .types import (
    Bar,
    ExitDecision,
    ExitReason,
    Parameters,
    RunResult,
    SameBarPolicy,
    SkippedSetup,
    Trade,
)

logger = structlog.get_logger(__name__)

_FLAT = "flat"
_IN_TRADE = "in_trade"


class PriorBars(Sequence):
    """Read-only view of ``bars[: index + 1]``.

    Sessions get this as their history so bars after the current one
    stay out of reach.
    """

    def __init__(self, bars: Sequence[Bar], index: int):
        self._bars = bars
        self._end = index + 1

    def __len__(self) -> int:
        return self._end

    def __getitem__(self, key):
        if isinstance(key, slice):
            return list(self._bars[: self._end][key])
        if key < 0:
            key += self._end
        if not 0 <= key < self._end:
            raise IndexError("bar index out of range")
        return self._bars[key]


class BarReplayEngine:
    """Replays bars through one strategy session and one position at a time.

    Per bar:
      1. In a trade: check exits; on exit, close and notify the session.
      2. Always feed the bar to the session (it sees every bar).
      3. Flat with a valid signal: open a position on this bar.
      4. Re-check exits on the entry bar. A stop breach on a bullish
         entry bar is wick noise and is ignored; anything else closes.
    Open positions are closed at the last bar's close. Sessions see
    history only up to the current bar. Exceptions from session code or
    the event callback are logged and recorded as warnings.
    """

    name = "bar_replay"

    def run(
        self,
        bars: Sequence[Bar],
        strategy: StrategyDescriptor,
        parameters: Union[Parameters, dict[str, Any], None] = None,
        on_event: Optional[TraceFn] = None,
        session_options: Optional[dict[str, Any]] = None,
    ) -> RunResult:
        params = (
            parameters
            if isinstance(parameters, Parameters)
            else Parameters.from_dict(parameters or {})
        )
        warnings: list[str] = list(params.warnings)
        events: list[dict[str, Any]] = []

        def _emit(evt: dict[str, Any]) -> None:
            events.append(evt)
            if on_event is None:
                return
            try:
                on_event(evt)
            except Exception as e:
                logger.warning(
                    "Event callback failed",
                    event_type=evt.get("type"),
                    error=str(e),
                    exc_info=True,
                )
                warnings.append(f"Event callback error on {evt.get('type')}: {e!r}")

        # Own the bar array; reference bars are frozen snapshots from it
        bars = list(bars)
        trades: list[Trade] = []
        skipped: list[SkippedSetup] = []

        if not bars:
            warnings.append("No bars supplied; nothing to replay")
            logger.info("Empty bar sequence", strategy=strategy.id)
            return RunResult(
                trades=trades,
                skipped_setups=skipped,
                summary=summarize(trades, skipped, bars),
                events=events,
                warnings=warnings,
            )

        session = strategy.create_session(trace=_emit, **(session_options or {}))
        on_entry: Optional[Callable[[], None]] = getattr(session, "on_entry", None)
        on_exit: Optional[Callable[[], None]] = getattr(session, "on_exit", None)

        manager: Optional[TradeLifecycleManager] = None

        for index, bar in enumerate(bars):
            # Step 1: exits on the open position
            if manager is not None:
                decision = manager.check_exit(bar, index)
                if decision is not None:
                    trades.append(self._close(manager, decision, index, bar, _emit))
                    manager = None
                    self._call_hook(on_exit, "on_exit", index, bar, _FLAT, _emit, warnings)

            # Step 2: the session sees every bar
            signal = self._poll_session(session, bar, index, bars, manager, _emit, warnings)
            if signal is None or manager is not None:
                continue

            if not isinstance(signal, EntrySignal) or not signal.is_well_formed():
                reason = f"Malformed entry signal discarded: {signal!r}"
                warnings.append(reason)
                logger.warning("Malformed entry signal", bar_index=index, signal=repr(signal))
                _emit(
                    make_event(
                        "signal_discarded", index, bar, _FLAT, SOURCE_ENGINE, reason=reason
                    )
                )
                continue

            # Step 3: open the position
            entry_price = float(signal.entry_price)  # type: ignore[arg-type]
            reference_bar = signal.reference_bar or bar

            if params.same_bar_policy == SameBarPolicy.REJECT_AMBIGUOUS.value:
                try:
                    TradeLifecycleManager.check_entry_collision(
                        params, entry_price, reference_bar, bar
                    )
                except AmbiguousBarError as e:
                    skipped.append(
                        SkippedSetup(
                            timestamp=bar.timestamp,
                            bar_index=index,
                            entry_price=entry_price,
                            initial_stop=e.details["initial_stop"],
                            reference_bar=reference_bar,
                            entry_bar=bar,
                            reason=e.message,
                        )
                    )
                    _emit(
                        make_event(
                            "setup_skipped",
                            index,
                            bar,
                            _FLAT,
                            SOURCE_ENGINE,
                            entry_price=entry_price,
                            initial_stop=e.details["initial_stop"],
                            reason=e.message,
                        )
                    )
                    self._call_hook(on_exit, "on_exit", index, bar, _FLAT, _emit, warnings)
                    continue

            manager = TradeLifecycleManager(params, trace=_emit)
            manager.enter(entry_price, bar.timestamp, reference_bar, bar)
            _emit(
                make_event(
                    "trade_opened",
                    index,
                    bar,
                    _IN_TRADE,
                    SOURCE_ENGINE,
                    entry_price=entry_price,
                    initial_stop=manager.initial_stop,
                )
            )
            self._call_hook(on_entry, "on_entry", index, bar, _IN_TRADE, _emit, warnings)

            # Step 4: same-bar resolution
            decision = manager.check_exit(bar, index)
            if decision is None:
                continue
            if decision.is_stop and bar.is_bullish:
                _emit(
                    make_event(
                        "wick_tolerated",
                        index,
                        bar,
                        _IN_TRADE,
                        SOURCE_ENGINE,
                        stop=decision.exit_price,
                        bar_low=bar.low,
                    )
                )
                continue
            trades.append(self._close(manager, decision, index, bar, _emit))
            manager = None
            self._call_hook(on_exit, "on_exit", index, bar, _FLAT, _emit, warnings)

        # End of data: force close open position
        if manager is not None:
            last = bars[-1]
            decision = ExitDecision(last.close, ExitReason.END_OF_DATA, last.timestamp)
            trades.append(self._close(manager, decision, len(bars) - 1, last, _emit))
            manager = None

        if __debug__:
            for error in validate_events(events):
                logger.warning("Event contract violation", error=error)
                warnings.append(error)

        summary = summarize(trades, skipped, bars)
        logger.info(
            "Replay complete",
            strategy=strategy.id,
            bars=len(bars),
            trades=summary.total_trades,
            skipped_setups=summary.skipped_setups,
            net_pl=summary.net_pl,
        )
        return RunResult(
            trades=trades,
            skipped_setups=skipped,
            summary=summary,
            events=events,
            warnings=warnings,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _poll_session(
        session: StrategySession,
        bar: Bar,
        index: int,
        bars: Sequence[Bar],
        manager: Optional[TradeLifecycleManager],
        emit: TraceFn,
        warnings: list[str],
    ) -> Optional[EntrySignal]:
        """Ask the session for a signal; a failing session means no signal."""
        try:
            return session.check_entry(bar, index, PriorBars(bars, index))
        except Exception as e:
            logger.warning(
                "Strategy session failed, treating bar as no signal",
                bar_index=index,
                error=str(e),
                exc_info=True,
            )
            warnings.append(f"Bar {index}: session error {e!r}")
            emit(
                make_event(
                    "session_fault",
                    index,
                    bar,
                    _IN_TRADE if manager is not None else _FLAT,
                    SOURCE_ENGINE,
                    error=repr(e),
                )
            )
            return None

    @staticmethod
    def _call_hook(
        hook: Optional[Callable[[], None]],
        hook_name: str,
        index: int,
        bar: Bar,
        phase: str,
        emit: TraceFn,
        warnings: list[str],
    ) -> None:
        """Run an optional session hook; a failing hook is logged, not raised."""
        if hook is None:
            return
        try:
            hook()
        except Exception as e:
            logger.warning(
                "Strategy session hook failed",
                hook=hook_name,
                bar_index=index,
                error=str(e),
                exc_info=True,
            )
            warnings.append(f"Bar {index}: session {hook_name} error {e!r}")
            emit(
                make_event(
                    "session_fault", index, bar, phase, SOURCE_ENGINE, error=repr(e), hook=hook_name
                )
            )

    @staticmethod
    def _close(
        manager: TradeLifecycleManager,
        decision: ExitDecision,
        index: int,
        bar: Bar,
        emit: TraceFn,
    ) -> Trade:
        trade = manager.get_summary(decision.exit_price, decision.reason, decision.time)
        emit(
            make_event(
                "trade_closed",
                index,
                bar,
                _FLAT,
                SOURCE_ENGINE,
                exit_price=trade.exit_price,
                exit_reason=trade.exit_reason.value,
                pl=trade.pl,
            )
        )
        return trade


def run_backtest(
    bars: Sequence[Bar],
    strategy: StrategyDescriptor,
    parameters: Union[Parameters, dict[str, Any], None] = None,
    on_event: Optional[TraceFn] = None,
    session_options: Optional[dict[str, Any]] = None,
) -> RunResult:
    """Run one replay with a fresh engine, session and lifecycle manager."""
    return BarReplayEngine().run(
        bars,
        strategy,
        parameters,
        on_event=on_event,
        session_options=session_options,
    )
