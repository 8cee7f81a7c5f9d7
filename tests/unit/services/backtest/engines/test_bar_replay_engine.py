"""Unit tests for the bar replay simulation loop."""

from __future__ import annotations

import dataclasses
from datetime import datetime, time, timedelta, timezone
from typing import Optional

import numpy as np
import pytest

from barreplay.services.backtest.engines.bar_replay.contracts import (
    ALL_REQUIRED_KEYS,
    COMMON_REQUIRED_KEYS,
    REPLAY_EVENT_SCHEMA_VERSION,
    REPLAY_EVENT_TYPES,
    validate_events,
)
from barreplay.services.backtest.engines.bar_replay.engine import (
    BarReplayEngine,
    PriorBars,
    run_backtest,
)
from barreplay.services.backtest.engines.bar_replay.types import (
    Bar,
    ExitReason,
    Parameters,
    RunResult,
)
from barreplay.services.strategy.registry import get_strategy, list_strategies
from barreplay.services.strategy.strategies.base import EntrySignal, StrategyDescriptor

IST = timezone(timedelta(hours=5, minutes=30))
SESSION_OPEN = datetime(2025, 11, 19, 9, 15, tzinfo=IST)

# 1-min option bars, 09:15-09:27 IST
SCENARIO_A = [
    (114.65, 114.65, 87.05, 95.45),
    (95.2, 102.6, 94.3, 97.6),
    (97.7, 99.2, 95.15, 96.65),
    (96.65, 96.7, 86.75, 86.8),
    (87.05, 89.0, 83.0, 83.8),
    (84.0, 87.35, 81.35, 85.7),
    (85.8, 91.4, 85.0, 87.6),
    (87.7, 93.35, 87.2, 92.4),
    (92.35, 93.3, 89.8, 91.6),
    (91.4, 100.55, 88.85, 97.3),
    (97.35, 99.15, 94.5, 97.9),
    (97.85, 102.25, 97.2, 99.95),
    (100.25, 101.6, 98.5, 99.3),
]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _build_bars(rows) -> list[Bar]:
    return [
        Bar(SESSION_OPEN + timedelta(minutes=i), o, h, l, c)
        for i, (o, h, l, c) in enumerate(rows)
    ]


def _build_random_walk(n_bars: int = 400, seed: int = 7) -> list[Bar]:
    """Synthetic 1-min bars with realistic wicks around 100."""
    rng = np.random.default_rng(seed)
    closes = 100.0 + np.cumsum(rng.normal(0, 1.5, n_bars))
    opens = np.concatenate(([100.0], closes[:-1]))
    highs = np.maximum(opens, closes) + np.abs(rng.normal(0, 1.0, n_bars))
    lows = np.minimum(opens, closes) - np.abs(rng.normal(0, 1.0, n_bars))
    return [
        Bar(
            SESSION_OPEN + timedelta(minutes=i),
            float(opens[i]),
            float(highs[i]),
            float(lows[i]),
            float(closes[i]),
        )
        for i in range(n_bars)
    ]


def _descriptor(factory) -> StrategyDescriptor:
    return StrategyDescriptor(id="test", name="Test", description="test", factory=factory)


class _ScriptedSession:
    """Signals at fixed bar indices and records hook calls."""

    def __init__(self, trace=None, signals: Optional[dict] = None):
        self.signals = signals or {}
        self.seen: list[int] = []
        self.entries = 0
        self.exits = 0

    def check_entry(self, bar, index, history):
        self.seen.append(index)
        return self.signals.get(index)

    def on_entry(self):
        self.entries += 1

    def on_exit(self):
        self.exits += 1


def _scripted(signals: dict) -> tuple[StrategyDescriptor, list[_ScriptedSession]]:
    created: list[_ScriptedSession] = []

    def factory(trace=None):
        session = _ScriptedSession(trace=trace, signals=signals)
        created.append(session)
        return session

    return _descriptor(factory), created


# Reference bar H=101 L=95, then a bullish bar that dips to 94 and breaks 101
WICK_ROWS = [
    (100.0, 101.0, 95.0, 96.0),
    (96.0, 103.0, 94.0, 102.0),
    (102.0, 104.0, 100.0, 103.0),
]


def _types(result: RunResult) -> list[str]:
    return [e["type"] for e in result.events]


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


class TestScenarioA:
    def test_single_reference_entry_and_trailing(self):
        bars = _build_bars(SCENARIO_A)
        result = run_backtest(bars, get_strategy("red_candle_high_break"))

        assert len(result.trades) == 1
        trade = result.trades[0]
        assert trade.entry_price == 89.0
        assert trade.entry_time == bars[6].timestamp
        assert trade.reference_bar == bars[4]
        assert trade.initial_stop == 83.0
        assert trade.final_stop == 94.0
        assert trade.exit_reason == ExitReason.END_OF_DATA
        assert trade.exit_price == 99.3
        assert trade.pl == 10.3
        assert trade.highest_profit == pytest.approx(13.25)

    def test_time_exit_then_no_reentry_before_end(self):
        bars = _build_bars(SCENARIO_A)
        result = run_backtest(
            bars, get_strategy("red_candle_high_break"), {"timeExit": "09:25"}
        )

        assert len(result.trades) == 1
        trade = result.trades[0]
        assert trade.exit_reason == ExitReason.TIME_EXIT
        assert trade.exit_time == bars[10].timestamp
        assert trade.exit_price == 97.9
        assert trade.pl == 8.9

    def test_summary(self):
        bars = _build_bars(SCENARIO_A)
        result = run_backtest(bars, get_strategy("red_candle_high_break"))
        s = result.summary

        assert s.total_trades == 1
        assert s.winning_trades == 1
        assert s.net_pl == 10.3
        assert s.exit_breakdown == {"End of Data": 1}
        assert s.total_bars == 13
        assert s.start_time == bars[0].timestamp.isoformat()
        assert s.end_time == bars[-1].timestamp.isoformat()

    def test_event_stream(self):
        result = run_backtest(_build_bars(SCENARIO_A), get_strategy("red_candle_high_break"))
        types = _types(result)
        before_entry = types[: types.index("trade_opened")]

        assert types[0] == "reference_set"
        assert before_entry.count("reference_shifted") == 3
        assert before_entry[-1] == "entry_signal"
        assert "stop_trailed" in types
        assert types[-1] == "trade_closed"
        assert validate_events(result.events) == []


# ---------------------------------------------------------------------------
# Same-bar resolution
# ---------------------------------------------------------------------------


class TestSameBar:
    def test_bullish_entry_bar_tolerates_stop_wick(self):
        result = run_backtest(_build_bars(WICK_ROWS), get_strategy("red_candle_high_break"))

        assert len(result.trades) == 1
        trade = result.trades[0]
        assert trade.entry_price == 101.0
        assert trade.initial_stop == 95.0
        assert trade.exit_reason == ExitReason.END_OF_DATA
        assert trade.pl == 2.0
        assert "wick_tolerated" in _types(result)

    def test_non_bullish_entry_bar_stop_closes_same_bar(self):
        rows = [WICK_ROWS[0], (96.0, 103.0, 94.0, 96.0), WICK_ROWS[2]]
        bars = _build_bars(rows)
        result = run_backtest(bars, get_strategy("red_candle_high_break"))

        assert len(result.trades) == 1
        trade = result.trades[0]
        assert trade.exit_reason == ExitReason.STOP_LOSS
        assert trade.exit_price == 95.0
        assert trade.entry_time == trade.exit_time == bars[1].timestamp
        assert trade.pl == -6.0

    def test_target_on_entry_bar_closes_same_bar(self):
        bars = _build_bars(WICK_ROWS)
        result = run_backtest(
            bars,
            get_strategy("red_candle_high_break"),
            {"profit_target": 1.0, "initial_stop_mode": "fixed"},
        )

        trade = result.trades[0]
        assert trade.exit_reason == ExitReason.TARGET
        assert trade.exit_price == 102.0
        assert trade.exit_time == bars[1].timestamp

    def test_later_bar_breach_always_closes(self):
        rows = WICK_ROWS[:2] + [(102.0, 102.5, 94.5, 95.0)]
        result = run_backtest(_build_bars(rows), get_strategy("red_candle_high_break"))

        trade = result.trades[0]
        assert trade.exit_reason == ExitReason.STOP_LOSS
        assert trade.exit_price == 95.0

    def test_reject_ambiguous_records_skipped_setup(self):
        bars = _build_bars(WICK_ROWS)
        result = run_backtest(
            bars,
            get_strategy("red_candle_high_break"),
            {"same_bar_policy": "reject_ambiguous"},
        )

        assert result.trades == []
        assert len(result.skipped_setups) == 1
        skipped = result.skipped_setups[0]
        assert skipped.entry_price == 101.0
        assert skipped.initial_stop == 95.0
        assert skipped.bar_index == 1
        assert skipped.entry_bar == bars[1]
        assert result.summary.skipped_setups == 1
        assert result.summary.total_trades == 0
        assert "setup_skipped" in _types(result)

    def test_reject_ambiguous_resets_session(self):
        descriptor, created = _scripted({1: EntrySignal(101.0, _build_bars(WICK_ROWS)[0])})
        run_backtest(
            _build_bars(WICK_ROWS), descriptor, {"same_bar_policy": "reject_ambiguous"}
        )
        assert created[0].exits == 1
        assert created[0].entries == 0

    def test_reject_ambiguous_allows_clean_entry(self):
        rows = [WICK_ROWS[0], (96.0, 103.0, 95.5, 102.0), WICK_ROWS[2]]
        result = run_backtest(
            _build_bars(rows),
            get_strategy("red_candle_high_break"),
            {"same_bar_policy": "reject_ambiguous"},
        )
        assert len(result.trades) == 1
        assert result.skipped_setups == []


# ---------------------------------------------------------------------------
# Loop mechanics
# ---------------------------------------------------------------------------


class TestLoop:
    def test_empty_bars(self):
        result = run_backtest([], get_strategy("red_candle_high_break"))

        assert result.trades == []
        assert result.skipped_setups == []
        assert result.summary.total_trades == 0
        assert result.summary.net_pl == 0.0
        assert result.summary.exit_breakdown == {}
        assert result.summary.start_time == ""
        assert result.warnings

    def test_session_sees_every_bar(self):
        bars = _build_bars(SCENARIO_A)
        descriptor, created = _scripted({2: EntrySignal(bars[1].high, bars[1])})
        run_backtest(bars, descriptor)
        assert created[0].seen == list(range(len(bars)))

    def test_hooks_called_on_entry_and_exit(self):
        bars = _build_bars(WICK_ROWS)
        signal = EntrySignal(101.0, bars[0])
        descriptor, created = _scripted({1: signal})
        result = run_backtest(bars, descriptor, {"profit_target": 2.0})

        assert len(result.trades) == 1
        assert created[0].entries == 1
        assert created[0].exits == 1

    def test_signals_ignored_while_in_trade(self):
        bars = _build_bars(WICK_ROWS)
        descriptor, _ = _scripted(
            {1: EntrySignal(101.0, bars[0]), 2: EntrySignal(103.0, bars[1])}
        )
        result = run_backtest(bars, descriptor)
        assert len(result.trades) == 1
        assert result.trades[0].entry_price == 101.0

    def test_reentry_on_exit_bar(self):
        # Position closes on bar 2 at its stop, the session signals again on bar 2
        rows = [
            (100.0, 101.0, 95.0, 96.0),
            (96.0, 103.0, 95.5, 102.0),
            (102.0, 102.5, 94.0, 101.0),
            (101.0, 101.5, 100.5, 101.0),
        ]
        bars = _build_bars(rows)
        descriptor, _ = _scripted(
            {1: EntrySignal(101.0, bars[0]), 2: EntrySignal(101.0, bars[1])}
        )
        result = run_backtest(bars, descriptor, {"initial_stop_mode": "entry_low"})

        assert len(result.trades) == 2
        assert result.trades[0].exit_time == bars[2].timestamp
        assert result.trades[1].entry_time == bars[2].timestamp

    def test_end_of_data_closes_at_last_close(self):
        bars = _build_bars(WICK_ROWS)
        descriptor, _ = _scripted({1: EntrySignal(101.0, bars[1])})
        result = run_backtest(bars, descriptor)

        trade = result.trades[0]
        assert trade.exit_reason == ExitReason.END_OF_DATA
        assert trade.exit_price == bars[-1].close
        assert trade.exit_time == bars[-1].timestamp

    def test_missing_reference_bar_defaults_to_entry_bar(self):
        bars = _build_bars(WICK_ROWS)
        descriptor, _ = _scripted({2: EntrySignal(103.0)})
        result = run_backtest(bars, descriptor)
        assert result.trades[0].reference_bar == bars[2]

    @pytest.mark.parametrize("price", [None, float("nan"), float("inf"), "101"])
    def test_malformed_signal_is_discarded(self, price):
        bars = _build_bars(WICK_ROWS)
        descriptor, _ = _scripted({1: EntrySignal(price, bars[0])})
        result = run_backtest(bars, descriptor)

        assert result.trades == []
        assert any("Malformed" in w for w in result.warnings)
        assert "signal_discarded" in _types(result)

    def test_non_signal_return_is_discarded(self):
        bars = _build_bars(WICK_ROWS)
        descriptor, _ = _scripted({1: {"enter": True, "entryPrice": 101.0}})
        result = run_backtest(bars, descriptor)
        assert result.trades == []
        assert "signal_discarded" in _types(result)

    def test_session_fault_degrades_to_no_signal(self):
        class Exploding:
            def __init__(self, trace=None):
                pass

            def check_entry(self, bar, index, history):
                if index == 1:
                    raise RuntimeError("boom")
                return None

        result = run_backtest(_build_bars(WICK_ROWS), _descriptor(Exploding))

        assert result.trades == []
        faults = [e for e in result.events if e["type"] == "session_fault"]
        assert len(faults) == 1
        assert faults[0]["bar_index"] == 1
        assert "boom" in faults[0]["error"]
        assert validate_events(result.events) == []

    def test_on_event_receives_every_event(self):
        received: list[dict] = []
        result = run_backtest(
            _build_bars(SCENARIO_A), get_strategy("red_candle_high_break"), on_event=received.append
        )
        assert received == result.events

    def test_accepts_parameters_instance_and_dict(self):
        bars = _build_bars(SCENARIO_A)
        strategy = get_strategy("red_candle_high_break")
        from_instance = run_backtest(bars, strategy, Parameters(initial_stop_mode="fixed"))
        from_dict = run_backtest(bars, strategy, {"initialSL": "fixed", "fixedSLPoints": 10})

        assert from_instance.trades == from_dict.trades
        assert from_instance.trades[0].initial_stop == 79.0

    def test_parameter_warnings_reach_result(self):
        result = run_backtest(
            _build_bars(SCENARIO_A), get_strategy("red_candle_high_break"), {"trailingBy": "x"}
        )
        assert any("trailing_step" in w for w in result.warnings)

    def test_session_options_forwarded(self):
        captured = {}

        def factory(trace=None, **options):
            captured.update(options)
            return _ScriptedSession(trace=trace)

        BarReplayEngine().run(
            _build_bars(WICK_ROWS), _descriptor(factory), session_options={"volatility_threshold": 3.0}
        )
        assert captured == {"volatility_threshold": 3.0}

    def test_runs_are_independent(self):
        bars = _build_random_walk()
        strategy = get_strategy("red_green_flexible")
        first = run_backtest(bars, strategy)
        second = run_backtest(bars, strategy)
        assert first.trades == second.trades
        assert first.summary == second.summary

    def test_reference_bars_are_frozen(self):
        result = run_backtest(_build_bars(SCENARIO_A), get_strategy("red_candle_high_break"))
        with pytest.raises(dataclasses.FrozenInstanceError):
            result.trades[0].reference_bar.high = 0.0  # type: ignore[misc]


# ---------------------------------------------------------------------------
# Faults stay inside the run
# ---------------------------------------------------------------------------


class _FailingHookSession(_ScriptedSession):
    def __init__(self, trace=None, signals=None, failing: str = "on_exit"):
        super().__init__(trace=trace, signals=signals)
        self.failing = failing

    def on_entry(self):
        super().on_entry()
        if self.failing == "on_entry":
            raise RuntimeError("entry hook boom")

    def on_exit(self):
        super().on_exit()
        if self.failing == "on_exit":
            raise RuntimeError("exit hook boom")


class TestFaultContainment:
    def test_unknown_timezone_falls_back_to_bar_offset(self):
        params = Parameters.from_dict(
            {"time_exit_cutoff": "09:25", "session_timezone": "Mars/Olympus"}
        )
        result = run_backtest(_build_bars(SCENARIO_A), get_strategy("red_candle_high_break"), params)

        trade = result.trades[0]
        assert trade.exit_reason == ExitReason.TIME_EXIT
        assert trade.exit_price == 97.9
        assert any("Mars/Olympus" in w for w in result.warnings)

    def test_unknown_timezone_on_instance(self):
        params = Parameters(time_exit_cutoff=time(15, 0), session_timezone="Mars/Olympus")
        result = run_backtest(_build_bars(SCENARIO_A), get_strategy("red_candle_high_break"), params)

        assert result.trades[0].exit_reason == ExitReason.END_OF_DATA
        assert any("Mars/Olympus" in w for w in result.warnings)

    def test_zero_trailing_step_on_instance_disables_trailing(self):
        result = run_backtest(
            _build_bars(SCENARIO_A),
            get_strategy("red_candle_high_break"),
            Parameters(trailing_step=0.0),
        )

        trade = result.trades[0]
        assert trade.trailing_history == ()
        assert trade.final_stop == trade.initial_stop == 83.0
        assert trade.pl == 10.3
        assert any("trailing disabled" in w for w in result.warnings)

    @pytest.mark.parametrize("failing", ["on_entry", "on_exit"])
    def test_failing_hook_is_contained(self, failing):
        bars = _build_bars(WICK_ROWS)
        signal = EntrySignal(101.0, bars[0])
        descriptor = _descriptor(
            lambda trace=None: _FailingHookSession(trace=trace, signals={1: signal}, failing=failing)
        )
        result = run_backtest(bars, descriptor, {"profit_target": 2.0})

        assert len(result.trades) == 1
        assert result.trades[0].exit_reason == ExitReason.TARGET
        faults = [e for e in result.events if e["type"] == "session_fault"]
        assert len(faults) == 1
        assert faults[0]["hook"] == failing
        assert any(failing in w for w in result.warnings)
        assert validate_events(result.events) == []

    def test_failing_event_callback_is_contained(self):
        def on_event(evt):
            raise ValueError("sink down")

        result = run_backtest(
            _build_bars(SCENARIO_A), get_strategy("red_candle_high_break"), on_event=on_event
        )

        assert result.trades[0].pl == 10.3
        assert "trade_closed" in _types(result)
        assert any("Event callback error" in w for w in result.warnings)

    def test_history_stops_at_current_bar(self):
        seen: list[tuple[int, int, bool]] = []
        peeks: list[bool] = []

        class Peeking:
            def __init__(self, trace=None):
                pass

            def check_entry(self, bar, index, history):
                seen.append((index, len(history), history[-1] is bar))
                try:
                    history[index + 1]
                except IndexError:
                    peeks.append(False)
                else:
                    peeks.append(True)
                return None

        bars = _build_bars(WICK_ROWS)
        run_backtest(bars, _descriptor(Peeking))

        assert seen == [(0, 1, True), (1, 2, True), (2, 3, True)]
        assert peeks == [False, False, False]


class TestPriorBars:
    def test_bounded_view(self):
        bars = _build_bars(SCENARIO_A)
        view = PriorBars(bars, 3)

        assert len(view) == 4
        assert view[0] is bars[0]
        assert view[-1] is bars[3]
        assert view[1:] == bars[1:4]
        assert list(view) == bars[:4]
        with pytest.raises(IndexError):
            view[4]
        with pytest.raises(IndexError):
            view[-5]


# ---------------------------------------------------------------------------
# Properties across every registered strategy
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("strategy", list_strategies(), ids=lambda s: s.id)
class TestLedgerProperties:
    def _run(self, strategy) -> tuple[list[Bar], RunResult]:
        bars = _build_random_walk()
        result = run_backtest(
            bars, strategy, {"profit_target": 8.0, "trailing_trigger": 3.0, "trailing_step": 2.0}
        )
        return bars, result

    def test_trades_are_produced(self, strategy):
        _, result = self._run(strategy)
        assert result.summary.total_trades > 0

    def test_exit_not_before_entry(self, strategy):
        _, result = self._run(strategy)
        for trade in result.trades:
            assert trade.exit_time >= trade.entry_time

    def test_trades_do_not_overlap(self, strategy):
        _, result = self._run(strategy)
        for prev, nxt in zip(result.trades, result.trades[1:]):
            assert nxt.entry_time >= prev.exit_time

    def test_trailing_stop_is_monotonic(self, strategy):
        _, result = self._run(strategy)
        for trade in result.trades:
            stops = [u.new_stop for u in trade.trailing_history]
            assert stops == sorted(stops)
            assert trade.final_stop >= trade.initial_stop

    def test_highest_profit_covers_held_bars(self, strategy):
        bars, result = self._run(strategy)
        for trade in result.trades:
            held = [b for b in bars if trade.entry_time <= b.timestamp <= trade.exit_time]
            best = max(b.high - trade.entry_price for b in held)
            assert trade.highest_profit >= best - 1e-9

    def test_net_pl_is_sum_of_trades(self, strategy):
        _, result = self._run(strategy)
        assert result.summary.net_pl == round(sum(t.pl for t in result.trades), 2)

    def test_events_satisfy_contract(self, strategy):
        _, result = self._run(strategy)
        assert validate_events(result.events) == []
        assert not any("contract" in w.lower() for w in result.warnings)


@pytest.mark.slow
@pytest.mark.parametrize("strategy", list_strategies(), ids=lambda s: s.id)
def test_long_replay_ledger_is_consistent(strategy):
    bars = _build_random_walk(n_bars=50_000, seed=11)
    result = run_backtest(bars, strategy, {"trailing_trigger": 3.0, "trailing_step": 2.0})

    assert result.summary.total_bars == len(bars)
    assert result.summary.net_pl == round(sum(t.pl for t in result.trades), 2)
    for prev, nxt in zip(result.trades, result.trades[1:]):
        assert nxt.entry_time >= prev.exit_time


# ---------------------------------------------------------------------------
# Event contracts
# ---------------------------------------------------------------------------


class TestEventContracts:
    def test_schema_version_on_every_event(self):
        result = run_backtest(_build_bars(SCENARIO_A), get_strategy("red_candle_high_break"))
        assert all(e["schema_version"] == REPLAY_EVENT_SCHEMA_VERSION for e in result.events)

    def test_all_required_keys_is_union(self):
        for keys in REPLAY_EVENT_TYPES.values():
            assert keys <= ALL_REQUIRED_KEYS
        assert COMMON_REQUIRED_KEYS <= ALL_REQUIRED_KEYS

    def test_unknown_type_reported(self):
        errors = validate_events(
            [{"type": "mystery", "bar_index": 0, "ts": "", "phase": "x", "source": "engine"}]
        )
        assert len(errors) == 1
        assert "unknown type" in errors[0]

    def test_missing_keys_reported(self):
        errors = validate_events([{"type": "trade_closed", "bar_index": 0}])
        assert any("missing common keys" in e for e in errors)
        assert any("missing payload keys" in e for e in errors)
