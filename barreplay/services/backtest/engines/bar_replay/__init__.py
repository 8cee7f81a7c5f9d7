"""Bar-by-bar replay engine.

Modules:
- types: Bar, Parameters, Trade, SkippedSetup, RunSummary, RunResult
- trade_manager: TradeLifecycleManager (stops, trailing, target, time exit)
- engine: BarReplayEngine / run_backtest (simulation loop)
- contracts: trace event schema
- errors: ConfigurationError, AmbiguousBarError, DataError
"""
