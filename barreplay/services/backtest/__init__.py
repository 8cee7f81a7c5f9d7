"""Backtest service layer: bar loading, replay engine, statistics, sweeps."""
