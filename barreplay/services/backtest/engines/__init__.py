"""Backtest engines."""
