"""Error taxonomy for the bar replay engine.

None of these escape a run: configuration problems fall back to
defaults, ambiguous bars become skipped setups, and bad data yields an
empty result. ``DataError`` is raised only by the CSV loader, outside
the simulation loop.
"""

from typing import Optional


class ReplayError(Exception):
    """Base error with a message and structured details."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(ReplayError):
    """Unknown stop mode, invalid or missing run parameter."""


class AmbiguousBarError(ReplayError):
    """Entry trigger and stop level fall inside the same bar."""


class DataError(ReplayError):
    """Empty, malformed or too-short bar data."""
