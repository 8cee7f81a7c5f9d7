"""barreplay - Bar-by-bar strategy replay engine.

Replays historical OHLC bars through pluggable entry strategies and a
trade lifecycle manager, producing a trade ledger and summary statistics.
"""

__version__ = "0.1.0"
