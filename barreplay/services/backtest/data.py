"""OHLC bar CSV parsing and validation for the replay engine."""

from dataclasses import dataclass, field
from datetime import datetime
from io import StringIO

import pandas as pd
import structlog

from barreplay.services.backtest.engines.bar_replay.errors import DataError
from barreplay.services.backtest.engines.bar_replay.types import Bar

logger = structlog.get_logger(__name__)

# Required columns (case-insensitive)
REQUIRED_COLUMNS = {"timestamp", "open", "high", "low", "close"}

# Optional columns filled with 0 when absent
OPTIONAL_COLUMNS = ("volume", "open_interest")

# Column aliases mapping (lowercase)
COLUMN_ALIASES = {
    "date": "timestamp",
    "datetime": "timestamp",
    "time": "timestamp",
    "o": "open",
    "h": "high",
    "l": "low",
    "c": "close",
    "v": "volume",
    "vol": "volume",
    "oi": "open_interest",
    "openinterest": "open_interest",
    "open interest": "open_interest",
}

PRICE_COLUMNS = ["open", "high", "low", "close"]


@dataclass
class BarParseResult:
    """Result of parsing a bar CSV."""

    bars: list[Bar]
    df: pd.DataFrame
    row_count: int
    date_min: datetime
    date_max: datetime
    warnings: list[str] = field(default_factory=list)


def _parse_timestamps(series: pd.Series, warnings: list[str]) -> pd.Series:
    """Parse timestamps, keeping each file's own UTC offset where possible."""
    try:
        parsed = pd.to_datetime(series)
        if pd.api.types.is_datetime64_any_dtype(parsed):
            return parsed
    except (ValueError, TypeError):
        pass
    # Mixed offsets cannot share one dtype: normalize to UTC
    try:
        parsed = pd.to_datetime(series, utc=True)
    except Exception as e:
        raise DataError(
            f"Failed to parse timestamp column: {e}",
            {"sample_values": series.head(5).tolist()},
        )
    warnings.append("Timestamps have mixed UTC offsets; converted to UTC")
    return parsed


def parse_bars_csv(
    file_content: bytes,
    filename: str = "data.csv",
    max_rows: int = 2_000_000,
    max_file_size_mb: int = 25,
) -> BarParseResult:
    """
    Parse a bar CSV into chronologically ordered Bars.

    Broker exports are often newest-first; rows are sorted ascending and
    a warning is recorded when the order changed.

    Args:
        file_content: Raw CSV bytes
        filename: Original filename (for log and error messages)
        max_rows: Maximum allowed rows
        max_file_size_mb: Maximum file size in MB

    Returns:
        BarParseResult with bars, DataFrame and metadata

    Raises:
        DataError: If data is invalid
    """
    warnings: list[str] = []

    file_size_mb = len(file_content) / (1024 * 1024)
    if file_size_mb > max_file_size_mb:
        raise DataError(
            f"File too large: {file_size_mb:.1f}MB (max {max_file_size_mb}MB)",
            {"file_size_mb": file_size_mb, "max_mb": max_file_size_mb},
        )

    try:
        content_str = file_content.decode("utf-8-sig")
        df = pd.read_csv(StringIO(content_str), skipinitialspace=True)
    except UnicodeDecodeError:
        try:
            df = pd.read_csv(StringIO(file_content.decode("latin-1")))
            warnings.append("File decoded as latin-1 (non-UTF8)")
        except Exception as e:
            raise DataError(f"Failed to decode CSV: {e}")
    except pd.errors.EmptyDataError:
        raise DataError("CSV file is empty")
    except Exception as e:
        raise DataError(f"Failed to parse CSV: {e}")

    if len(df) == 0:
        raise DataError("CSV has no data rows")

    if len(df) > max_rows:
        raise DataError(
            f"Too many rows: {len(df)} (max {max_rows})",
            {"row_count": len(df), "max_rows": max_rows},
        )

    df.columns = df.columns.str.lower().str.strip()

    rename_map = {c: COLUMN_ALIASES[c] for c in df.columns if c in COLUMN_ALIASES}
    if rename_map:
        df = df.rename(columns=rename_map)

    missing = REQUIRED_COLUMNS - set(df.columns)
    if missing:
        raise DataError(
            f"Missing required columns: {', '.join(sorted(missing))}",
            {"missing_columns": sorted(missing), "found_columns": list(df.columns)},
        )

    for col in OPTIONAL_COLUMNS:
        if col not in df.columns:
            df[col] = 0.0

    numeric_cols = PRICE_COLUMNS + list(OPTIONAL_COLUMNS)
    for col in numeric_cols:
        df[col] = pd.to_numeric(df[col], errors="coerce")
    df[list(OPTIONAL_COLUMNS)] = df[list(OPTIONAL_COLUMNS)].fillna(0.0)

    # Rows without a timestamp or a full OHLC set are unusable
    original_len = len(df)
    df = df.dropna(subset=["timestamp"] + PRICE_COLUMNS)
    dropped = original_len - len(df)
    if dropped > 0:
        warnings.append(f"Dropped {dropped} rows with missing timestamp/OHLC values")

    if len(df) == 0:
        raise DataError("No valid rows after removing incomplete rows")

    df["timestamp"] = _parse_timestamps(df["timestamp"], warnings)

    for col in PRICE_COLUMNS:
        if (df[col] < 0).any():
            raise DataError(
                f"Column '{col}' contains negative values",
                {"min_value": float(df[col].min())},
            )

    invalid_ohlc = int((df["high"] < df["low"]).sum())
    if invalid_ohlc > 0:
        raise DataError(
            f"{invalid_ohlc} rows have high < low",
            {"invalid_rows": invalid_ohlc},
        )

    if not df["timestamp"].is_monotonic_increasing:
        if df["timestamp"].is_monotonic_decreasing:
            warnings.append("Data was in reverse chronological order; reversed")
        else:
            warnings.append("Data was sorted by timestamp (was not in chronological order)")
        df = df.sort_values("timestamp", ascending=True, kind="stable")

    original_len = len(df)
    df = df.drop_duplicates(subset=["timestamp"], keep="last")
    duplicates_removed = original_len - len(df)
    if duplicates_removed > 0:
        warnings.append(f"Removed {duplicates_removed} duplicate timestamps")

    df = df.set_index("timestamp")[numeric_cols].astype(float)

    bars = bars_from_dataframe(df)

    logger.info(
        "Parsed bar data",
        filename=filename,
        row_count=len(bars),
        date_min=str(df.index.min()),
        date_max=str(df.index.max()),
        warnings_count=len(warnings),
    )

    return BarParseResult(
        bars=bars,
        df=df,
        row_count=len(bars),
        date_min=df.index.min().to_pydatetime(),
        date_max=df.index.max().to_pydatetime(),
        warnings=warnings,
    )


def bars_from_dataframe(df: pd.DataFrame) -> list[Bar]:
    """Convert a timestamp-indexed frame with lowercase OHLC columns to Bars.

    ``volume`` and ``open_interest`` are optional.
    """
    has_volume = "volume" in df.columns
    has_oi = "open_interest" in df.columns
    bars: list[Bar] = []
    for ts, row in zip(df.index, df.itertuples(index=False)):
        bars.append(
            Bar(
                timestamp=pd.Timestamp(ts).to_pydatetime(),
                open=float(row.open),
                high=float(row.high),
                low=float(row.low),
                close=float(row.close),
                volume=float(row.volume) if has_volume else 0.0,
                open_interest=float(row.open_interest) if has_oi else 0.0,
            )
        )
    return bars
