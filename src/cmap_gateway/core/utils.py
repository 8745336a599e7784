"""Core utility functions for CMAP Gateway.

This module provides shared time and rounding helpers used by the query
builder, the binning keys and the result normalizer.
"""

from __future__ import annotations

import math
from datetime import date, datetime
from typing import Union

import pandas as pd

TimeLike = Union[str, date, datetime, pd.Timestamp]

TIME_LITERAL_FORMAT = "%Y-%m-%dT%H:%M:%S"


def to_timestamp(value: TimeLike) -> pd.Timestamp:
    """Parse a date/datetime/ISO string into a timezone-naive pandas Timestamp.

    Raises:
        ValueError: If the value cannot be parsed.

    Examples:
        >>> to_timestamp("2016-01-01")
        Timestamp('2016-01-01 00:00:00')
    """
    try:
        ts = pd.Timestamp(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Unparsable time value: {value!r}") from e
    if ts is pd.NaT:
        raise ValueError(f"Unparsable time value: {value!r}")
    if ts.tzinfo is not None:
        ts = ts.tz_convert("UTC").tz_localize(None)
    return ts


def format_time_literal(value: TimeLike) -> str:
    """Render a time value as a quoted ISO-8601 literal for the query dialect.

    Examples:
        >>> format_time_literal("2016-12-31")
        "'2016-12-31T00:00:00'"
    """
    return "'" + to_timestamp(value).strftime(TIME_LITERAL_FORMAT) + "'"


def days_between(reference: TimeLike, value: TimeLike) -> int:
    """Calendar-day boundaries crossed from reference to value (DATEDIFF(day, ...)).

    Examples:
        >>> days_between("2016-01-01T23:59:00", "2016-01-02T00:01:00")
        1
    """
    ref = to_timestamp(reference).normalize()
    ts = to_timestamp(value).normalize()
    return int((ts - ref).days)


def round_half_away(x: float, decimals: int = 0) -> float:
    """SQL-style ROUND: ties go away from zero (Python's round() is banker's).

    Examples:
        >>> round_half_away(2.5)
        3.0
        >>> round_half_away(-2.5)
        -3.0
    """
    factor = 10.0 ** decimals
    return math.copysign(math.floor(abs(x) * factor + 0.5), x) / factor


__all__ = [
    "TimeLike",
    "to_timestamp",
    "format_time_literal",
    "days_between",
    "round_half_away",
]
