"""Core enumerations used across the package."""

from __future__ import annotations

from enum import Enum


class AggregationMode(str, Enum):
    """How a spec shapes its result.

    Values are strings to ease serialization and CLI interchange.
    """

    RAW = "RAW"
    DEPTH_PROFILE = "DEPTH_PROFILE"
    TIME_SERIES = "TIME_SERIES"
    SPACE_TIME = "SPACE_TIME"
    CUSTOM_GROUP = "CUSTOM_GROUP"


class VolumeAdvice(str, Enum):
    """Advisory outcome of a preflight row count."""

    PROCEED = "proceed"
    WARN = "warn"
    ABORT = "abort"


class QueryStage(str, Enum):
    """Stages of a query run; any stage may move to FAILED."""

    BUILT = "BUILT"
    ESTIMATED = "ESTIMATED"
    EXECUTED = "EXECUTED"
    NORMALIZED = "NORMALIZED"
    RESULT = "RESULT"
    FAILED = "FAILED"


class ColumnKind(str, Enum):
    NUMBER = "number"
    TEXT = "text"
    TIMESTAMP = "timestamp"


__all__ = ["AggregationMode", "VolumeAdvice", "QueryStage", "ColumnKind"]
