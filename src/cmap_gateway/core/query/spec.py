"""Selection values: bounds, grouping keys and the validated QuerySpec.

A `QuerySpec` is the single value threaded through the builder functions in
`plan.py`; every predicate and grouping key is validated here, at build time,
before any text is rendered.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional, Tuple, Union

import pandas as pd

from cmap_gateway.core.enums import AggregationMode
from cmap_gateway.core.errors import InvalidQuerySpec, InvalidRange, UnknownColumn, UnknownTable
from cmap_gateway.core.schemas import AXES, DEPTH, LAT, LON, TIME
from cmap_gateway.core.utils import days_between, round_half_away, to_timestamp

IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class Range:
    """Closed interval [lo, hi] on one axis."""

    lo: Any
    hi: Any


@dataclass(frozen=True)
class Window:
    """Center plus tolerance on one axis: |axis - center| <= tolerance."""

    center: Any
    tolerance: Any


Bounds = Union[Range, Window]


def as_bounds(axis: str, value: Any) -> Optional[Bounds]:
    """Coerce a (lo, hi) pair, Range or Window into typed bounds for `axis`.

    Time values become pandas Timestamps, time tolerances Timedeltas (plain
    numbers are read as days); other axes become floats.

    Raises:
        InvalidRange: If values cannot be parsed, min > max, or tolerance < 0.
    """
    if value is None:
        return None
    if isinstance(value, (tuple, list)):
        if len(value) != 2:
            raise InvalidRange(f"{axis} range needs exactly two values", axis=axis)
        value = Range(value[0], value[1])

    try:
        if isinstance(value, Range):
            if axis == TIME:
                bounds: Bounds = Range(to_timestamp(value.lo), to_timestamp(value.hi))
            else:
                bounds = Range(float(value.lo), float(value.hi))
        elif isinstance(value, Window):
            if axis == TIME:
                tol = value.tolerance
                if not isinstance(tol, (timedelta, pd.Timedelta)):
                    tol = pd.Timedelta(days=float(tol))
                bounds = Window(to_timestamp(value.center), pd.Timedelta(tol))
            else:
                bounds = Window(float(value.center), float(value.tolerance))
        else:
            raise InvalidRange(f"Unsupported bounds for {axis}: {value!r}", axis=axis)
    except (TypeError, ValueError) as e:
        raise InvalidRange(f"Invalid {axis} bounds: {e}", axis=axis) from e

    _check_bounds(axis, bounds)
    return bounds


def _check_bounds(axis: str, bounds: Bounds) -> None:
    if isinstance(bounds, Range):
        lo, hi = bounds.lo, bounds.hi
        if axis != TIME and (math.isnan(lo) or math.isnan(hi)):
            raise InvalidRange(f"{axis} range contains NaN", axis=axis)
        if lo > hi:
            raise InvalidRange(f"{axis} range is reversed: {lo} > {hi}", axis=axis)
    else:
        tol = bounds.tolerance
        zero = pd.Timedelta(0) if axis == TIME else 0.0
        if axis != TIME and math.isnan(tol):
            raise InvalidRange(f"{axis} tolerance is NaN", axis=axis)
        if tol < zero:
            raise InvalidRange(f"{axis} tolerance is negative: {tol}", axis=axis)


# ============================================================================
# GROUPING KEYS (aggregation template)
# ============================================================================

GROUP_KINDS = ("raw", "round", "floor", "spatial_bin", "temporal_bin", "year", "month")


@dataclass(frozen=True)
class GroupKey:
    """One grouping expression over a coordinate axis.

    The same expression is rendered to SQL by `plan.render_group_key` and can
    be evaluated locally with `evaluate`, so local data can be labelled with the
    exact bin the remote side would assign.
    """

    axis: str
    kind: str = "raw"
    decimals: int = 0
    width: Optional[float] = None
    offset: Optional[float] = None
    reference: Optional[pd.Timestamp] = None

    def __post_init__(self) -> None:
        if self.axis not in AXES:
            raise InvalidQuerySpec(f"Unknown grouping axis: {self.axis}")
        if self.kind not in GROUP_KINDS:
            raise InvalidQuerySpec(f"Unknown grouping kind: {self.kind}")
        time_kinds = {"temporal_bin", "year", "month"}
        if self.kind in time_kinds and self.axis != TIME:
            raise InvalidQuerySpec(f"{self.kind} grouping requires the time axis")
        if self.kind in {"round", "floor", "spatial_bin"} and self.axis == TIME:
            raise InvalidQuerySpec(f"{self.kind} grouping is not defined for time")
        if self.kind in {"spatial_bin", "temporal_bin"}:
            if self.width is None or not self.width > 0:
                raise InvalidRange(f"Bin width must be positive, got {self.width}", axis=self.axis)
        if self.kind == "temporal_bin" and self.reference is None:
            raise InvalidQuerySpec("Temporal binning requires a reference date")

    @classmethod
    def raw(cls, axis: str) -> "GroupKey":
        return cls(axis)

    @classmethod
    def rounded(cls, axis: str, decimals: int = 0) -> "GroupKey":
        return cls(axis, "round", decimals=int(decimals))

    @classmethod
    def floored(cls, axis: str) -> "GroupKey":
        return cls(axis, "floor")

    @classmethod
    def spatial_bin(cls, axis: str, width: float, offset: Optional[float] = None) -> "GroupKey":
        width = float(width)
        offset = width / 2 if offset is None else float(offset)
        return cls(axis, "spatial_bin", width=width, offset=offset)

    @classmethod
    def temporal_bin(cls, width_days: int, reference: Any) -> "GroupKey":
        if int(width_days) != width_days:
            raise InvalidRange("Temporal bin width must be a whole number of days", axis=TIME)
        return cls(TIME, "temporal_bin", width=int(width_days), reference=to_timestamp(reference))

    @classmethod
    def year(cls) -> "GroupKey":
        return cls(TIME, "year")

    @classmethod
    def month(cls) -> "GroupKey":
        return cls(TIME, "month")

    @property
    def alias(self) -> str:
        if self.kind == "temporal_bin":
            return "time_bin"
        if self.kind in {"year", "month"}:
            return self.kind
        return self.axis

    def evaluate(self, value: Any) -> Any:
        """Apply the grouping expression to one local value (None stays None)."""
        if value is None:
            return None
        if self.kind == "raw":
            return value
        if self.kind == "round":
            return round_half_away(float(value), self.decimals)
        if self.kind == "floor":
            return float(math.floor(float(value)))
        if self.kind == "spatial_bin":
            assert self.width is not None and self.offset is not None
            k = math.floor((float(value) - self.offset) / self.width)
            return k * self.width + self.offset + self.width / 2
        if self.kind == "temporal_bin":
            assert self.width is not None and self.reference is not None
            days = days_between(self.reference, value)
            return int(round_half_away(days / self.width) * self.width)
        ts = to_timestamp(value)
        return ts.year if self.kind == "year" else ts.month


# ============================================================================
# QUERY SPEC
# ============================================================================


def check_identifier(name: str, *, table: Optional[str] = None) -> str:
    if not isinstance(name, str) or not IDENTIFIER_RE.match(name):
        if table is None:
            raise UnknownTable(str(name))
        raise UnknownColumn(str(name), table)
    return name


@dataclass(frozen=True)
class QuerySpec:
    """Validated, immutable description of one remote selection.

    Attributes:
        table: Remote table name (e.g. "tblCHL_REP").
        variables: Variable columns to select or aggregate.
        lat, lon, depth, time: Per-axis bounds; None contributes no predicate.
        mode: Aggregation mode.
        group_keys: Grouping expressions (empty for RAW).
        non_null: Keep only rows where every selected variable is non-null.
        limit: Optional TOP(n) row cap.
    """

    table: str
    variables: Tuple[str, ...]
    lat: Optional[Bounds] = None
    lon: Optional[Bounds] = None
    depth: Optional[Bounds] = None
    time: Optional[Bounds] = None
    mode: AggregationMode = AggregationMode.RAW
    group_keys: Tuple[GroupKey, ...] = ()
    non_null: bool = False
    limit: Optional[int] = None

    def __post_init__(self) -> None:
        check_identifier(self.table)
        if isinstance(self.variables, str) or not self.variables:
            raise InvalidQuerySpec("At least one variable name is required")
        object.__setattr__(self, "variables", tuple(self.variables))
        object.__setattr__(self, "group_keys", tuple(self.group_keys))
        for var in self.variables:
            check_identifier(var, table=self.table)
            if var in AXES:
                raise InvalidQuerySpec(f"Coordinate column {var} is always selected")
        if len(set(self.variables)) != len(self.variables):
            raise InvalidQuerySpec("Duplicate variables in spec")

        for axis in AXES:
            bounds = getattr(self, axis)
            if bounds is not None:
                _check_bounds(axis, bounds)

        if self.mode == AggregationMode.RAW and self.group_keys:
            raise InvalidQuerySpec("RAW specs cannot carry grouping keys")
        if self.mode != AggregationMode.RAW and not self.group_keys:
            raise InvalidQuerySpec(f"{self.mode.value} specs need at least one grouping key")
        aliases = [k.alias for k in self.group_keys]
        if len(set(aliases)) != len(aliases):
            raise InvalidQuerySpec(f"Duplicate grouping keys: {aliases}")

        if self.limit is not None and (int(self.limit) != self.limit or self.limit <= 0):
            raise InvalidQuerySpec(f"limit must be a positive integer, got {self.limit}")

    @property
    def is_aggregate(self) -> bool:
        return self.mode != AggregationMode.RAW

    def bounds(self):
        """Yield (axis, bounds) for constrained axes in canonical order."""
        for axis in (LAT, LON, DEPTH, TIME):
            b = getattr(self, axis)
            if b is not None:
                yield axis, b


__all__ = [
    "Range",
    "Window",
    "Bounds",
    "as_bounds",
    "GroupKey",
    "QuerySpec",
    "check_identifier",
]
