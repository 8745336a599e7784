from __future__ import annotations

import logging
import math
from dataclasses import replace
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from cmap_gateway.core.enums import AggregationMode
from cmap_gateway.core.errors import InvalidQuerySpec, InvalidRange
from cmap_gateway.core.schemas import AXES, DEPTH, LAT, LON, RESERVED_WORDS, SPATIAL_AXES, TIME
from cmap_gateway.core.utils import format_time_literal
from .spec import IDENTIFIER_RE, Bounds, GroupKey, QuerySpec, Range, Window, as_bounds, check_identifier

logger = logging.getLogger(__name__)

VariableArg = Union[str, Sequence[str]]

# Output column order for raw selections.
COORDINATE_ORDER = (TIME, LAT, LON, DEPTH)


def escape_identifier(name: str) -> str:
    """Bracket-quote a column/table name when the dialect requires it.

    Examples:
        >>> escape_identifier("chl")
        'chl'
        >>> escape_identifier("order")
        '[order]'
        >>> escape_identifier("odd]name")
        '[odd]]name]'
    """
    if IDENTIFIER_RE.match(name) and name.upper() not in RESERVED_WORDS:
        return name
    return "[" + name.replace("]", "]]") + "]"


def _num(value: float) -> str:
    return repr(float(value))


def _variables(variable: VariableArg) -> Tuple[str, ...]:
    if isinstance(variable, str):
        return (variable,)
    return tuple(variable)


def _predicate(axis: str, bounds: Bounds) -> str:
    col = escape_identifier(axis)
    if isinstance(bounds, Range):
        if axis == TIME:
            return f"{col} BETWEEN {format_time_literal(bounds.lo)} AND {format_time_literal(bounds.hi)}"
        return f"{col} BETWEEN {_num(bounds.lo)} AND {_num(bounds.hi)}"
    if axis == TIME:
        seconds = math.ceil(bounds.tolerance.total_seconds())
        return f"ABS(DATEDIFF(second, {format_time_literal(bounds.center)}, {col})) <= {seconds}"
    return f"ABS({col} - {_num(bounds.center)}) <= {_num(bounds.tolerance)}"


def render_where(spec: QuerySpec) -> str:
    """Return the WHERE clause (without the keyword) shared by data and count queries."""
    parts = [_predicate(axis, b) for axis, b in spec.bounds()]
    if spec.non_null:
        parts.extend(f"{escape_identifier(v)} IS NOT NULL" for v in spec.variables)
    return " AND ".join(parts)


def render_group_key(key: GroupKey) -> str:
    col = escape_identifier(key.axis)
    if key.kind == "raw":
        return col
    if key.kind == "round":
        return f"ROUND({col}, {key.decimals})"
    if key.kind == "floor":
        return f"FLOOR({col})"
    if key.kind == "spatial_bin":
        w, off = _num(key.width), _num(key.offset)
        return f"(FLOOR(({col} - {off}) / {w}) * {w} + {off} + {_num(key.width / 2)})"
    if key.kind == "temporal_bin":
        ref = format_time_literal(key.reference)
        w = int(key.width)
        return f"(ROUND(DATEDIFF(day, {ref}, {col}) / {w}.0, 0) * {w})"
    if key.kind == "year":
        return f"YEAR({col})"
    return f"MONTH({col})"


def _aggregate_columns(variables: Iterable[str]) -> List[str]:
    cols = ["COUNT(*) AS row_count"]
    for v in variables:
        c = escape_identifier(v)
        cols.append(f"COUNT({c}) AS {escape_identifier(v + '_count')}")
        cols.append(f"AVG({c}) AS {escape_identifier(v + '_mean')}")
        cols.append(f"STDEV({c}) AS {escape_identifier(v + '_std')}")
    return cols


def render_query(spec: QuerySpec) -> str:
    """Render the final query text for a spec."""
    top = f"TOP({int(spec.limit)}) " if spec.limit else ""
    if spec.is_aggregate:
        keys = [render_group_key(k) for k in spec.group_keys]
        select = [f"{expr} AS {escape_identifier(k.alias)}" for expr, k in zip(keys, spec.group_keys)]
        select += _aggregate_columns(spec.variables)
    else:
        constrained = {axis for axis, _ in spec.bounds()}
        select = [escape_identifier(a) for a in COORDINATE_ORDER if a in constrained]
        select += [escape_identifier(v) for v in spec.variables]

    sql = f"SELECT {top}{', '.join(select)} FROM {escape_identifier(spec.table)}"
    where = render_where(spec)
    if where:
        sql += f" WHERE {where}"
    if spec.is_aggregate:
        sql += " GROUP BY " + ", ".join(keys)
        sql += " ORDER BY " + ", ".join(escape_identifier(k.alias) for k in spec.group_keys)
    logger.debug("Rendered %s query for %s: %s", spec.mode.value, spec.table, sql)
    return sql


def render_count_query(spec: QuerySpec) -> str:
    """Count-only variant of a spec: same predicates, no grouping, no limit."""
    cols = ["COUNT(*) AS total_rows"]
    cols += [f"COUNT({escape_identifier(v)}) AS {escape_identifier(v + '_count')}" for v in spec.variables]
    sql = f"SELECT {', '.join(cols)} FROM {escape_identifier(spec.table)}"
    where = render_where(spec)
    if where:
        sql += f" WHERE {where}"
    return sql


def render_sample(table: str, n: int) -> str:
    """Random sample of n rows using the dialect's NEWID() ordering."""
    if int(n) <= 0:
        raise InvalidQuerySpec(f"Sample size must be positive, got {n}")
    return f"SELECT TOP({int(n)}) * FROM {escape_identifier(check_identifier(table))} ORDER BY NEWID()"


def render_head(table: str, n: int = 5) -> str:
    if int(n) <= 0:
        raise InvalidQuerySpec(f"Row count must be positive, got {n}")
    return f"SELECT TOP({int(n)}) * FROM {escape_identifier(check_identifier(table))}"


# ============================================================================
# BUILDERS
# ============================================================================


def build_bounding_box(
    table: str,
    variable: VariableArg,
    lat_range: Any,
    lon_range: Any,
    time_range: Any,
    depth_range: Any = None,
    *,
    non_null: bool = False,
    limit: Optional[int] = None,
) -> QuerySpec:
    """Raw selection constrained by closed intervals on each given axis.

    Ranges are (min, max) pairs or `Range` values; `depth_range=None` leaves
    depth unconstrained (surface products carry no depth column).

    Raises:
        InvalidRange: If any axis has min > max.
    """
    return QuerySpec(
        table=table,
        variables=_variables(variable),
        lat=as_bounds(LAT, lat_range),
        lon=as_bounds(LON, lon_range),
        depth=as_bounds(DEPTH, depth_range),
        time=as_bounds(TIME, time_range),
        non_null=non_null,
        limit=limit,
    )


def build_center_tolerance(
    table: str,
    variable: VariableArg,
    centers: Mapping[str, Any],
    tolerances: Mapping[str, Any],
    *,
    non_null: bool = False,
    limit: Optional[int] = None,
) -> QuerySpec:
    """Raw selection with |axis - center| <= tolerance on each centered axis.

    Time tolerances may be timedeltas or numbers of days.

    Raises:
        InvalidRange: On negative tolerance, or a center/tolerance without its pair.
    """
    unknown = (set(centers) | set(tolerances)) - set(AXES)
    if unknown:
        raise InvalidQuerySpec(f"Unknown axes: {sorted(unknown)}")
    bounds = {}
    for axis in AXES:
        if axis not in centers and axis not in tolerances:
            continue
        if axis not in centers:
            raise InvalidRange(f"Tolerance given without a center for {axis}", axis=axis)
        if axis not in tolerances:
            raise InvalidRange(f"Center given without a tolerance for {axis}", axis=axis)
        bounds[axis] = as_bounds(axis, Window(centers[axis], tolerances[axis]))
    return QuerySpec(
        table=table,
        variables=_variables(variable),
        non_null=non_null,
        limit=limit,
        **bounds,
    )


TEMPLATE_KEYS: Mapping[AggregationMode, Tuple[GroupKey, ...]] = {
    AggregationMode.DEPTH_PROFILE: (GroupKey.raw(DEPTH),),
    AggregationMode.TIME_SERIES: (GroupKey.raw(TIME),),
    AggregationMode.SPACE_TIME: (GroupKey.raw(LAT), GroupKey.raw(LON)),
}


def aggregate(
    spec: QuerySpec,
    mode: AggregationMode,
    keys: Optional[Sequence[GroupKey]] = None,
    *,
    non_null: Optional[bool] = None,
) -> QuerySpec:
    """Turn any spec into a grouped one, keeping its predicates.

    `keys` defaults to the template of `mode`; CUSTOM_GROUP needs explicit keys.
    """
    mode = AggregationMode(mode)
    if mode == AggregationMode.RAW:
        return replace(spec, mode=mode, group_keys=())
    if keys is None:
        if mode not in TEMPLATE_KEYS:
            raise InvalidQuerySpec(f"{mode.value} requires explicit grouping keys")
        keys = TEMPLATE_KEYS[mode]
    return replace(
        spec,
        mode=mode,
        group_keys=tuple(keys),
        non_null=spec.non_null if non_null is None else non_null,
    )


def _grouped(
    mode: AggregationMode,
    keys: Optional[Sequence[GroupKey]],
    table: str,
    variable: VariableArg,
    lat_range: Any,
    lon_range: Any,
    time_range: Any,
    depth_range: Any,
    non_null: bool,
) -> QuerySpec:
    base = build_bounding_box(table, variable, lat_range, lon_range, time_range, depth_range)
    return aggregate(base, mode, keys, non_null=non_null)


def build_depth_profile(
    table, variable, lat_range, lon_range, time_range, depth_range=None, *, non_null=False
) -> QuerySpec:
    """Average away lat/lon/time; one row per depth level."""
    return _grouped(
        AggregationMode.DEPTH_PROFILE,
        None,
        table, variable, lat_range, lon_range, time_range, depth_range, non_null,
    )


def build_time_series(
    table, variable, lat_range, lon_range, time_range, depth_range=None, *, non_null=False
) -> QuerySpec:
    """Average away lat/lon/depth; one row per timestamp."""
    return _grouped(
        AggregationMode.TIME_SERIES,
        None,
        table, variable, lat_range, lon_range, time_range, depth_range, non_null,
    )


def build_space_time(
    table, variable, lat_range, lon_range, time_range, depth_range=None, *, non_null=False
) -> QuerySpec:
    """Average away time/depth; one row per (lat, lon) grid point."""
    return _grouped(
        AggregationMode.SPACE_TIME,
        None,
        table, variable, lat_range, lon_range, time_range, depth_range, non_null,
    )


def build_custom_group(
    table: str,
    variable: VariableArg,
    keys: Sequence[GroupKey],
    *,
    lat_range: Any = None,
    lon_range: Any = None,
    time_range: Any = None,
    depth_range: Any = None,
    non_null: bool = False,
) -> QuerySpec:
    """Group by arbitrary keys, e.g. [GroupKey.rounded("lat", 1), GroupKey.floored("lon")]."""
    return _grouped(
        AggregationMode.CUSTOM_GROUP,
        keys,
        table, variable, lat_range, lon_range, time_range, depth_range, non_null,
    )


# ============================================================================
# BINNING
# ============================================================================


def _rekey(spec: QuerySpec, axes: Sequence[str], new_keys: Mapping[str, GroupKey]) -> QuerySpec:
    keys: List[GroupKey] = []
    placed = set()
    for k in spec.group_keys:
        if k.axis in axes:
            if k.axis not in placed:
                keys.append(new_keys[k.axis])
                placed.add(k.axis)
            continue
        keys.append(k)
    keys.extend(new_keys[a] for a in axes if a not in placed)
    mode = AggregationMode.CUSTOM_GROUP if spec.mode == AggregationMode.RAW else spec.mode
    return replace(spec, mode=mode, group_keys=tuple(keys))


def apply_spatial_binning(spec: QuerySpec, width: float, offset: Optional[float] = None) -> QuerySpec:
    """Regrid lat/lon onto regular bins of `width` degrees.

    `offset` aligns the bin edges (default width/2, which centers bins on
    multiples of width); each value is labelled with its bin center.
    RAW specs become CUSTOM_GROUP.
    """
    new_keys = {axis: GroupKey.spatial_bin(axis, width, offset) for axis in SPATIAL_AXES}
    return _rekey(spec, SPATIAL_AXES, new_keys)


def apply_temporal_binning(spec: QuerySpec, width_days: int, reference_date: Any) -> QuerySpec:
    """Group time into `width_days`-day bins counted from `reference_date`.

    Bin labels are integer day offsets from the reference, which stay aligned
    across leap years.
    """
    new_keys = {TIME: GroupKey.temporal_bin(width_days, reference_date)}
    return _rekey(spec, (TIME,), new_keys)


__all__ = [
    "escape_identifier",
    "render_where",
    "render_group_key",
    "render_query",
    "render_count_query",
    "render_sample",
    "render_head",
    "build_bounding_box",
    "build_center_tolerance",
    "build_depth_profile",
    "build_time_series",
    "build_space_time",
    "build_custom_group",
    "aggregate",
    "TEMPLATE_KEYS",
    "apply_spatial_binning",
    "apply_temporal_binning",
]
