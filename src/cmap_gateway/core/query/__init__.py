"""Core query engine public API.

Exposes the functions used by the CLI and MCP layers. This package centralizes
catalog discovery, spec building, preflight estimation, result normalization
and the query lifecycle. Remote transport lives in `cmap_gateway.remote`.
"""

from .catalog import CatalogIndex, TableEntry, VariableEntry
from .spec import GroupKey, QuerySpec, Range, Window
from .plan import (
    apply_spatial_binning,
    apply_temporal_binning,
    build_bounding_box,
    build_center_tolerance,
    build_custom_group,
    build_depth_profile,
    build_space_time,
    build_time_series,
    escape_identifier,
    render_count_query,
    render_head,
    render_query,
    render_sample,
)
from .materialize import RowEstimate, classify_volume, estimate_row_count
from .normalize import QueryResult, RawTable, normalize
from .lifecycle import QueryRun, run_query

__all__ = [
    "CatalogIndex",
    "TableEntry",
    "VariableEntry",
    "GroupKey",
    "QuerySpec",
    "Range",
    "Window",
    "apply_spatial_binning",
    "apply_temporal_binning",
    "build_bounding_box",
    "build_center_tolerance",
    "build_custom_group",
    "build_depth_profile",
    "build_space_time",
    "build_time_series",
    "escape_identifier",
    "render_count_query",
    "render_head",
    "render_query",
    "render_sample",
    "RowEstimate",
    "classify_volume",
    "estimate_row_count",
    "QueryResult",
    "RawTable",
    "normalize",
    "QueryRun",
    "run_query",
]
