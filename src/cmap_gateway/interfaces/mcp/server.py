"""
Minimal MCP server exposing the gateway as tools.

Tools:
 - search_catalog
 - describe_table
 - estimate_selection
 - query_selection
 - run_sql

Resources:
 - cmap://catalog
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

try:
    from mcp.server.fastmcp import FastMCP
except Exception as exc:
    raise RuntimeError(
        "The 'mcp' package is required for the MCP server. Install with: pip install mcp"
    ) from exc

from cmap_gateway.core.config import GatewaySettings, load_settings
from cmap_gateway.core.enums import AggregationMode, VolumeAdvice
from cmap_gateway.core.errors import GatewayError, InvalidQuerySpec
from cmap_gateway.core.query import (
    CatalogIndex,
    QueryResult,
    QuerySpec,
    apply_spatial_binning,
    build_bounding_box,
    classify_volume,
    estimate_row_count,
    run_query,
)
from cmap_gateway.core.query.plan import aggregate
from cmap_gateway.remote.client import RemoteClient
from cmap_gateway.remote.executor import ManualQueryExecutor

# Largest raw result returned inline; larger results are refused in favour of narrower selections
MAX_INLINE_ROWS = 5000

_SERVER = FastMCP("cmap-gateway")
_SETTINGS: Optional[GatewaySettings] = None
_EXECUTOR: Optional[ManualQueryExecutor] = None
_CATALOG: Optional[CatalogIndex] = None

# MCP uses stdout for protocol
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stderr)],
)
logger = logging.getLogger(__name__)


def configure(settings: GatewaySettings, executor: Optional[ManualQueryExecutor] = None) -> None:
    """Bind the tools to settings (and optionally a prebuilt executor)."""
    global _SETTINGS, _EXECUTOR, _CATALOG
    _SETTINGS = settings
    _EXECUTOR = executor or ManualQueryExecutor(RemoteClient(settings))
    _CATALOG = CatalogIndex(
        _EXECUTOR, catalog_query=settings.catalog_query, ttl_sec=settings.catalog_ttl_sec
    )


def _state():
    if _SETTINGS is None:
        configure(load_settings())
    return _SETTINGS, _EXECUTOR, _CATALOG


def _error(e: Exception) -> Dict[str, Any]:
    return {"error": str(e), "error_type": type(e).__name__}


def _payload(result: QueryResult) -> Dict[str, Any]:
    return {
        "columns": result.columns,
        "kinds": {k: v.value for k, v in result.kinds.items()},
        "data": [
            {k: (v.isoformat() if isinstance(v, pd.Timestamp) else v) for k, v in row.items()}
            for row in result.rows
        ],
        "rows_returned": result.rows_returned,
        "rows_estimated": result.rows_estimated,
        "null_counts": result.null_counts,
        "query": result.query,
    }


def _selection(
    table: str,
    variables: List[str],
    lat: List[float],
    lon: List[float],
    time: List[str],
    depth: Optional[List[float]],
    mode: str,
    bin_width: Optional[float],
    non_null: bool,
) -> QuerySpec:
    spec = build_bounding_box(table, variables, lat, lon, time, depth, non_null=non_null)
    try:
        mode_enum = AggregationMode(mode.upper())
    except ValueError as e:
        choices = ", ".join(m.value for m in AggregationMode)
        raise InvalidQuerySpec(f"Unknown aggregation mode {mode!r}; expected one of {choices}") from e
    if mode_enum != AggregationMode.RAW:
        spec = aggregate(spec, mode_enum)
    if bin_width:
        spec = apply_spatial_binning(spec, bin_width)
    return spec


def _describe(catalog: CatalogIndex, table: str) -> Dict[str, Any]:
    entry = catalog.describe(table)
    out = {k: (str(v) if v is not None and not isinstance(v, (int, float, str)) else v)
           for k, v in entry.as_dict().items()}
    out["variables"] = [
        {"variable": v.variable, "long_name": v.long_name, "unit": v.unit}
        for v in catalog.variables(table)
    ]
    return out


@_SERVER.tool("search_catalog")
async def search_catalog(keyword: str, expanded: bool = False, limit: int = 50) -> Dict[str, Any]:
    """Find catalog variables whose long name (or expanded text fields) match a keyword."""
    try:
        _, _, catalog = _state()
        matches = await asyncio.to_thread(catalog.search, keyword, expanded=expanded)
        cols = ["Table_Name", "Variable", "Long_Name", "Unit", "Temporal_Resolution", "Spatial_Resolution"]
        return {
            "total_matches": matches.height,
            "matches": matches.select(cols).head(limit).to_dicts(),
        }
    except GatewayError as e:
        logger.error("Error in search_catalog: %s", e)
        return _error(e)


@_SERVER.tool("describe_table")
async def describe_table(table: str) -> Dict[str, Any]:
    """Return coverage, resolution and variables of a table."""
    try:
        _, _, catalog = _state()
        return await asyncio.to_thread(_describe, catalog, table)
    except GatewayError as e:
        logger.error("Error in describe_table: %s", e)
        return _error(e)


@_SERVER.resource(
    "cmap://catalog",
    name="Dataset Catalog",
    title="Full catalog",
    description="One CSV row per (table, variable) with coverage and resolution",
    mime_type="text/csv",
)
async def resource_catalog() -> str:
    """Expose the cached catalog as CSV content."""
    _, _, catalog = _state()
    frame = await asyncio.to_thread(catalog.fetch)
    return frame.write_csv()


@_SERVER.tool("estimate_selection")
async def estimate_selection(
    table: str,
    variables: List[str],
    lat: List[float],
    lon: List[float],
    time: List[str],
    depth: Optional[List[float]] = None,
    non_null: bool = False,
) -> Dict[str, Any]:
    """Count rows a bounding-box selection would transfer, without fetching it."""
    try:
        settings, executor, _ = _state()
        spec = _selection(table, variables, lat, lon, time, depth, "RAW", None, non_null)
        estimate = await asyncio.to_thread(estimate_row_count, spec, executor)
        advice = classify_volume(estimate.total_rows, settings.warn_rows, settings.effective_abort_rows)
        return {
            "total_rows": estimate.total_rows,
            "non_null_rows": estimate.per_variable,
            "advice": advice.value,
        }
    except GatewayError as e:
        logger.error("Error in estimate_selection: %s", e)
        return _error(e)


@_SERVER.tool("query_selection")
async def query_selection(
    table: str,
    variables: List[str],
    lat: List[float],
    lon: List[float],
    time: List[str],
    depth: Optional[List[float]] = None,
    mode: str = "RAW",
    bin_width: Optional[float] = None,
    non_null: bool = False,
) -> Dict[str, Any]:
    """Run a bounding-box selection, optionally aggregated remotely.

    The preflight estimate always runs; selections estimated above the inline
    row limit are refused with the estimate so the caller can narrow them.
    """
    try:
        settings, executor, catalog = _state()
        spec = _selection(table, variables, lat, lon, time, depth, mode, bin_width, non_null)
        estimate = await asyncio.to_thread(estimate_row_count, spec, executor)
        advice = classify_volume(estimate.total_rows, settings.warn_rows, settings.effective_abort_rows)
        if advice == VolumeAdvice.ABORT or (not spec.is_aggregate and estimate.total_rows > MAX_INLINE_ROWS):
            return {
                "method": "too_large",
                "rows_estimated": estimate.total_rows,
                "advice": advice.value,
                "hint": "Narrow the bounds or use an aggregation mode / bin_width.",
            }
        result = await asyncio.to_thread(
            run_query, spec, executor, catalog=catalog, estimate=estimate
        )
        return {"method": "direct", **_payload(result)}
    except GatewayError as e:
        logger.error("Error in query_selection: %s", e)
        return _error(e)


@_SERVER.tool("run_sql")
async def run_sql(query: str) -> Dict[str, Any]:
    """Run a read-only query exactly as written."""
    try:
        _, executor, _ = _state()
        result = await asyncio.to_thread(executor.execute, query)
        if result.rows_returned > MAX_INLINE_ROWS:
            return {"method": "too_large", "rows_returned": result.rows_returned}
        return {"method": "direct", **_payload(result)}
    except GatewayError as e:
        logger.error("Error in run_sql: %s", e)
        return _error(e)


def run(config_path: Optional[str] = None) -> None:
    """Run MCP server over stdio."""
    configure(load_settings(Path(config_path) if config_path else None))
    logger.info("Starting MCP server against %s", _SETTINGS.base_url)
    asyncio.run(_SERVER.run_stdio_async())
