import argparse
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional

import colorlog

from cmap_gateway import __version__ as _PACKAGE_VERSION
from cmap_gateway.core.config import GatewaySettings, load_settings
from cmap_gateway.core.enums import AggregationMode, VolumeAdvice
from cmap_gateway.core.errors import (
    ForbiddenStatement,
    GatewayError,
    InvalidQuerySpec,
    UnknownColumn,
    UnknownTable,
)
from cmap_gateway.core.query import (
    CatalogIndex,
    QueryResult,
    QuerySpec,
    apply_spatial_binning,
    apply_temporal_binning,
    build_bounding_box,
    build_center_tolerance,
    classify_volume,
    estimate_row_count,
    render_sample,
    run_query,
)
from cmap_gateway.core.query.plan import aggregate
from cmap_gateway.remote.client import RemoteClient
from cmap_gateway.remote.executor import ManualQueryExecutor

# Aggregation choices for argparse; CUSTOM_GROUP is reached through binning flags
MODE_CHOICES = [m.value for m in AggregationMode if m != AggregationMode.CUSTOM_GROUP]

EXIT_OK = 0
EXIT_REMOTE = 1
EXIT_USAGE = 2
EXIT_TOO_LARGE = 3


def setup_logging(
    verbose: bool = False, warnings_only: bool = False, errors_only: bool = False
) -> None:
    logger = logging.getLogger()
    for h in list(logger.handlers):
        logger.removeHandler(h)
    log_format = (
        "%(asctime)s:%(levelname)s:%(name)s in %(filename)s:%(funcName)s:%(lineno)d: %(message)s"
    )
    log_colors = {
        "DEBUG": "cyan",
        "INFO": "green",
        "WARNING": "yellow",
        "ERROR": "red",
        "CRITICAL": "bold_red",
    }
    stream_handler = colorlog.StreamHandler(sys.stderr)
    formatter = colorlog.ColoredFormatter(f"%(log_color)s{log_format}", log_colors=log_colors)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    if errors_only:
        logger.setLevel(logging.ERROR)
    elif warnings_only:
        logger.setLevel(logging.WARNING)
    else:
        logger.setLevel(logging.DEBUG if verbose else logging.INFO)


def _settings(args: argparse.Namespace) -> GatewaySettings:
    config = getattr(args, "config", None)
    settings = load_settings(Path(config) if config else None)
    timeout = getattr(args, "timeout", None)
    if timeout is not None:
        settings = replace(settings, timeout_sec=float(timeout))
    return settings


def _executor(settings: GatewaySettings) -> ManualQueryExecutor:
    return ManualQueryExecutor(RemoteClient(settings))


def _error_code(e: GatewayError) -> int:
    if isinstance(e, (InvalidQuerySpec, ForbiddenStatement, UnknownTable, UnknownColumn)):
        return EXIT_USAGE
    return EXIT_REMOTE


def _parse_axis_values(items: Optional[List[str]], flag: str) -> Dict[str, str]:
    """Parse repeated axis=value options (e.g. --center lat=45)."""
    out: Dict[str, str] = {}
    for item in items or []:
        if "=" not in item:
            raise InvalidQuerySpec(f"{flag} expects axis=value, got {item!r}")
        axis, value = item.split("=", 1)
        out[axis.strip().lower()] = value.strip()
    return out


def _number_or_text(axis: str, value: str):
    return value if axis == "time" else float(value)


def _spec_from_args(args: argparse.Namespace) -> QuerySpec:
    variables = [v.strip() for v in args.variable.split(",") if v.strip()]
    if args.center:
        centers = {a: _number_or_text(a, v) for a, v in _parse_axis_values(args.center, "--center").items()}
        tolerances = {a: float(v) for a, v in _parse_axis_values(args.tolerance, "--tolerance").items()}
        spec = build_center_tolerance(args.table, variables, centers, tolerances)
    else:
        if not (args.lat and args.lon and args.time):
            raise InvalidQuerySpec("--lat, --lon and --time are required without --center")
        spec = build_bounding_box(
            args.table, variables, tuple(args.lat), tuple(args.lon), tuple(args.time),
            tuple(args.depth) if args.depth else None,
        )
    spec = replace(spec, non_null=bool(getattr(args, "non_null", False)), limit=getattr(args, "limit", None))

    mode = AggregationMode(getattr(args, "mode", None) or AggregationMode.RAW.value)
    if mode != AggregationMode.RAW:
        spec = aggregate(spec, mode)
    if getattr(args, "bin_width", None):
        spec = apply_spatial_binning(spec, args.bin_width, args.bin_offset)
    if getattr(args, "time_bin_days", None):
        reference = args.reference_date or (args.time[0] if args.time else None)
        if reference is None:
            raise InvalidQuerySpec("--reference-date is required for temporal binning")
        spec = apply_temporal_binning(spec, args.time_bin_days, reference)
    return spec


def _write_result(result: QueryResult, output: Optional[str]) -> None:
    df = result.to_pandas()
    if output:
        df.to_csv(output, index=False)
        logging.info("Saved %d rows to %s", result.rows_returned, output)
    else:
        df.to_csv(sys.stdout, index=False)


def cmd_catalog_search(args: argparse.Namespace) -> int:
    settings = _settings(args)
    catalog = CatalogIndex(_executor(settings), catalog_query=settings.catalog_query)
    fields = tuple(f.strip() for f in args.fields.split(",")) if args.fields else ("Long_Name",)
    try:
        matches = catalog.search(args.keyword, fields, regex=args.regex, expanded=args.expanded)
    except GatewayError as e:
        logging.error("Catalog search failed: %s", e)
        return _error_code(e)
    if matches.is_empty():
        logging.warning("No catalog entries match %r", args.keyword)
        return EXIT_OK
    columns = ["Table_Name", "Variable", "Long_Name", "Unit"]
    sys.stdout.write(matches.select(columns).write_csv())
    logging.info("%d matching variables", matches.height)
    return EXIT_OK


def cmd_catalog_describe(args: argparse.Namespace) -> int:
    settings = _settings(args)
    catalog = CatalogIndex(_executor(settings), catalog_query=settings.catalog_query)
    try:
        entry = catalog.describe(args.table)
        variables = catalog.variables(args.table)
    except GatewayError as e:
        logging.error("Describe failed: %s", e)
        return _error_code(e)
    payload = entry.as_dict()
    payload["variables"] = [
        {"variable": v.variable, "long_name": v.long_name, "unit": v.unit} for v in variables
    ]
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))
    return EXIT_OK


def cmd_estimate(args: argparse.Namespace) -> int:
    settings = _settings(args)
    try:
        spec = _spec_from_args(args)
        estimate = estimate_row_count(spec, _executor(settings))
    except (GatewayError, ValueError) as e:
        logging.error("Estimate failed: %s", e)
        return _error_code(e) if isinstance(e, GatewayError) else EXIT_USAGE
    advice = classify_volume(estimate.total_rows, settings.warn_rows, settings.effective_abort_rows)
    print(
        json.dumps(
            {
                "table": spec.table,
                "total_rows": estimate.total_rows,
                "non_null_rows": estimate.per_variable,
                "advice": advice.value,
            },
            indent=2,
        )
    )
    return EXIT_OK


def cmd_query(args: argparse.Namespace) -> int:
    settings = _settings(args)
    executor = _executor(settings)
    try:
        spec = _spec_from_args(args)
        catalog = None
        if args.validate:
            catalog = CatalogIndex(executor, catalog_query=settings.catalog_query)
            catalog.validate(spec.table, spec.variables)
        estimate = None
        if not args.no_preflight:
            estimate = estimate_row_count(spec, executor)
            advice = classify_volume(
                estimate.total_rows, settings.warn_rows, settings.effective_abort_rows
            )
            if advice == VolumeAdvice.ABORT and not args.force:
                logging.error(
                    "Selection would transfer ~%d rows; narrow it or pass --force",
                    estimate.total_rows,
                )
                return EXIT_TOO_LARGE
        result = run_query(
            spec, executor, catalog=catalog, preflight=not args.no_preflight, estimate=estimate
        )
    except (GatewayError, ValueError) as e:
        logging.error("Query failed: %s", e)
        return _error_code(e) if isinstance(e, GatewayError) else EXIT_USAGE
    _write_result(result, args.output)
    return EXIT_OK


def cmd_sql(args: argparse.Namespace) -> int:
    settings = _settings(args)
    try:
        result = _executor(settings).execute(args.query)
    except GatewayError as e:
        logging.error("Query failed: %s", e)
        return _error_code(e)
    _write_result(result, args.output)
    return EXIT_OK


def cmd_sample(args: argparse.Namespace) -> int:
    settings = _settings(args)
    try:
        result = _executor(settings).execute(render_sample(args.table, args.n))
    except GatewayError as e:
        logging.error("Sample failed: %s", e)
        return _error_code(e)
    _write_result(result, args.output)
    return EXIT_OK


def cmd_mcp_server(args: argparse.Namespace) -> int:
    try:
        from cmap_gateway.interfaces.mcp import server as mcp_server
    except (ModuleNotFoundError, ImportError, RuntimeError) as e:
        logging.error("MCP server unavailable: %s", e)
        return EXIT_REMOTE
    logging.info("Starting MCP stdio server")
    mcp_server.run(config_path=args.config)
    return EXIT_OK


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--config",
        default=None,
        help="Path to gateway.yaml (defaults to config/gateway.yaml when present)",
    )
    p.add_argument("--timeout", type=float, default=None, help="Per-query deadline in seconds")


def _add_selection(p: argparse.ArgumentParser) -> None:
    p.add_argument("--table", required=True, help="Remote table name (e.g. tblCHL_REP)")
    p.add_argument("--variable", required=True, help="Variable name(s), comma-separated")
    p.add_argument("--lat", nargs=2, type=float, metavar=("MIN", "MAX"))
    p.add_argument("--lon", nargs=2, type=float, metavar=("MIN", "MAX"))
    p.add_argument("--depth", nargs=2, type=float, metavar=("MIN", "MAX"))
    p.add_argument("--time", nargs=2, metavar=("START", "END"), help="ISO dates")
    p.add_argument(
        "--center",
        action="append",
        help="axis=value center (repeatable); switches to center+tolerance selection",
    )
    p.add_argument(
        "--tolerance",
        action="append",
        help="axis=value tolerance (repeatable); time tolerance in days",
    )
    p.add_argument(
        "--non-null",
        action="store_true",
        help="Keep only rows where every variable is non-null",
    )
    p.add_argument(
        "--mode",
        type=str.upper,
        choices=MODE_CHOICES,
        default=AggregationMode.RAW.value,
        help="Aggregation template (case insensitive)",
    )
    p.add_argument("--bin-width", type=float, default=None, help="Spatial bin width in degrees")
    p.add_argument(
        "--bin-offset",
        type=float,
        default=None,
        help="Spatial bin edge offset (defaults to half the width)",
    )
    p.add_argument("--time-bin-days", type=int, default=None, help="Temporal bin width in days")
    p.add_argument(
        "--reference-date",
        default=None,
        help="Reference date for temporal bins (defaults to the time range start)",
    )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="cmap-gateway",
        description=f"CMAP Gateway (v{_PACKAGE_VERSION})",
    )
    p.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    p.add_argument(
        "--warnings-only",
        action="store_true",
        help="Show only warnings and errors (overrides --verbose)",
    )
    p.add_argument(
        "--errors-only",
        action="store_true",
        help="Show only errors (overrides --warnings-only and --verbose)",
    )

    sub = p.add_subparsers(dest="command", required=True)

    p_catalog = sub.add_parser("catalog", help="Search and describe the dataset catalog")
    catalog_sub = p_catalog.add_subparsers(dest="catalog_command", required=True)

    p_search = catalog_sub.add_parser("search", help="Find variables by keyword")
    p_search.add_argument("keyword", help="Substring (or regex with --regex)")
    p_search.add_argument(
        "--fields",
        default=None,
        help="Comma-separated catalog fields to search (default Long_Name)",
    )
    p_search.add_argument("--regex", action="store_true", help="Treat keyword as a regex")
    p_search.add_argument(
        "--expanded",
        action="store_true",
        help="Search keywords, dataset, sensor, source and distributor fields too",
    )
    _add_common(p_search)
    p_search.set_defaults(func=cmd_catalog_search)

    p_describe = catalog_sub.add_parser("describe", help="Summarize one table")
    p_describe.add_argument("table", help="Table name")
    _add_common(p_describe)
    p_describe.set_defaults(func=cmd_catalog_describe)

    p_estimate = sub.add_parser("estimate", help="Count rows a selection would transfer")
    _add_selection(p_estimate)
    _add_common(p_estimate)
    p_estimate.set_defaults(func=cmd_estimate)

    p_query = sub.add_parser("query", help="Run a selection and write CSV")
    _add_selection(p_query)
    _add_common(p_query)
    p_query.add_argument("--limit", type=int, default=None, help="TOP(n) row cap")
    p_query.add_argument("--output", default=None, help="CSV output path (default stdout)")
    p_query.add_argument(
        "--no-preflight",
        action="store_true",
        help="Skip the count-only estimate (unbounded transfer)",
    )
    p_query.add_argument(
        "--force",
        action="store_true",
        help="Fetch even when the estimate advises abort",
    )
    p_query.add_argument(
        "--validate",
        action="store_true",
        help="Check table and variable names against the catalog first",
    )
    p_query.set_defaults(func=cmd_query)

    p_sql = sub.add_parser("sql", help="Run a read-only query as written")
    p_sql.add_argument("query", help="Query text")
    p_sql.add_argument("--output", default=None, help="CSV output path (default stdout)")
    _add_common(p_sql)
    p_sql.set_defaults(func=cmd_sql)

    p_sample = sub.add_parser("sample", help="Random sample of a table")
    p_sample.add_argument("table", help="Table name")
    p_sample.add_argument("-n", type=int, default=10, help="Rows to sample")
    p_sample.add_argument("--output", default=None, help="CSV output path (default stdout)")
    _add_common(p_sample)
    p_sample.set_defaults(func=cmd_sample)

    p_mcp = sub.add_parser("mcp-server", help="Run the MCP stdio server")
    p_mcp.add_argument("--config", default=None, help="Path to gateway.yaml")
    p_mcp.set_defaults(func=cmd_mcp_server)

    return p


def main(argv: Optional[list] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(
        verbose=bool(args.verbose),
        warnings_only=bool(getattr(args, "warnings_only", False)),
        errors_only=bool(getattr(args, "errors_only", False)),
    )
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
