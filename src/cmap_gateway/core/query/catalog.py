from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Sequence

import polars as pl

from cmap_gateway.core.config import DEFAULT_CATALOG_QUERY
from cmap_gateway.core.errors import InvalidQuerySpec, MalformedResponse, UnknownColumn, UnknownTable
from cmap_gateway.core.schemas import (
    CATALOG_FIELDS,
    DEFAULT_SEARCH_FIELDS,
    EXPANDED_SEARCH_FIELDS,
    TABLE_LEVEL_FIELDS,
)

if TYPE_CHECKING:  # pragma: no cover
    from cmap_gateway.remote.executor import ManualQueryExecutor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TableEntry:
    """Table-level catalog facts (one per table)."""

    table_name: str
    dataset_name: Optional[str]
    dataset_description: Optional[str]
    variable_count: Optional[int]
    lat_min: Optional[float]
    lat_max: Optional[float]
    lon_min: Optional[float]
    lon_max: Optional[float]
    depth_min: Optional[float]
    depth_max: Optional[float]
    time_min: Any
    time_max: Any
    temporal_resolution: Optional[str]
    spatial_resolution: Optional[str]
    data_source: Optional[str]
    distributor: Optional[str]

    @property
    def has_depth(self) -> bool:
        return self.depth_min is not None or self.depth_max is not None

    def as_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass(frozen=True)
class VariableEntry:
    """One variable of a table; `table_name` refers to its TableEntry."""

    table_name: str
    variable: str
    long_name: Optional[str]
    unit: Optional[str]
    make: Optional[str]
    sensor: Optional[str]
    keywords: Optional[str]


@dataclass(frozen=True)
class CatalogSnapshot:
    frame: pl.DataFrame
    tables: Dict[str, TableEntry]
    variables: Dict[str, List[VariableEntry]]
    fetched_at: float = field(default_factory=time.monotonic)


def _table_entry(row: Dict[str, Any]) -> TableEntry:
    return TableEntry(
        table_name=row["Table_Name"],
        dataset_name=row["Dataset_Name"],
        dataset_description=row["Dataset_Description"],
        variable_count=None if row["Variable_Count"] is None else int(row["Variable_Count"]),
        lat_min=row["Lat_Min"],
        lat_max=row["Lat_Max"],
        lon_min=row["Lon_Min"],
        lon_max=row["Lon_Max"],
        depth_min=row["Depth_Min"],
        depth_max=row["Depth_Max"],
        time_min=row["Time_Min"],
        time_max=row["Time_Max"],
        temporal_resolution=row["Temporal_Resolution"],
        spatial_resolution=row["Spatial_Resolution"],
        data_source=row["Data_Source"],
        distributor=row["Distributor"],
    )


def build_snapshot(columns: Sequence[str], rows: Iterable[Dict[str, Any]], frame: pl.DataFrame) -> CatalogSnapshot:
    """Split denormalized catalog rows into table and variable entities.

    Table-level fields are expected to repeat identically on every variable
    row; the first row of a table wins and disagreements are logged.

    Raises:
        MalformedResponse: If required catalog columns are missing.
    """
    missing = [f for f in CATALOG_FIELDS if f not in columns]
    if missing:
        raise MalformedResponse(f"Catalog is missing columns: {', '.join(missing)}")

    tables: Dict[str, TableEntry] = {}
    first_rows: Dict[str, Dict[str, Any]] = {}
    variables: Dict[str, List[VariableEntry]] = {}
    inconsistent = set()
    for row in rows:
        name = row["Table_Name"]
        if name is None or row["Variable"] is None:
            raise MalformedResponse("Catalog row without Table_Name or Variable")
        if name not in tables:
            tables[name] = _table_entry(row)
            first_rows[name] = row
        elif name not in inconsistent:
            first = first_rows[name]
            if any(first[f] != row[f] for f in TABLE_LEVEL_FIELDS):
                inconsistent.add(name)
                logger.warning("Table-level catalog fields differ across rows of %s", name)
        variables.setdefault(name, []).append(
            VariableEntry(
                table_name=name,
                variable=row["Variable"],
                long_name=row["Long_Name"],
                unit=row["Unit"],
                make=row["Make"],
                sensor=row["Sensor"],
                keywords=row["Keywords"],
            )
        )
    return CatalogSnapshot(frame=frame, tables=tables, variables=variables)


class CatalogIndex:
    """Process-wide cache of the remote dataset catalog.

    Readers always see a complete snapshot: a refresh builds the new snapshot
    first and then swaps the reference. Concurrent refreshes are serialized.
    """

    def __init__(
        self,
        executor: "ManualQueryExecutor",
        *,
        catalog_query: str = DEFAULT_CATALOG_QUERY,
        ttl_sec: Optional[float] = None,
    ) -> None:
        self.executor = executor
        self.catalog_query = catalog_query
        self.ttl_sec = ttl_sec
        self._lock = threading.Lock()
        self._snapshot: Optional[CatalogSnapshot] = None

    def _expired(self, snapshot: Optional[CatalogSnapshot]) -> bool:
        if snapshot is None:
            return True
        if self.ttl_sec is None:
            return False
        return time.monotonic() - snapshot.fetched_at > self.ttl_sec

    def _load(self) -> CatalogSnapshot:
        logger.info("Fetching catalog")
        result = self.executor.execute(self.catalog_query)
        snapshot = build_snapshot(result.columns, result.rows, result.to_polars())
        logger.info(
            "Catalog loaded: %d tables, %d variables",
            len(snapshot.tables),
            sum(len(v) for v in snapshot.variables.values()),
        )
        return snapshot

    def snapshot(self, *, refresh: bool = False) -> CatalogSnapshot:
        current = self._snapshot
        if not refresh and not self._expired(current):
            return current  # type: ignore[return-value]
        with self._lock:
            current = self._snapshot
            if refresh or self._expired(current):
                # a failed load leaves the previous snapshot in place
                self._snapshot = self._load()
            return self._snapshot  # type: ignore[return-value]

    def fetch(self, *, refresh: bool = False) -> pl.DataFrame:
        """Return the full catalog table (one row per table/variable).

        Raises:
            RemoteUnavailable: Transport failure while fetching.
            MalformedResponse: Catalog payload lacks required columns.
        """
        return self.snapshot(refresh=refresh).frame

    def search(
        self,
        keyword: str,
        fields: Sequence[str] = DEFAULT_SEARCH_FIELDS,
        *,
        regex: bool = False,
        expanded: bool = False,
    ) -> pl.DataFrame:
        """Case-insensitive keyword match over catalog text fields.

        Args:
            keyword: Substring (or regex when `regex=True`).
            fields: Catalog columns to search; Long_Name by default.
            expanded: Search the expanded text field set instead of `fields`.

        Returns:
            Matching catalog rows; an empty frame when nothing matches.
        """
        frame = self.fetch()
        search_fields = list(EXPANDED_SEARCH_FIELDS if expanded else fields)
        for f in search_fields:
            if f not in frame.columns:
                raise UnknownColumn(f, "catalog")

        if regex:
            try:
                re.compile(keyword)
            except re.error as e:
                raise InvalidQuerySpec(f"Invalid search pattern {keyword!r}: {e}") from e
            exprs = [
                pl.col(f).cast(pl.Utf8, strict=False).str.contains(f"(?i){keyword}").fill_null(False)
                for f in search_fields
            ]
        else:
            needle = keyword.lower()
            exprs = [
                pl.col(f)
                .cast(pl.Utf8, strict=False)
                .str.to_lowercase()
                .str.contains(needle, literal=True)
                .fill_null(False)
                for f in search_fields
            ]
        try:
            return frame.filter(pl.any_horizontal(exprs))
        except pl.exceptions.ComputeError as e:
            # polars' regex engine has no lookaround or backreferences
            raise InvalidQuerySpec(f"Unsupported search pattern {keyword!r}: {e}") from e

    def tables(self) -> List[str]:
        return sorted(self.snapshot().tables)

    def describe(self, table: str) -> TableEntry:
        """Return the single summary entry of a table.

        Raises:
            UnknownTable: If the table is not in the catalog.
        """
        entry = self.snapshot().tables.get(table)
        if entry is None:
            raise UnknownTable(table)
        return entry

    def variables(self, table: str) -> List[VariableEntry]:
        snap = self.snapshot()
        if table not in snap.tables:
            raise UnknownTable(table)
        return list(snap.variables.get(table, []))

    def validate(self, table: str, variables: Iterable[str]) -> None:
        """Raise UnknownTable/UnknownColumn for names absent from the catalog."""
        known = {v.variable for v in self.variables(table)}
        for var in variables:
            if var not in known:
                raise UnknownColumn(var, table)


__all__ = ["TableEntry", "VariableEntry", "CatalogSnapshot", "CatalogIndex", "build_snapshot"]
