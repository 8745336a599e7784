"""Typing and null handling for remote tables.

`normalize` converts every cell of a raw remote table into one of number,
text, timestamp or None. Kinds are inferred per column so a column never mixes
numbers and text. Missing values become None, never 0 and never a NaN that
would silently take part in arithmetic.

Aggregate columns computed by the server (row_count, <var>_count, <var>_mean,
<var>_std) are typed like any other column and otherwise passed through
untouched; `QueryResult.null_counts` is computed here by counting None cells
and is never derived from those aggregates.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd
import polars as pl

from cmap_gateway.core.enums import ColumnKind
from cmap_gateway.core.errors import MalformedResponse
from cmap_gateway.core.utils import to_timestamp

NULL_TOKENS = {"", "nan", "null", "none"}

_INT_RE = re.compile(r"^[+-]?\d+$")
_FLOAT_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
_TIMESTAMP_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}([T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?)?(Z|[+-]\d{2}:?\d{2})?$"
)


@dataclass
class RawTable:
    """Untyped table as parsed from a remote payload."""

    columns: List[str]
    rows: List[List[Any]]


@dataclass
class QueryResult:
    """Typed, ordered result of one remote query.

    Attributes:
        columns: Column names in response order.
        rows: One dict per row, in response order.
        kinds: Inferred kind per column.
        null_counts: None cells per column, counted by the normalizer.
        rows_estimated: Preflight total row count, when a preflight ran.
        query: Query text that produced the result.
    """

    columns: List[str]
    rows: List[Dict[str, Any]]
    kinds: Dict[str, ColumnKind]
    null_counts: Dict[str, int] = field(default_factory=dict)
    rows_estimated: Optional[int] = None
    query: Optional[str] = None

    @property
    def rows_returned(self) -> int:
        return len(self.rows)

    def column(self, name: str) -> List[Any]:
        return [row[name] for row in self.rows]

    def _is_integer(self, name: str) -> bool:
        values = [v for v in self.column(name) if v is not None]
        return bool(values) and all(isinstance(v, int) for v in values)

    def to_pandas(self) -> pd.DataFrame:
        """DataFrame with nullable dtypes (Int64/Float64/string, datetime64)."""
        df = pd.DataFrame(self.rows, columns=self.columns)
        for name in self.columns:
            kind = self.kinds[name]
            if kind == ColumnKind.NUMBER:
                df[name] = df[name].astype("Int64" if self._is_integer(name) else "Float64")
            elif kind == ColumnKind.TIMESTAMP:
                df[name] = pd.to_datetime(df[name])
            else:
                df[name] = df[name].astype("string")
        return df

    def to_polars(self) -> pl.DataFrame:
        schema = {}
        for name in self.columns:
            kind = self.kinds[name]
            if kind == ColumnKind.NUMBER:
                schema[name] = pl.Int64 if self._is_integer(name) else pl.Float64
            elif kind == ColumnKind.TIMESTAMP:
                schema[name] = pl.Datetime("us")
            else:
                schema[name] = pl.Utf8
        data = {}
        for name in self.columns:
            values = self.column(name)
            if self.kinds[name] == ColumnKind.TIMESTAMP:
                values = [None if v is None else v.to_pydatetime() for v in values]
            data[name] = values
        return pl.DataFrame(data, schema=schema)


def _is_null(cell: Any) -> bool:
    if cell is None:
        return True
    if isinstance(cell, float) and math.isnan(cell):
        return True
    return isinstance(cell, str) and cell.strip().lower() in NULL_TOKENS


def _infer_kind(cells: Sequence[Any]) -> ColumnKind:
    if not cells:
        return ColumnKind.NUMBER
    if all(
        (isinstance(c, (int, float)) and not isinstance(c, bool))
        or (isinstance(c, str) and _FLOAT_RE.match(c.strip()))
        for c in cells
    ):
        return ColumnKind.NUMBER
    if all(isinstance(c, str) and _TIMESTAMP_RE.match(c.strip()) for c in cells):
        return ColumnKind.TIMESTAMP
    return ColumnKind.TEXT


def _convert_column(cells: Sequence[Any], kind: ColumnKind) -> List[Any]:
    if kind == ColumnKind.NUMBER:
        integral = all(
            (isinstance(c, int) and not isinstance(c, bool))
            or (isinstance(c, str) and _INT_RE.match(c.strip()))
            for c in cells
            if c is not None
        )
        if integral:
            return [None if c is None else int(c) for c in cells]
        return [None if c is None else float(c) for c in cells]
    if kind == ColumnKind.TIMESTAMP:
        return [None if c is None else to_timestamp(c.strip()) for c in cells]
    return [None if c is None else str(c) for c in cells]


def normalize(
    raw: RawTable, *, rows_estimated: Optional[int] = None, query: Optional[str] = None
) -> QueryResult:
    """Type every cell of a raw table and count nulls per column.

    Row order is kept exactly as returned; nothing is reordered or deduplicated.

    Raises:
        MalformedResponse: On duplicate column names, ragged rows, or cells
            that cannot be converted. The payload is discarded as a whole.
    """
    columns = list(raw.columns)
    if len(set(columns)) != len(columns):
        raise MalformedResponse(f"Duplicate column names: {columns}", query=query)
    width = len(columns)
    for i, row in enumerate(raw.rows):
        if len(row) != width:
            raise MalformedResponse(
                f"Row {i} has {len(row)} cells, expected {width}", query=query
            )

    typed: Dict[str, List[Any]] = {}
    kinds: Dict[str, ColumnKind] = {}
    null_counts: Dict[str, int] = {}
    for j, name in enumerate(columns):
        cells = [None if _is_null(row[j]) else row[j] for row in raw.rows]
        kind = _infer_kind([c for c in cells if c is not None])
        try:
            typed[name] = _convert_column(cells, kind)
        except (TypeError, ValueError, OverflowError) as e:
            raise MalformedResponse(f"Column {name!r}: {e}", query=query) from e
        kinds[name] = kind
        null_counts[name] = sum(1 for c in cells if c is None)

    rows = [{name: typed[name][i] for name in columns} for i in range(len(raw.rows))]
    return QueryResult(
        columns=columns,
        rows=rows,
        kinds=kinds,
        null_counts=null_counts,
        rows_estimated=rows_estimated,
        query=query,
    )


__all__ = ["RawTable", "QueryResult", "normalize", "NULL_TOKENS"]
