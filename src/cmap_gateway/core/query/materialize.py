from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Iterator, Optional

from cmap_gateway.core.config import ABORT_MULTIPLIER
from cmap_gateway.core.enums import VolumeAdvice
from cmap_gateway.core.errors import MalformedResponse
from .plan import render_count_query
from .spec import QuerySpec

if TYPE_CHECKING:  # pragma: no cover
    from cmap_gateway.remote.executor import ManualQueryExecutor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RowEstimate:
    """Preflight counts for a spec.

    `non_null_rows` is the non-null count of the spec's first variable;
    `per_variable` holds it for every selected variable. Unpacks as
    `(total_rows, non_null_rows)`.
    """

    total_rows: int
    non_null_rows: int
    per_variable: Dict[str, int] = field(default_factory=dict)

    def __iter__(self) -> Iterator[int]:
        yield self.total_rows
        yield self.non_null_rows

    def null_rows(self, variable: Optional[str] = None) -> int:
        """Rows where `variable` is null: count(*) - count(variable)."""
        if variable is None:
            return self.total_rows - self.non_null_rows
        return self.total_rows - self.per_variable[variable]


def _as_count(row: Dict, column: str, query: str) -> int:
    value = row.get(column)
    if value is None or isinstance(value, str):
        raise MalformedResponse(f"Count column {column!r} missing or not numeric: {value!r}", query=query)
    if int(value) != value or value < 0:
        raise MalformedResponse(f"Count column {column!r} is not a count: {value!r}", query=query)
    return int(value)


def estimate_row_count(
    spec: QuerySpec,
    executor: "ManualQueryExecutor",
    *,
    timeout: Optional[float] = None,
    cancel: Optional[threading.Event] = None,
) -> RowEstimate:
    """Count rows a spec would scan without running the data query.

    The count-only variant shares the spec's WHERE clause exactly. For grouped
    specs it counts the underlying rows, an upper bound on the groups returned.
    Counts and the later fetch are separate round trips; they are consistent
    only as far as the remote data does not change in between.
    """
    query = render_count_query(spec)
    result = executor.execute(query, timeout=timeout, cancel=cancel)
    if result.rows_returned != 1:
        raise MalformedResponse(
            f"Count query returned {result.rows_returned} rows, expected 1", query=query
        )
    row = result.rows[0]
    total = _as_count(row, "total_rows", query)
    per_variable = {v: _as_count(row, f"{v}_count", query) for v in spec.variables}
    for v, n in per_variable.items():
        if n > total:
            raise MalformedResponse(f"count({v})={n} exceeds count(*)={total}", query=query)

    estimate = RowEstimate(
        total_rows=total,
        non_null_rows=per_variable[spec.variables[0]],
        per_variable=per_variable,
    )
    logger.info(
        "Preflight %s: %d rows (%s)",
        spec.table,
        total,
        ", ".join(f"{v}: {n} non-null" for v, n in per_variable.items()),
    )
    return estimate


def classify_volume(
    row_count: int, threshold: int, abort_threshold: Optional[int] = None
) -> VolumeAdvice:
    """Advisory size classification; callers decide what to do with it.

    Args:
        row_count: Estimated rows.
        threshold: Warn above this many rows.
        abort_threshold: Advise abort above this (default threshold * 10).

    Examples:
        >>> classify_volume(10, 100)
        <VolumeAdvice.PROCEED: 'proceed'>
        >>> classify_volume(101, 100)
        <VolumeAdvice.WARN: 'warn'>
        >>> classify_volume(1001, 100)
        <VolumeAdvice.ABORT: 'abort'>
    """
    if row_count < 0 or threshold < 0:
        raise ValueError("row_count and threshold must be non-negative")
    if abort_threshold is None:
        abort_threshold = threshold * ABORT_MULTIPLIER
    if abort_threshold < threshold:
        raise ValueError("abort_threshold must not be below threshold")
    if row_count > abort_threshold:
        advice = VolumeAdvice.ABORT
    elif row_count > threshold:
        advice = VolumeAdvice.WARN
    else:
        advice = VolumeAdvice.PROCEED
    if advice != VolumeAdvice.PROCEED:
        logger.warning("Estimated %d rows (threshold %d): %s", row_count, threshold, advice.value)
    return advice


__all__ = ["RowEstimate", "estimate_row_count", "classify_volume"]
