"""Query lifecycle: BUILT -> [ESTIMATED] -> EXECUTED -> NORMALIZED -> RESULT.

Any stage may move to FAILED instead; a failed run never hands out a partial
result, and a failed preflight means the data query is never sent.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, FrozenSet, List, Optional

from cmap_gateway.core.enums import QueryStage, VolumeAdvice
from .materialize import RowEstimate, classify_volume, estimate_row_count
from .normalize import QueryResult, normalize
from .plan import render_query
from .spec import QuerySpec

if TYPE_CHECKING:  # pragma: no cover
    from cmap_gateway.remote.executor import ManualQueryExecutor
    from .catalog import CatalogIndex

logger = logging.getLogger(__name__)

_TRANSITIONS: Dict[QueryStage, FrozenSet[QueryStage]] = {
    QueryStage.BUILT: frozenset({QueryStage.ESTIMATED, QueryStage.EXECUTED, QueryStage.FAILED}),
    QueryStage.ESTIMATED: frozenset({QueryStage.EXECUTED, QueryStage.FAILED}),
    QueryStage.EXECUTED: frozenset({QueryStage.NORMALIZED, QueryStage.FAILED}),
    QueryStage.NORMALIZED: frozenset({QueryStage.RESULT, QueryStage.FAILED}),
    QueryStage.RESULT: frozenset(),
    QueryStage.FAILED: frozenset(),
}


@dataclass
class QueryRun:
    """Tracks one spec through the lifecycle."""

    spec: QuerySpec
    stage: QueryStage = QueryStage.BUILT
    history: List[QueryStage] = field(default_factory=lambda: [QueryStage.BUILT])
    estimate: Optional[RowEstimate] = None
    advice: Optional[VolumeAdvice] = None
    error: Optional[BaseException] = None

    def advance(self, stage: QueryStage) -> None:
        if stage not in _TRANSITIONS[self.stage]:
            raise RuntimeError(f"Illegal query stage transition {self.stage.value} -> {stage.value}")
        logger.debug("%s: %s -> %s", self.spec.table, self.stage.value, stage.value)
        self.stage = stage
        self.history.append(stage)

    def fail(self, error: BaseException) -> None:
        self.error = error
        if self.stage not in (QueryStage.RESULT, QueryStage.FAILED):
            self.advance(QueryStage.FAILED)


def run_query(
    spec: QuerySpec,
    executor: "ManualQueryExecutor",
    *,
    catalog: Optional["CatalogIndex"] = None,
    preflight: bool = True,
    estimate: Optional[RowEstimate] = None,
    warn_rows: Optional[int] = None,
    abort_rows: Optional[int] = None,
    timeout: Optional[float] = None,
    cancel: Optional[threading.Event] = None,
    run: Optional[QueryRun] = None,
) -> QueryResult:
    """Validate, estimate, execute and normalize one spec.

    Volume advice is recorded on `run` (and logged) but never blocks the fetch;
    callers that want to stop on ABORT should call `estimate_row_count` and
    `classify_volume` themselves first.

    Args:
        spec: Built query spec.
        executor: Executor used for both count and data queries.
        catalog: When given, table/variable names are validated before send.
        preflight: Run the count-only estimate first.
        estimate: Estimate already obtained by the caller; reused instead of
            counting again.
        warn_rows, abort_rows: Thresholds for the advisory classification.
        timeout, cancel: Passed to every remote round trip.
        run: Optional QueryRun to track stages; a fresh one is used otherwise.

    Returns:
        QueryResult with `rows_estimated` set when the preflight ran.
    """
    run = run if run is not None else QueryRun(spec)
    try:
        if catalog is not None:
            catalog.validate(spec.table, spec.variables)

        if estimate is None and preflight:
            estimate = estimate_row_count(spec, executor, timeout=timeout, cancel=cancel)
        if estimate is not None:
            run.estimate = estimate
            if warn_rows is not None:
                run.advice = classify_volume(estimate.total_rows, warn_rows, abort_rows)
            run.advance(QueryStage.ESTIMATED)

        query = render_query(spec)
        raw = executor.fetch_raw(query, timeout=timeout, cancel=cancel)
        run.advance(QueryStage.EXECUTED)

        result = normalize(
            raw,
            rows_estimated=estimate.total_rows if estimate is not None else None,
            query=query,
        )
        run.advance(QueryStage.NORMALIZED)
        if estimate is not None and result.rows_returned > estimate.total_rows:
            logger.warning(
                "Returned %d rows but preflight counted %d; remote data changed in between",
                result.rows_returned,
                estimate.total_rows,
            )
        run.advance(QueryStage.RESULT)
        return result
    except Exception as e:
        run.fail(e)
        raise


__all__ = ["QueryRun", "run_query"]
