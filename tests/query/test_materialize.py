"""Tests for the preflight row estimate and the volume classification."""

from __future__ import annotations

import httpx
import pytest

from cmap_gateway.core.enums import VolumeAdvice
from cmap_gateway.core.errors import MalformedResponse
from cmap_gateway.core.query import (
    RowEstimate,
    build_bounding_box,
    classify_volume,
    estimate_row_count,
    render_query,
)


@pytest.fixture
def spec():
    return build_bounding_box("tblCHL_REP", "chl", (40, 50), (50, 60), ("2016-01-01", "2016-12-31"))


def _expected(chl_data, *, non_null=False):
    return [
        row
        for row in chl_data
        if 40 <= row[1] <= 50
        and 50 <= row[2] <= 60
        and "2016-01-01T00:00:00" <= row[0] <= "2016-12-31T00:00:00"
        and (row[3] is not None or not non_null)
    ]


def test_estimate_counts_total_and_non_null(spec, executor, fake_remote, chl_data):
    estimate = estimate_row_count(spec, executor)
    expected = _expected(chl_data)
    assert estimate.total_rows == len(expected)
    assert estimate.non_null_rows == sum(1 for r in expected if r[3] is not None)
    assert estimate.per_variable == {"chl": estimate.non_null_rows}
    total, non_null = estimate
    assert (total, non_null) == (estimate.total_rows, estimate.non_null_rows)
    # only the count variant was sent
    assert len(fake_remote.queries) == 1
    assert fake_remote.queries[0].startswith("SELECT COUNT(*) AS total_rows")


def test_estimate_bounds_returned_rows(spec, executor):
    estimate = estimate_row_count(spec, executor)
    result = executor.execute(render_query(spec))
    assert estimate.total_rows >= result.rows_returned


def test_null_rows_match_normalizer_counts(spec, executor):
    estimate = estimate_row_count(spec, executor)
    result = executor.execute(render_query(spec))
    assert estimate.null_rows("chl") == result.null_counts["chl"]
    assert estimate.null_rows() == result.null_counts["chl"]


def test_estimate_respects_non_null_filter(executor, chl_data):
    spec = build_bounding_box(
        "tblCHL_REP", "chl", (40, 50), (50, 60), ("2016-01-01", "2016-12-31"), non_null=True
    )
    estimate = estimate_row_count(spec, executor)
    assert estimate.total_rows == len(_expected(chl_data, non_null=True))
    assert estimate.null_rows() == 0


def test_empty_selection(executor):
    spec = build_bounding_box("tblCHL_REP", "chl", (-10, -5), (50, 60), ("2016-01-01", "2016-12-31"))
    assert tuple(estimate_row_count(spec, executor)) == (0, 0)


@pytest.mark.parametrize(
    "payload",
    [
        "total_rows,chl_count\n",
        "total_rows,chl_count\n5,2\n5,2\n",
        "total_rows,chl_count\n3,7\n",
        "total_rows,chl_count\nmany,2\n",
        "rows\n5\n",
    ],
    ids=["no-row", "two-rows", "count-exceeds-total", "non-numeric", "missing-column"],
)
def test_malformed_count_response(spec, executor, fake_remote, payload):
    fake_remote.override = lambda q: httpx.Response(200, text=payload, headers={"content-type": "text/csv"})
    with pytest.raises(MalformedResponse):
        estimate_row_count(spec, executor)


def test_row_estimate_null_rows():
    estimate = RowEstimate(total_rows=10, non_null_rows=7, per_variable={"chl": 7, "sst": 9})
    assert estimate.null_rows() == 3
    assert estimate.null_rows("sst") == 1


@pytest.mark.parametrize(
    "rows, threshold, abort, expected",
    [
        (0, 100, None, VolumeAdvice.PROCEED),
        (100, 100, None, VolumeAdvice.PROCEED),
        (101, 100, None, VolumeAdvice.WARN),
        (1000, 100, None, VolumeAdvice.WARN),
        (1001, 100, None, VolumeAdvice.ABORT),
        (300, 100, 200, VolumeAdvice.ABORT),
    ],
    ids=["empty", "at-threshold", "above", "at-abort", "above-abort", "explicit-abort"],
)
def test_classify_volume(rows, threshold, abort, expected):
    assert classify_volume(rows, threshold, abort) == expected


def test_classify_volume_rejects_bad_input():
    with pytest.raises(ValueError):
        classify_volume(-1, 100)
    with pytest.raises(ValueError):
        classify_volume(10, 100, 50)
