"""Tests for selection bounds, grouping keys and QuerySpec validation."""

from __future__ import annotations

import pandas as pd
import pytest

from cmap_gateway.core.enums import AggregationMode
from cmap_gateway.core.errors import InvalidQuerySpec, InvalidRange, UnknownColumn, UnknownTable
from cmap_gateway.core.query.plan import render_query
from cmap_gateway.core.query.spec import GroupKey, QuerySpec, Range, Window, as_bounds


class TestAsBounds:
    def test_pair_becomes_float_range(self):
        assert as_bounds("lat", (40, 50)) == Range(40.0, 50.0)

    def test_none_means_unconstrained(self):
        assert as_bounds("depth", None) is None

    def test_time_range_parsed_to_timestamps(self):
        bounds = as_bounds("time", ("2016-01-01", "2016-12-31"))
        assert bounds.lo == pd.Timestamp("2016-01-01")
        assert bounds.hi == pd.Timestamp("2016-12-31")

    def test_equal_bounds_allowed(self):
        assert as_bounds("lon", (55, 55)) == Range(55.0, 55.0)

    @pytest.mark.parametrize(
        "axis, value",
        [
            ("lat", (50, 40)),
            ("lon", (60.0, -60.0)),
            ("depth", (200, 0)),
            ("time", ("2016-12-31", "2016-01-01")),
        ],
        ids=["lat", "lon", "depth", "time"],
    )
    def test_reversed_range_rejected(self, axis, value):
        with pytest.raises(InvalidRange) as exc:
            as_bounds(axis, value)
        assert exc.value.axis == axis

    def test_negative_tolerance_rejected(self):
        with pytest.raises(InvalidRange):
            as_bounds("lat", Window(45.0, -0.1))

    def test_negative_time_tolerance_rejected(self):
        with pytest.raises(InvalidRange):
            as_bounds("time", Window("2016-06-01", -1))

    def test_numeric_time_tolerance_is_days(self):
        bounds = as_bounds("time", Window("2016-06-01", 2))
        assert bounds.tolerance == pd.Timedelta(days=2)

    def test_unparsable_values_rejected(self):
        with pytest.raises(InvalidRange):
            as_bounds("lat", ("north", 10))
        with pytest.raises(InvalidRange):
            as_bounds("time", ("not a date", "2016-01-01"))

    def test_wrong_arity_rejected(self):
        with pytest.raises(InvalidRange):
            as_bounds("lat", (1, 2, 3))


class TestGroupKey:
    def test_spatial_bin_example(self):
        key = GroupKey.spatial_bin("lat", 2, 0.5)
        assert key.evaluate(45.3) == pytest.approx(45.5)
        assert key.evaluate(46.2) == pytest.approx(45.5)
        assert key.evaluate(47.6) == pytest.approx(47.5)

    def test_spatial_bin_default_offset_centers_on_half_width(self):
        key = GroupKey.spatial_bin("lon", 1.0)
        assert key.offset == 0.5
        assert key.evaluate(10.2) == pytest.approx(10.0)
        assert key.evaluate(10.6) == pytest.approx(11.0)

    def test_temporal_bin_one_day_groups_by_calendar_day(self):
        key = GroupKey.temporal_bin(1, "2016-01-01")
        assert key.evaluate("2016-03-05T00:10:00") == key.evaluate("2016-03-05T23:50:00")
        assert key.evaluate("2016-03-05T23:50:00") != key.evaluate("2016-03-06T00:10:00")

    def test_temporal_bin_stays_aligned_across_leap_day(self):
        key = GroupKey.temporal_bin(1, "2016-01-01")
        # 2016 is a leap year: Feb 29 is day 59, Mar 1 is day 60
        assert key.evaluate("2016-02-29") == 59
        assert key.evaluate("2016-03-01") == 60
        assert key.evaluate("2017-01-01") == 366

    def test_temporal_bin_rounds_to_width_multiples(self):
        key = GroupKey.temporal_bin(7, "2016-01-01")
        assert key.evaluate("2016-01-03") == 0
        assert key.evaluate("2016-01-05") == 7
        assert key.alias == "time_bin"

    def test_rounded_uses_half_away_from_zero(self):
        assert GroupKey.rounded("lat", 0).evaluate(2.5) == 3.0
        assert GroupKey.rounded("lat", 0).evaluate(-2.5) == -3.0

    def test_year_and_month(self):
        ts = "2016-07-15T12:00:00"
        assert GroupKey.year().evaluate(ts) == 2016
        assert GroupKey.month().evaluate(ts) == 7

    @pytest.mark.parametrize(
        "factory",
        [
            lambda: GroupKey.spatial_bin("lat", 0),
            lambda: GroupKey.spatial_bin("lat", -1),
            lambda: GroupKey.temporal_bin(0, "2016-01-01"),
        ],
        ids=["zero-width", "negative-width", "zero-days"],
    )
    def test_non_positive_width_rejected(self, factory):
        with pytest.raises(InvalidRange):
            factory()

    def test_axis_kind_mismatch_rejected(self):
        with pytest.raises(InvalidQuerySpec):
            GroupKey("lat", "year")
        with pytest.raises(InvalidQuerySpec):
            GroupKey("time", "floor")
        with pytest.raises(InvalidQuerySpec):
            GroupKey("salinity")

    def test_fractional_day_width_rejected(self):
        with pytest.raises(InvalidRange):
            GroupKey.temporal_bin(1.5, "2016-01-01")


class TestQuerySpec:
    def test_minimal_spec(self):
        spec = QuerySpec(table="tblCHL_REP", variables=("chl",))
        assert not spec.is_aggregate
        assert list(spec.bounds()) == []

    def test_bounds_in_canonical_order(self):
        spec = QuerySpec(
            table="tblArgo",
            variables=("argo_temp",),
            time=as_bounds("time", ("2016-01-01", "2016-02-01")),
            depth=Range(0.0, 10.0),
            lat=Range(1.0, 2.0),
        )
        assert [axis for axis, _ in spec.bounds()] == ["lat", "depth", "time"]

    def test_spec_is_immutable(self):
        spec = QuerySpec(table="tblCHL_REP", variables=("chl",))
        with pytest.raises(AttributeError):
            spec.table = "tblOther"

    def test_caller_lists_are_copied(self):
        variables = ["chl"]
        keys = [GroupKey.raw("lat")]
        spec = QuerySpec(
            table="tblCHL_REP",
            variables=variables,
            mode=AggregationMode.CUSTOM_GROUP,
            group_keys=keys,
        )
        variables.append("9bad name")
        keys.append(GroupKey.raw("lon"))
        assert spec.variables == ("chl",)
        assert spec.group_keys == (GroupKey.raw("lat"),)
        assert "9bad" not in render_query(spec)

    def test_invalid_table_name(self):
        with pytest.raises(UnknownTable):
            QuerySpec(table="tbl; DROP TABLE x", variables=("chl",))

    def test_invalid_variable_name(self):
        with pytest.raises(UnknownColumn):
            QuerySpec(table="tblCHL_REP", variables=("chl)--",))

    def test_variables_required(self):
        with pytest.raises(InvalidQuerySpec):
            QuerySpec(table="tblCHL_REP", variables=())
        with pytest.raises(InvalidQuerySpec):
            QuerySpec(table="tblCHL_REP", variables="chl")

    def test_coordinate_cannot_be_variable(self):
        with pytest.raises(InvalidQuerySpec):
            QuerySpec(table="tblCHL_REP", variables=("lat",))

    def test_duplicate_variables_rejected(self):
        with pytest.raises(InvalidQuerySpec):
            QuerySpec(table="tblCHL_REP", variables=("chl", "chl"))

    def test_raw_spec_cannot_group(self):
        with pytest.raises(InvalidQuerySpec):
            QuerySpec(table="tblCHL_REP", variables=("chl",), group_keys=(GroupKey.raw("lat"),))

    def test_grouped_spec_needs_keys(self):
        with pytest.raises(InvalidQuerySpec):
            QuerySpec(table="tblCHL_REP", variables=("chl",), mode=AggregationMode.TIME_SERIES)

    def test_duplicate_key_aliases_rejected(self):
        with pytest.raises(InvalidQuerySpec):
            QuerySpec(
                table="tblCHL_REP",
                variables=("chl",),
                mode=AggregationMode.CUSTOM_GROUP,
                group_keys=(GroupKey.raw("lat"), GroupKey.rounded("lat", 1)),
            )

    @pytest.mark.parametrize("limit", [0, -5, 2.5], ids=["zero", "negative", "fraction"])
    def test_bad_limit_rejected(self, limit):
        with pytest.raises(InvalidQuerySpec):
            QuerySpec(table="tblCHL_REP", variables=("chl",), limit=limit)
