"""
Tests for the aggregation skill: grouped, multi-metric, time series, pivot and KPI values.
"""

import math

import pytest

from core.models import Aggregation
from skills.aggregate import (
    count_by,
    group_aggregate,
    kpi_value,
    looks_like_time_axis,
    multi_metric_aggregate,
    pivot_aggregate,
    time_series,
)


@pytest.fixture
def region_rows():
    return [
        {"region": "E", "sales": 10},
        {"region": "W", "sales": 7},
        {"region": "E", "sales": 5},
    ]


class TestGroupAggregate:
    """Tests for single-metric grouped aggregation."""

    def test_sum_by_region(self, region_rows):
        """E/W sums come back largest first."""
        result = group_aggregate(region_rows, "region", "sales")
        assert result == [{"name": "E", "value": 15}, {"name": "W", "value": 7}]

    @pytest.mark.parametrize("aggregation,expected", [
        (Aggregation.avg, {"E": 7.5, "W": 7}),
        (Aggregation.count, {"E": 2, "W": 1}),
        (Aggregation.min, {"E": 5, "W": 7}),
        (Aggregation.max, {"E": 10, "W": 7}),
    ])
    def test_aggregations(self, region_rows, aggregation, expected):
        """Every aggregation reduces each group independently."""
        result = group_aggregate(region_rows, "region", "sales", aggregation)
        assert {r["name"]: r["value"] for r in result} == expected

    def test_missing_group_is_unknown(self):
        """Null and empty group values are collected under "Unknown"."""
        rows = [{"g": None, "v": 1}, {"g": "", "v": 2}, {"g": "a", "v": 1}]
        result = group_aggregate(rows, "g", "v")
        assert result[0] == {"name": "Unknown", "value": 3}

    def test_unparseable_metric_counts_as_zero(self):
        """Non-numeric metric cells coerce to 0 instead of failing."""
        rows = [{"g": "a", "v": "n/a"}, {"g": "a", "v": "4"}]
        assert group_aggregate(rows, "g", "v") == [{"name": "a", "value": 4}]

    def test_limit_caps_groups(self):
        """At most `limit` groups are returned, the largest ones."""
        rows = [{"g": f"g{i}", "v": i} for i in range(30)]
        result = group_aggregate(rows, "g", "v")
        assert len(result) == 20
        assert result[0]["name"] == "g29"

    def test_empty_rows(self):
        assert group_aggregate([], "g", "v") == []


class TestMultiMetricAggregate:
    """Tests for grouped aggregation over several metrics."""

    def test_one_column_per_metric(self):
        """Each output row carries every metric, ordered by the first."""
        rows = [
            {"r": "E", "a": 1, "b": 10},
            {"r": "W", "a": 5, "b": 1},
            {"r": "E", "a": 2, "b": 10},
        ]
        result = multi_metric_aggregate(rows, "r", ["a", "b"])
        assert result == [
            {"name": "W", "a": 5, "b": 1},
            {"name": "E", "a": 3, "b": 20},
        ]

    def test_no_metrics(self, region_rows):
        assert multi_metric_aggregate(region_rows, "region", []) == []


class TestCountBy:
    def test_counts_labels(self, region_rows):
        """Rows are counted per label, most frequent first."""
        assert count_by(region_rows, "region") == [
            {"name": "E", "value": 2},
            {"name": "W", "value": 1},
        ]


class TestTimeSeries:
    """Tests for date bucketing."""

    def test_buckets_by_calendar_date(self):
        """Timestamps on the same day share a bucket; output is ascending."""
        rows = [
            {"d": "2024-01-02T10:00:00", "v": 1},
            {"d": "2024-01-01", "v": 4},
            {"d": "2024-01-02T18:30:00", "v": 2},
        ]
        assert time_series(rows, "d", "v") == [
            {"date": "2024-01-01", "value": 4},
            {"date": "2024-01-02", "value": 3},
        ]

    @pytest.mark.parametrize("blank", [None, "", 0])
    def test_blank_dates_skipped(self, blank):
        """Rows with an empty date are dropped."""
        rows = [{"d": blank, "v": 100}, {"d": "2024-03-01", "v": 1}]
        assert time_series(rows, "d", "v") == [{"date": "2024-03-01", "value": 1}]

    def test_time_axis_detection(self):
        """Only a date string in the first row marks a time axis."""
        assert looks_like_time_axis([{"d": "2024-01-01"}], "d")
        assert not looks_like_time_axis([{"d": "East"}], "d")
        assert not looks_like_time_axis([{"d": 2024}], "d")
        assert not looks_like_time_axis([], "d")


class TestPivotAggregate:
    """Tests for two-dimension cells."""

    def test_full_grid_with_zero_fill(self):
        """Every x/y combination is present; empty cells are 0."""
        rows = [
            {"x": "a", "y": "p", "v": 1},
            {"x": "b", "y": "q", "v": 2},
            {"x": "a", "y": "p", "v": 3},
        ]
        cells = pivot_aggregate(rows, "x", "y", "v")
        lookup = {(c["x"], c["y"]): c["value"] for c in cells}
        assert lookup == {("a", "p"): 4, ("a", "q"): 0, ("b", "p"): 0, ("b", "q"): 2}

    def test_caps_axes(self):
        """Only the first max_x / max_y labels are kept."""
        rows = [{"x": f"x{i}", "y": f"y{i % 3}", "v": 1} for i in range(12)]
        cells = pivot_aggregate(rows, "x", "y", "v", max_x=8, max_y=2)
        assert len(cells) == 16
        assert {c["y"] for c in cells} == {"y0", "y1"}

    def test_without_y_field(self):
        """A missing second dimension folds everything into "All"."""
        rows = [{"x": "a", "v": 2}, {"x": "a", "v": 3}]
        assert pivot_aggregate(rows, "x", None, "v") == [{"x": "a", "y": "All", "value": 5}]


class TestKpiValue:
    """Tests for whole-dataset scalars."""

    def test_sum(self, region_rows):
        assert kpi_value(region_rows, "sales") == 22

    def test_count(self, region_rows):
        assert kpi_value(region_rows, "sales", Aggregation.count) == 3

    def test_empty_inputs(self):
        """Empty datasets give the reduction's identity value."""
        assert kpi_value([], "v", Aggregation.sum) == 0
        assert math.isnan(kpi_value([], "v", Aggregation.avg))
        assert kpi_value([], "v", Aggregation.min) == math.inf
        assert kpi_value([], "v", Aggregation.max) == -math.inf
