"""
Tests for distribution statistics, dataset statistics and sampling.
"""

import pandas as pd
import pytest

from core.models import ColumnType
from skills.profile import infer_schema
from skills.statistics import (
    cached_statistics,
    clear_statistics_cache,
    dataset_statistics,
    distribution_stats,
    infer_frequency,
    pearson,
    quartiles,
    stratified_sample,
)


class TestDistributionStats:
    """Tests for box-plot statistics."""

    def test_one_to_nine(self):
        """Quartiles of 1..9 are 3/5/7 with no outliers."""
        stats = distribution_stats(range(1, 10))
        assert (stats.q1, stats.median, stats.q3) == (3, 5, 7)
        assert (stats.min, stats.max) == (1, 9)
        assert stats.outliers == []

    def test_outlier_excluded_from_whiskers(self):
        """Values beyond 1.5 x IQR are outliers and do not set min/max."""
        stats = distribution_stats([1, 2, 3, 4, 5, 6, 7, 8, 100])
        assert stats.outliers == [100]
        assert stats.max == 8

    def test_even_count(self):
        assert quartiles([1, 2, 3, 4]) == (1.5, 2.5, 3.5)

    def test_empty(self):
        stats = distribution_stats([])
        assert stats.median == 0
        assert stats.outliers == []


class TestDatasetStatistics:
    """Tests for the per-column dataset description."""

    @pytest.fixture
    def rows(self):
        return [
            {"day": f"2024-01-{i + 1:02d}", "units": i, "price": 2 * i + 1, "region": "EW"[i % 2]}
            for i in range(12)
        ]

    def test_column_kinds(self, rows):
        """Each column gets the statistics matching its type."""
        stats = dataset_statistics(rows)
        by_name = {c.name: c for c in stats.columns}
        assert stats.row_count == 12
        assert by_name["units"].numeric.max == 11
        assert by_name["region"].categorical.unique_count == 2
        assert by_name["day"].date.range_days == 11
        assert by_name["day"].date.inferred_frequency == "daily"

    def test_correlations(self, rows):
        """Perfectly linear columns correlate at 1."""
        stats = dataset_statistics(rows)
        assert stats.correlations[0].correlation == pytest.approx(1.0)
        assert {stats.correlations[0].column1, stats.correlations[0].column2} == {"units", "price"}

    def test_no_correlations_for_small_datasets(self, rows):
        assert dataset_statistics(rows[:5]).correlations == []

    def test_cache_reuses_result(self, rows):
        """The same content hash returns the cached object."""
        clear_statistics_cache()
        schema = infer_schema(rows)
        first = cached_statistics(rows, schema, data_hash="abc")
        assert cached_statistics(rows, schema, data_hash="abc") is first

    def test_cache_key_follows_overrides(self, rows):
        """A re-typed column is not served from a stale cache entry."""
        clear_statistics_cache()
        schema = infer_schema(rows)
        retyped = infer_schema(rows, {"units": ColumnType.categorical})
        first = cached_statistics(rows, schema, data_hash="abc")
        second = cached_statistics(rows, retyped, data_hash="abc")
        assert second is not first
        assert second.columns[1].categorical is not None


class TestHelpers:
    @pytest.mark.parametrize("step_days,expected", [
        (1, "daily"),
        (7, "weekly"),
        (30, "monthly"),
        (91, "quarterly"),
        (365, "yearly"),
    ])
    def test_infer_frequency(self, step_days, expected):
        dates = list(pd.date_range("2020-01-01", periods=5, freq=f"{step_days}D"))
        assert infer_frequency(dates) == expected

    def test_pearson_zero_variance(self):
        assert pearson([1, 1, 1], [1, 2, 3]) == 0

    def test_stratified_sample_keeps_ends(self):
        """First and last rows are always included."""
        rows = [{"i": i} for i in range(100)]
        sample = stratified_sample(rows, 5)
        assert len(sample) == 5
        assert sample[0] == {"i": 0}
        assert sample[-1] == {"i": 99}

    def test_stratified_sample_small_input(self):
        rows = [{"i": 1}, {"i": 2}]
        assert stratified_sample(rows, 10) == rows
        assert stratified_sample(rows, 0) == []
