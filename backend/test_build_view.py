"""
Tests for chart view building and chart validation warnings.
"""

import pytest

from core.models import Aggregation, ChartConfig, ChartType, SortOrder
from skills.build_view import build_rows, build_view
from skills.profile import infer_schema
from skills.validate import validate_chart


@pytest.fixture
def rows():
    return [
        {"date": "2024-01-01", "region": "E", "product": "A", "sales": 10, "cost": 4},
        {"date": "2024-01-02", "region": "W", "product": "B", "sales": 7, "cost": 2},
        {"date": "2024-01-01", "region": "E", "product": "B", "sales": 5, "cost": 1},
    ]


def _chart(chart_type, **kw):
    return ChartConfig(type=chart_type, **kw)


class TestBuildRows:
    """Tests for the per-type data contracts."""

    def test_bar(self, rows):
        chart = _chart(ChartType.bar, x_axis="region", y_axis="sales")
        assert build_rows(chart, rows) == [{"name": "E", "value": 15}, {"name": "W", "value": 7}]

    def test_bar_multi_metric(self, rows):
        chart = _chart(ChartType.column, x_axis="region", y_axis=["sales", "cost"])
        assert build_rows(chart, rows) == [
            {"name": "E", "sales": 15, "cost": 5},
            {"name": "W", "sales": 7, "cost": 2},
        ]

    def test_stacked_with_group_by(self, rows):
        chart = _chart(ChartType.stacked_bar, x_axis="region", y_axis="sales", group_by="product")
        assert build_rows(chart, rows) == [
            {"name": "E", "A": 10, "B": 5},
            {"name": "W", "A": 0, "B": 7},
        ]

    @pytest.mark.parametrize("chart_type", [ChartType.line, ChartType.area])
    def test_line_on_dates(self, rows, chart_type):
        """Date buckets come back as name/value rows, oldest first."""
        chart = _chart(chart_type, x_axis="date", y_axis="sales")
        assert build_rows(chart, rows) == [
            {"name": "2024-01-01", "value": 15},
            {"name": "2024-01-02", "value": 7},
        ]

    def test_line_on_categories_falls_back_to_bar(self, rows):
        chart = _chart(ChartType.area, x_axis="region", y_axis="sales")
        assert build_rows(chart, rows)[0] == {"name": "E", "value": 15}

    def test_kpi(self, rows):
        chart = _chart(ChartType.kpi, y_axis="sales", aggregation=Aggregation.avg)
        assert build_rows(chart, rows) == [{"name": "sales", "value": pytest.approx(22 / 3)}]

    def test_kpi_empty_input(self):
        assert build_rows(_chart(ChartType.kpi, y_axis="sales"), []) == []

    def test_gauge(self, rows):
        data = build_rows(_chart(ChartType.gauge, y_axis="sales"), rows)
        assert data[0]["max"] == 44
        assert data[0]["percent"] == 50

    def test_pie_capped(self):
        many = [{"k": f"k{i}", "v": i} for i in range(15)]
        assert len(build_rows(_chart(ChartType.pie, x_axis="k", y_axis="v"), many)) == 8
        assert len(build_rows(_chart(ChartType.funnel, x_axis="k", y_axis="v"), many)) == 5

    def test_combo(self, rows):
        chart = _chart(ChartType.combo, x_axis="region", y_axis=["sales", "cost"])
        assert build_rows(chart, rows)[0] == {"name": "E", "sales": 15, "cost": 5}

    def test_waterfall_total(self, rows):
        data = build_rows(_chart(ChartType.waterfall, x_axis="region", y_axis="sales"), rows)
        assert data[-1] == {"name": "Total", "value": 22, "start": 0, "end": 22, "isPositive": True}
        assert data[1]["start"] == 15

    def test_sankey(self, rows):
        chart = _chart(ChartType.sankey, x_axis="region", y_axis="sales", group_by="product")
        assert build_rows(chart, rows)[0] == {"source": "E", "target": "A", "value": 10}

    def test_bubble(self, rows):
        chart = _chart(ChartType.bubble, x_axis="cost", y_axis=["sales", "cost"], group_by="region")
        point = build_rows(chart, rows)[0]
        assert point == {"x": 4, "y": 10, "name": "4", "z": 4, "group": "E"}

    def test_histogram_bins(self):
        data = [{"v": i} for i in range(101)]
        bins = build_rows(_chart(ChartType.histogram, y_axis="v"), data)
        assert len(bins) == 10
        assert sum(b["count"] for b in bins) == 101
        assert bins[0]["start"] == 0
        assert bins[-1]["end"] == 100

    def test_histogram_constant_column(self):
        bins = build_rows(_chart(ChartType.histogram, y_axis="v"), [{"v": 5}, {"v": 5}])
        assert sum(b["count"] for b in bins) == 2

    def test_box_plot(self):
        data = [{"g": "a", "v": i} for i in range(1, 10)]
        box = build_rows(_chart(ChartType.box_plot, x_axis="g", y_axis="v"), data)
        assert box == [{"group": "a", "min": 1, "q1": 3, "median": 5, "q3": 7, "max": 9, "outliers": []}]

    def test_matrix_totals(self, rows):
        chart = _chart(ChartType.matrix, x_axis="region", y_axis="sales", group_by="product")
        data = build_rows(chart, rows)
        assert data[0] == {"name": "E", "A": 10, "B": 5, "total": 15}
        assert data[-1] == {"name": "Total", "A": 10, "B": 12, "total": 22}

    def test_table_needs_no_metric(self, rows):
        data = build_rows(_chart(ChartType.table, columns=["region", "sales"]), rows)
        assert data[0] == {"region": "E", "sales": 10}

    def test_table_capped(self):
        data = [{"i": i} for i in range(150)]
        assert len(build_rows(_chart(ChartType.table), data)) == 100

    def test_slicers(self, rows):
        assert build_rows(_chart(ChartType.slicer, filter_column="product"), rows) == [
            {"name": "A", "value": 1},
            {"name": "B", "value": 2},
        ]
        assert build_rows(_chart(ChartType.numeric_slicer, filter_column="sales"), rows) == [{"min": 5, "max": 10}]
        assert build_rows(_chart(ChartType.date_slicer, filter_column="date"), rows) == [
            {"min": "2024-01-01", "max": "2024-01-02"},
        ]

    def test_formula_grouped(self, rows):
        chart = _chart(ChartType.bar, x_axis="region", formula="sales - cost", formula_label="margin")
        assert build_rows(chart, rows) == [
            {"name": "E", "value": 10, "margin": 10},
            {"name": "W", "value": 5, "margin": 5},
        ]

    def test_formula_single_value(self, rows):
        chart = _chart(ChartType.kpi, formula="sales - cost")
        assert build_rows(chart, rows) == [{"name": "value", "value": 15}]

    def test_deeply_nested_formula_renders_zeros(self, rows):
        """A stored formula too deep to parse yields zeros instead of failing the render."""
        formula = "(" * 3000 + "cost" + ")" * 3000
        view = build_view(_chart(ChartType.bar, x_axis="region", formula=formula), rows)
        assert view.rows
        assert all(d["value"] == 0 for d in view.rows)

    def test_unbound_chart_renders_nothing(self, rows):
        assert build_rows(_chart(ChartType.bar, x_axis="region"), rows) == []

    def test_sort_ascending(self, rows):
        chart = _chart(ChartType.bar, x_axis="region", y_axis="sales", sort_by="value", sort_order=SortOrder.asc)
        assert [d["name"] for d in build_rows(chart, rows)] == ["W", "E"]


class TestBuildView:
    def test_view_metadata(self, rows):
        chart = _chart(ChartType.histogram, title="Sales", y_axis="sales")
        view = build_view(chart, rows, infer_schema(rows), include_data=True)
        assert view.chart_id == chart.id
        assert view.input_row_count == 3
        assert view.data == rows
        assert not view.is_empty
        assert view.warnings == []

    def test_empty_view(self, rows):
        view = build_view(_chart(ChartType.bar, x_axis="region", y_axis="sales"), [])
        assert view.is_empty
        assert view.data is None


class TestValidateChart:
    """Tests for configuration warnings."""

    @pytest.fixture
    def schema(self, rows):
        return infer_schema(rows)

    def test_sound_config(self, schema):
        assert validate_chart(_chart(ChartType.bar, x_axis="region", y_axis="sales"), schema) == []

    def test_missing_binding(self, schema):
        warnings = validate_chart(_chart(ChartType.bar), schema)
        assert "Configure a value field." in warnings
        assert "bar needs an x-axis field." in warnings

    def test_unknown_fields(self, schema):
        warnings = validate_chart(_chart(ChartType.bar, x_axis="country", y_axis="profit"), schema)
        assert "The x-axis field 'country' is not in the dataset." in warnings
        assert "Metric 'profit' is not in the dataset." in warnings

    def test_non_numeric_metric(self, schema):
        warnings = validate_chart(_chart(ChartType.bar, x_axis="region", y_axis="product"), schema)
        assert any("non-numeric values count as 0" in w for w in warnings)
        counted = _chart(ChartType.bar, x_axis="region", y_axis="product", aggregation=Aggregation.count)
        assert validate_chart(counted, schema) == []

    def test_formula_error(self, schema):
        warnings = validate_chart(_chart(ChartType.kpi, formula="sales -"), schema)
        assert warnings[0].startswith("Formula error:")
        assert warnings[0].endswith("Values will be 0.")

    def test_sankey_needs_group_by(self, schema):
        warnings = validate_chart(_chart(ChartType.sankey, x_axis="region", y_axis="sales"), schema)
        assert "sankey needs a group-by field." in warnings

    def test_high_cardinality(self):
        many = [{"k": f"k{i}", "v": i} for i in range(60)]
        warnings = validate_chart(_chart(ChartType.pie, x_axis="k", y_axis="v"), infer_schema(many))
        assert any(w.startswith("High cardinality (60)") for w in warnings)
