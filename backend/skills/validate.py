"""
Validation skill for chart configurations.

Collects warnings (unknown fields, missing bindings, bad formulas,
high-cardinality axes) for the panel header. Warnings never block
rendering: an unbound chart simply renders nothing.
"""

from __future__ import annotations

from typing import List, Optional

from core.models import Aggregation, ChartConfig, ChartType, ColumnType, DataSchema
from skills.formula import validate_formula

HIGH_CARDINALITY = 50

_NEEDS_X_AXIS = {
    ChartType.bar, ChartType.stacked_bar, ChartType.clustered_bar, ChartType.stacked_bar_100,
    ChartType.column, ChartType.stacked_column, ChartType.clustered_column,
    ChartType.stacked_column_100, ChartType.line, ChartType.area, ChartType.stacked_area,
    ChartType.stacked_area_100, ChartType.combo, ChartType.line_clustered_column,
    ChartType.line_stacked_column, ChartType.pie, ChartType.donut, ChartType.scatter,
    ChartType.bubble, ChartType.heatmap, ChartType.treemap, ChartType.waterfall,
    ChartType.funnel, ChartType.radar, ChartType.ribbon, ChartType.sankey, ChartType.matrix,
    ChartType.map, ChartType.filled_map, ChartType.bubble_map,
}
_NEEDS_GROUP_BY = {ChartType.sankey}
_SLICERS = {
    ChartType.slicer, ChartType.list_slicer, ChartType.dropdown_slicer,
    ChartType.date_slicer, ChartType.numeric_slicer,
}
_HIGH_CARDINALITY_GUARD = {ChartType.pie, ChartType.donut, ChartType.funnel, ChartType.radar}


def _unknown(field: Optional[str], names: set) -> bool:
    return bool(field) and field not in names


def validate_chart(chart: ChartConfig, schema: DataSchema) -> List[str]:
    """Warnings for *chart* against *schema*; empty when the config is sound."""
    warnings: List[str] = []
    names = {c.name for c in schema.columns}

    if chart.type not in _SLICERS and chart.type != ChartType.table and not chart.has_binding():
        warnings.append("Configure a value field.")
    if chart.type in _NEEDS_X_AXIS and not chart.x_axis:
        warnings.append(f"{chart.type.value} needs an x-axis field.")
    if chart.type in _NEEDS_GROUP_BY and not chart.group_by:
        warnings.append(f"{chart.type.value} needs a group-by field.")
    if chart.type in _SLICERS and not (chart.filter_column or chart.x_axis):
        warnings.append("Choose a field to slice by.")

    if not names:
        return warnings

    for label, field in (("x-axis", chart.x_axis), ("group-by", chart.group_by), ("filter", chart.filter_column)):
        if _unknown(field, names):
            warnings.append(f"The {label} field '{field}' is not in the dataset.")
    for metric in chart.metrics:
        if metric not in names:
            warnings.append(f"Metric '{metric}' is not in the dataset.")
            continue
        col = schema.column(metric)
        if col is not None and col.type != ColumnType.numeric and chart.aggregation != Aggregation.count:
            warnings.append(f"Metric '{metric}' is {col.type.value}; non-numeric values count as 0.")
    for col in chart.columns or []:
        if col not in names:
            warnings.append(f"Column '{col}' is not in the dataset.")

    if chart.formula and chart.formula.strip():
        ok, message = validate_formula(chart.formula, names)
        if not ok:
            warnings.append(f"Formula error: {message}. Values will be 0.")
        elif message != "ok":
            warnings.append(message)

    if chart.type in _HIGH_CARDINALITY_GUARD and chart.x_axis:
        col = schema.column(chart.x_axis)
        if col is not None and col.unique_count > HIGH_CARDINALITY:
            warnings.append(
                f"High cardinality ({col.unique_count}) on {chart.type.value}; only the top values are shown."
            )
    return warnings

