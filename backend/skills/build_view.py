"""
View builder skill.

Takes a ChartConfig + rows -> PanelView with pre-aggregated rows.
The frontend simply renders what it receives; no computation needed there.

Chart data contract (PanelView.rows):
- kpi / card / gauge: [{name, value}] (gauge adds max, percent).
- multi-row-card: [{name, value}] per category or per metric (up to 6).
- bar / column / pie / treemap / funnel / radar / map families:
  [{name, value}] for one metric, [{name, m1, m2, ...}] for several;
  stacked/clustered variants with groupBy: [{name, <group>: value, ...}].
- line / area: [{name=ISO date, value}] ascending when xAxis holds dates,
  otherwise as bar.
- combo: [{name, <bar metric>, <line metric>}].
- scatter / bubble: [{x, y, name}] (bubble adds z, group).
- histogram: [{range, start, end, count}], 10 equal-width bins.
- box-plot: [{group, min, q1, median, q3, max, outliers}].
- heatmap: [{x, y, value}], first 8 x labels by first 6 groupBy labels.
- matrix: [{name, <col>: value, ..., total}] plus a trailing "Total" row.
- waterfall: [{name, value, start, end, isPositive}] plus "Total".
- sankey: [{source, target, value}].
- bullet: [{category, actual, target, poor, satisfactory, good}].
- ribbon: [{name, <group>: value, <group>_rank}].
- table: raw rows (column subset when configured).
- slicers: [{name, value=count}]; numeric/date slicers [{min, max}].

A chart with a formula renders formula_aggregate output instead.
A chart with neither yAxis nor formula renders nothing, except tables
and slicers which need no metric.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from core.models import (
    Aggregation,
    ChartConfig,
    ChartType,
    DataSchema,
    PanelView,
    Row,
    SortOrder,
)
from core.utils import as_label, column_names, is_numeric_like, parse_date, to_number
from skills.aggregate import (
    count_by,
    group_aggregate,
    kpi_value,
    looks_like_time_axis,
    multi_metric_aggregate,
    pivot_aggregate,
    time_series,
)
from skills.formula import evaluate_formula, formula_aggregate, referenced_columns
from skills.statistics import distribution_stats
from skills.validate import validate_chart

logger = logging.getLogger("uvicorn.error")

Builder = Callable[[ChartConfig, List[Row]], List[Dict[str, Any]]]

HISTOGRAM_BINS = 10
TABLE_MAX_ROWS = 100
TABLE_DEFAULT_COLUMNS = 6
MULTI_CARD_MAX = 6
HEATMAP_MAX_X = 8
HEATMAP_MAX_Y = 6
BULLET_MAX = 5
BULLET_DEFAULT_TARGET = 1.2

_TOP_N = {
    ChartType.pie: 8,
    ChartType.donut: 8,
    ChartType.radar: 8,
    ChartType.funnel: 5,
}

BAR_FAMILY = {
    ChartType.bar, ChartType.stacked_bar, ChartType.clustered_bar, ChartType.stacked_bar_100,
    ChartType.column, ChartType.stacked_column, ChartType.clustered_column,
    ChartType.stacked_column_100,
}
GROUPED_BAR_FAMILY = BAR_FAMILY - {ChartType.bar, ChartType.column}
LINE_FAMILY = {ChartType.line, ChartType.area, ChartType.stacked_area, ChartType.stacked_area_100}
SLICER_FAMILY = {
    ChartType.slicer, ChartType.list_slicer, ChartType.dropdown_slicer,
    ChartType.date_slicer, ChartType.numeric_slicer,
}
# render without a metric binding
METRICLESS = SLICER_FAMILY | {ChartType.table}


def _agg(chart: ChartConfig) -> Aggregation:
    return chart.aggregation or Aggregation.sum


# ---------------------------------------------------------------------------
# Single values
# ---------------------------------------------------------------------------

def _build_kpi(chart: ChartConfig, rows: List[Row]) -> List[Dict[str, Any]]:
    """KPI / card: one value. Empty input renders nothing (avg/min/max undefined)."""
    metric = chart.primary_metric
    if not metric or not rows:
        return []
    return [{"name": metric, "value": kpi_value(rows, metric, _agg(chart))}]


def _build_gauge(chart: ChartConfig, rows: List[Row]) -> List[Dict[str, Any]]:
    data = _build_kpi(chart, rows)
    if not data:
        return []
    value = data[0]["value"]
    maximum = value * 2
    percent = min(value / maximum * 100, 100.0) if maximum else 0.0
    data[0].update({"max": maximum, "percent": percent})
    return data


def _build_multi_card(chart: ChartConfig, rows: List[Row]) -> List[Dict[str, Any]]:
    metric = chart.primary_metric
    if not metric or not rows:
        return []
    agg = _agg(chart)
    category = chart.group_by or chart.x_axis
    if category:
        labels = list(dict.fromkeys(as_label(r.get(category)) for r in rows))[:MULTI_CARD_MAX]
        return [
            {"name": label, "value": kpi_value([r for r in rows if as_label(r.get(category)) == label], metric, agg)}
            for label in labels
        ]
    return [{"name": m, "value": kpi_value(rows, m, agg)} for m in chart.metrics[:MULTI_CARD_MAX]]


# ---------------------------------------------------------------------------
# Categorical aggregations
# ---------------------------------------------------------------------------

def _wide_by_group(rows: List[Row], x_field: str, group_field: str, metric: str) -> List[Dict[str, Any]]:
    """One row per x label with one summed column per group label."""
    cells = pivot_aggregate(rows, x_field, group_field, metric, Aggregation.sum)
    wide: Dict[str, Dict[str, Any]] = {}
    for cell in cells:
        wide.setdefault(cell["x"], {"name": cell["x"]})[cell["y"]] = cell["value"]
    return list(wide.values())


def _build_bar(chart: ChartConfig, rows: List[Row]) -> List[Dict[str, Any]]:
    """Bar family, pie/donut, treemap, funnel, radar and maps."""
    metrics = chart.metrics
    if not chart.x_axis or not metrics:
        return []

    if chart.type in GROUPED_BAR_FAMILY and chart.group_by and len(metrics) == 1:
        return _wide_by_group(rows, chart.x_axis, chart.group_by, metrics[0])

    if len(metrics) == 1:
        data = group_aggregate(rows, chart.x_axis, metrics[0], _agg(chart))
    else:
        data = multi_metric_aggregate(rows, chart.x_axis, metrics, _agg(chart))

    limit = _TOP_N.get(chart.type)
    return data[:limit] if limit else data


def _build_line(chart: ChartConfig, rows: List[Row]) -> List[Dict[str, Any]]:
    metrics = chart.metrics
    if not chart.x_axis or not metrics:
        return []
    if len(metrics) == 1 and looks_like_time_axis(rows, chart.x_axis):
        return [
            {"name": d["date"], "value": d["value"]}
            for d in time_series(rows, chart.x_axis, metrics[0], _agg(chart))
        ]
    return _build_bar(chart, rows)


def _build_combo(chart: ChartConfig, rows: List[Row]) -> List[Dict[str, Any]]:
    """Bars for the first metric, a line for the second (or the first again)."""
    if not chart.x_axis or not chart.primary_metric:
        return []
    bar_metric = chart.primary_metric
    line_metric = chart.secondary_metric or bar_metric
    bars = group_aggregate(rows, chart.x_axis, bar_metric, _agg(chart))
    line = {d["name"]: d["value"] for d in group_aggregate(rows, chart.x_axis, line_metric, _agg(chart), limit=None)}
    return [
        {"name": b["name"], bar_metric: b["value"], line_metric: line.get(b["name"], 0)}
        for b in bars
    ]


def _build_ribbon(chart: ChartConfig, rows: List[Row]) -> List[Dict[str, Any]]:
    metric = chart.primary_metric
    if not chart.x_axis or not metric:
        return []
    if not chart.group_by:
        return [
            {"name": d["name"], metric: d["value"], f"{metric}_rank": 1}
            for d in group_aggregate(rows, chart.x_axis, metric, Aggregation.sum, limit=None)
        ]

    ranked = []
    for row in _wide_by_group(rows, chart.x_axis, chart.group_by, metric):
        groups = sorted(((k, v) for k, v in row.items() if k != "name"), key=lambda kv: kv[1], reverse=True)
        out: Dict[str, Any] = {"name": row["name"]}
        for rank, (group, value) in enumerate(groups, start=1):
            out[group] = value
            out[f"{group}_rank"] = rank
        ranked.append(out)
    return ranked


def _build_waterfall(chart: ChartConfig, rows: List[Row]) -> List[Dict[str, Any]]:
    metric = chart.primary_metric
    if not chart.x_axis or not metric:
        return []
    steps = []
    cumulative = 0.0
    for item in group_aggregate(rows, chart.x_axis, metric, _agg(chart)):
        start = cumulative
        cumulative += item["value"]
        steps.append({
            "name": item["name"],
            "value": item["value"],
            "start": start,
            "end": cumulative,
            "isPositive": item["value"] >= 0,
        })
    if steps:
        steps.append({
            "name": "Total",
            "value": cumulative,
            "start": 0,
            "end": cumulative,
            "isPositive": cumulative >= 0,
        })
    return steps


def _build_bullet(chart: ChartConfig, rows: List[Row]) -> List[Dict[str, Any]]:
    """Actual vs. target per category; target defaults to 120% of actual."""
    metric = chart.primary_metric
    if not metric or not rows:
        return []
    target_metric = chart.secondary_metric
    agg = _agg(chart)
    category = chart.x_axis

    labels = list(dict.fromkeys(as_label(r.get(category)) for r in rows))[:BULLET_MAX] if category else ["Total"]
    bullets = []
    for label in labels:
        subset = [r for r in rows if as_label(r.get(category)) == label] if category else rows
        actual = kpi_value(subset, metric, agg)
        target = kpi_value(subset, target_metric, agg) if target_metric else actual * BULLET_DEFAULT_TARGET
        bullets.append({
            "category": label,
            "actual": actual,
            "target": target,
            "poor": target * 0.5,
            "satisfactory": target * 0.75,
            "good": target,
        })
    return bullets


def _build_sankey(chart: ChartConfig, rows: List[Row]) -> List[Dict[str, Any]]:
    """Flows from xAxis labels to groupBy labels, summed."""
    metric = chart.primary_metric
    if not chart.x_axis or not chart.group_by or not metric:
        return []
    flows: Dict[tuple, float] = {}
    for r in rows:
        key = (as_label(r.get(chart.x_axis)), as_label(r.get(chart.group_by)))
        flows[key] = flows.get(key, 0.0) + to_number(r.get(metric))
    links = [{"source": s, "target": t, "value": v} for (s, t), v in flows.items()]
    links.sort(key=lambda link: link["value"], reverse=True)
    return links


# ---------------------------------------------------------------------------
# Distributions
# ---------------------------------------------------------------------------

def _numeric_values(rows: List[Row], field: str) -> List[float]:
    return [to_number(r.get(field)) for r in rows if is_numeric_like(r.get(field))]


def _build_scatter(chart: ChartConfig, rows: List[Row]) -> List[Dict[str, Any]]:
    y_metric = chart.primary_metric
    if not chart.x_axis or not y_metric:
        return []
    points = []
    for r in rows:
        point: Dict[str, Any] = {
            "x": to_number(r.get(chart.x_axis)),
            "y": to_number(r.get(y_metric)),
            "name": as_label(r.get(chart.x_axis)),
        }
        if chart.type == ChartType.bubble:
            size_metric = chart.secondary_metric or y_metric
            point["z"] = abs(to_number(r.get(size_metric))) or 10
            point["group"] = as_label(r.get(chart.group_by)) if chart.group_by else "All"
        points.append(point)
    return points


def _build_histogram(chart: ChartConfig, rows: List[Row]) -> List[Dict[str, Any]]:
    """Ten equal-width bins between min and max; a constant column gets width 1."""
    metric = chart.primary_metric
    if not metric:
        return []
    values = _numeric_values(rows, metric)
    if not values:
        return []

    lo, hi = min(values), max(values)
    width = (hi - lo) / HISTOGRAM_BINS or 1
    counts, edges = np.histogram(values, bins=HISTOGRAM_BINS, range=(lo, lo + width * HISTOGRAM_BINS))
    return [
        {
            "range": f"{edges[i]:.0f}-{edges[i + 1]:.0f}",
            "start": float(edges[i]),
            "end": float(edges[i + 1]),
            "count": int(count),
        }
        for i, count in enumerate(counts)
    ]


def _build_box(chart: ChartConfig, rows: List[Row]) -> List[Dict[str, Any]]:
    """Box-plot stats per xAxis label (or one "all" box)."""
    metric = chart.primary_metric
    if not metric:
        return []

    if chart.x_axis:
        groups: Dict[str, List[Row]] = {}
        for r in rows:
            groups.setdefault(as_label(r.get(chart.x_axis)), []).append(r)
    else:
        groups = {"all": rows}

    records = []
    for label, members in groups.items():
        values = _numeric_values(members, metric)
        if not values:
            continue
        records.append({"group": label, **distribution_stats(values).model_dump()})
    return records


def _build_heatmap(chart: ChartConfig, rows: List[Row]) -> List[Dict[str, Any]]:
    metric = chart.primary_metric
    if not chart.x_axis or not metric:
        return []
    return pivot_aggregate(
        rows, chart.x_axis, chart.group_by, metric, _agg(chart),
        max_x=HEATMAP_MAX_X, max_y=HEATMAP_MAX_Y,
    )


# ---------------------------------------------------------------------------
# Tabular
# ---------------------------------------------------------------------------

def _build_table(chart: ChartConfig, rows: List[Row]) -> List[Dict[str, Any]]:
    if not rows:
        return []
    cols = [c for c in (chart.columns or []) if c] or column_names(rows[:1])[:TABLE_DEFAULT_COLUMNS]
    return [{c: r.get(c) for c in cols} for r in rows[:TABLE_MAX_ROWS]]


def _build_matrix(chart: ChartConfig, rows: List[Row]) -> List[Dict[str, Any]]:
    """Row labels (xAxis) by column labels (groupBy) with row and column totals."""
    metric = chart.primary_metric
    if not chart.x_axis or not metric or not rows:
        return []

    cells = pivot_aggregate(rows, chart.x_axis, chart.group_by, metric, Aggregation.sum)
    col_key = (lambda y: y) if chart.group_by else (lambda y: "Value")

    matrix: Dict[str, Dict[str, Any]] = {}
    totals: Dict[str, Any] = {"name": "Total"}
    for cell in cells:
        col = col_key(cell["y"])
        row = matrix.setdefault(cell["x"], {"name": cell["x"], "total": 0})
        row[col] = cell["value"]
        row["total"] += cell["value"]
        totals[col] = totals.get(col, 0) + cell["value"]
    totals["total"] = sum(r["total"] for r in matrix.values())
    return [*matrix.values(), totals]


# ---------------------------------------------------------------------------
# Slicers
# ---------------------------------------------------------------------------

def _build_slicer(chart: ChartConfig, rows: List[Row]) -> List[Dict[str, Any]]:
    field = chart.filter_column or chart.x_axis
    if not field or not rows:
        return []

    if chart.type == ChartType.numeric_slicer:
        values = _numeric_values(rows, field)
        return [{"min": min(values), "max": max(values)}] if values else []
    if chart.type == ChartType.date_slicer:
        dates = [d for d in (parse_date(r.get(field)) for r in rows) if d is not None]
        if not dates:
            return []
        return [{"min": min(dates).date().isoformat(), "max": max(dates).date().isoformat()}]

    counts = count_by(rows, field, limit=None)
    return sorted(counts, key=lambda c: c["name"])


# ---------------------------------------------------------------------------
# Formula charts
# ---------------------------------------------------------------------------

def _build_formula(chart: ChartConfig, rows: List[Row]) -> List[Dict[str, Any]]:
    """Grouped formula values; without xAxis a single value over column totals."""
    label = chart.formula_label or "value"
    if chart.x_axis:
        return formula_aggregate(rows, chart.x_axis, chart.formula, label)
    if not rows:
        return []
    totals: Dict[str, float] = {}
    for c in referenced_columns(chart.formula, column_names(rows)):
        totals[c] = sum(to_number(r.get(c)) for r in rows)
    return [{"name": label, "value": evaluate_formula(chart.formula, totals)}]


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

_BUILDERS: Dict[ChartType, Builder] = {
    ChartType.kpi: _build_kpi,
    ChartType.card: _build_kpi,
    ChartType.gauge: _build_gauge,
    ChartType.multi_row_card: _build_multi_card,
    ChartType.combo: _build_combo,
    ChartType.line_clustered_column: _build_combo,
    ChartType.line_stacked_column: _build_combo,
    ChartType.scatter: _build_scatter,
    ChartType.bubble: _build_scatter,
    ChartType.histogram: _build_histogram,
    ChartType.box_plot: _build_box,
    ChartType.table: _build_table,
    ChartType.matrix: _build_matrix,
    ChartType.heatmap: _build_heatmap,
    ChartType.waterfall: _build_waterfall,
    ChartType.ribbon: _build_ribbon,
    ChartType.sankey: _build_sankey,
    ChartType.bullet: _build_bullet,
}
_BUILDERS.update({t: _build_line for t in LINE_FAMILY})
_BUILDERS.update({t: _build_slicer for t in SLICER_FAMILY})


def _apply_sort(chart: ChartConfig, data: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    key = chart.sort_by
    if not key or not data or key not in data[0]:
        return data
    ascending = chart.sort_order == SortOrder.asc
    return sorted(data, key=lambda d: to_number(d.get(key)), reverse=not ascending)


def build_rows(chart: ChartConfig, rows: List[Row]) -> List[Dict[str, Any]]:
    """Chart-ready rows for *chart*; [] when the chart is not bound."""
    if not chart.has_binding() and chart.type not in METRICLESS:
        return []
    if chart.formula and chart.formula.strip() and chart.type not in METRICLESS:
        data = _build_formula(chart, rows)
    else:
        builder = _BUILDERS.get(chart.type, _build_bar)
        data = builder(chart, rows)
    return _apply_sort(chart, data)


def build_view(
    chart: ChartConfig,
    rows: List[Row],
    schema: Optional[DataSchema] = None,
    include_data: bool = False,
) -> PanelView:
    """
    Build a PanelView for one chart over its (already filtered) input rows.

    ``include_data`` attaches the filtered input for renderers that do
    their own computation (box plots, histograms, tables).
    """
    data = build_rows(chart, rows)
    warnings = validate_chart(chart, schema) if schema is not None else []

    if not data:
        logger.warning(
            "View data empty: chart=%s type=%s rows=%d",
            chart.id, chart.type.value, len(rows),
        )
    else:
        logger.info(
            "View built: chart=%s type=%s keys=%s",
            chart.id, chart.type.value, list(data[0].keys()),
        )

    return PanelView(
        chart_id=chart.id,
        type=chart.type,
        title=chart.title,
        rows=data,
        data=list(rows) if include_data else None,
        input_row_count=len(rows),
        is_empty=not data,
        warnings=warnings,
    )
