"""
Cross-filter & drill-down coordination.

- Row filters (dashboard, cross-filter, panel-local) compare cells by their
  label, so ``"Unknown"`` selects missing values.
- CrossFilterCoordinator holds the single dashboard-wide selection with
  toggle semantics and an enable switch.
- DrillDownSession is the breadcrumb stack behind the drill-down view.
"""

from __future__ import annotations

import io
import logging
from typing import Any, Dict, List, Optional

import pandas as pd
from pydantic import Field

from core.models import (
    Breadcrumb,
    CamelModel,
    ChartConfig,
    ColumnType,
    CrossFilterSelection,
    DataSchema,
    DrillDownContext,
    FilterState,
    PanelFilter,
    Row,
)
from core.utils import as_label, column_names, is_missing, is_numeric_like, to_number

logger = logging.getLogger("uvicorn.error")

DRILL_MAX_UNIQUE = 50
NUMERIC_SAMPLE = 10
DATE_PATTERNS = ("month", "date", "day", "week", "quarter", "time", "period")
CATEGORY_PATTERNS = ("category", "type", "region", "product", "customer", "segment")


# ---------------------------------------------------------------------------
# Row filters
# ---------------------------------------------------------------------------

def apply_cross_filter(rows: List[Row], selection: Optional[CrossFilterSelection]) -> List[Row]:
    """Broadcast filter: every panel sees only rows matching the selection."""
    if selection is None:
        return rows
    return [r for r in rows if as_label(r.get(selection.field)) == selection.value]


def apply_dashboard_filters(rows: List[Row], filters: List[FilterState]) -> List[Row]:
    """Keep rows whose label is in every active filter's values."""
    active = [(f.column, set(f.values)) for f in filters if f.values]
    if not active:
        return rows
    return [r for r in rows if all(as_label(r.get(col)) in vals for col, vals in active)]


def apply_panel_filter(rows: List[Row], panel_filter: Optional[PanelFilter]) -> List[Row]:
    """Panel-local categorical and numeric-range filters."""
    if panel_filter is None or not panel_filter.is_active():
        return rows
    out = rows
    if panel_filter.column and panel_filter.values:
        allowed = set(panel_filter.values)
        out = [r for r in out if as_label(r.get(panel_filter.column)) in allowed]
    if panel_filter.range_column is not None:
        lo = panel_filter.range_min if panel_filter.range_min is not None else float("-inf")
        hi = panel_filter.range_max if panel_filter.range_max is not None else float("inf")
        col = panel_filter.range_column
        out = [r for r in out if lo <= to_number(r.get(col)) <= hi]
    return out


def panel_filter_options(rows: List[Row], schema: DataSchema) -> Dict[str, Any]:
    """Choices for a panel's filter popover."""
    categorical: Dict[str, List[str]] = {}
    numeric: Dict[str, Dict[str, float]] = {}
    for col in schema.columns:
        if col.type == ColumnType.numeric:
            values = [to_number(r.get(col.name)) for r in rows]
            if values:
                numeric[col.name] = {"min": min(values), "max": max(values)}
        elif col.type in (ColumnType.categorical, ColumnType.datetime) or col.unique_count <= DRILL_MAX_UNIQUE:
            categorical[col.name] = sorted({as_label(r.get(col.name)) for r in rows})
    return {"categorical": categorical, "numeric": numeric}


# ---------------------------------------------------------------------------
# Cross-filter
# ---------------------------------------------------------------------------

class CrossFilterCoordinator:
    """At most one active selection dashboard-wide."""

    def __init__(self) -> None:
        self.selection: Optional[CrossFilterSelection] = None
        self.enabled = True

    def toggle(self, chart_id: str, field: str, value: Any) -> Optional[CrossFilterSelection]:
        """Select (field, value); selecting the same pair again clears it."""
        if not self.enabled:
            return self.selection
        label = as_label(value)
        current = self.selection
        if current is not None and current.field == field and current.value == label:
            self.selection = None
            logger.info("Cross-filter cleared: %s=%s", field, label)
        else:
            self.selection = CrossFilterSelection(source_chart_id=chart_id, field=field, value=label)
            logger.info("Cross-filter set: %s=%s from %s", field, label, chart_id)
        return self.selection

    def clear(self) -> None:
        self.selection = None

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = enabled
        if not enabled:
            self.clear()

    def apply(self, rows: List[Row]) -> List[Row]:
        return apply_cross_filter(rows, self.selection)


# ---------------------------------------------------------------------------
# Drill-down
# ---------------------------------------------------------------------------

class DrillDownView(CamelModel):
    context: DrillDownContext
    rows: List[Row] = Field(default_factory=list)
    columns: List[str] = Field(default_factory=list)
    drill_down_options: List[str] = Field(default_factory=list)
    numeric_columns: List[str] = Field(default_factory=list)
    default_drill_field: Optional[str] = None
    selected_field: Optional[str] = None
    aggregated: List[Dict[str, Any]] = Field(default_factory=list)
    summary: Optional[Dict[str, Any]] = None
    depth: int = 0


def drill_rows(context: DrillDownContext) -> List[Row]:
    return [r for r in context.data if as_label(r.get(context.clicked_field)) == context.clicked_value]


def drill_down_options(rows: List[Row], exclude: str) -> List[str]:
    """Columns with 2..50 distinct values, other than *exclude*."""
    out = []
    for col in column_names(rows):
        if col == exclude:
            continue
        distinct = {as_label(r.get(col)) for r in rows}
        if 1 < len(distinct) <= DRILL_MAX_UNIQUE:
            out.append(col)
    return out


def numeric_columns(rows: List[Row]) -> List[str]:
    """Columns whose first few values are all missing or numeric."""
    sample = rows[:NUMERIC_SAMPLE]
    return [
        col for col in column_names(rows)
        if all(is_missing(r.get(col)) or is_numeric_like(r.get(col)) for r in sample)
    ]


def default_drill_field(options: List[str]) -> Optional[str]:
    """Date-like name first, then category-like, then the first option."""
    for patterns in (DATE_PATTERNS, CATEGORY_PATTERNS):
        for col in options:
            lower = col.lower()
            if any(p in lower for p in patterns):
                return col
    return options[0] if options else None


def aggregate_by_field(rows: List[Row], field: str, metrics: List[str]) -> List[Dict[str, Any]]:
    """Sum every metric per label of *field*, first-seen order."""
    if not field or not metrics:
        return []
    grouped: Dict[str, Dict[str, float]] = {}
    for r in rows:
        bucket = grouped.setdefault(as_label(r.get(field)), {m: 0.0 for m in metrics})
        for m in metrics:
            bucket[m] += to_number(r.get(m))
    return [{"name": name, **values} for name, values in grouped.items()]


def summary_stats(rows: List[Row], metric: Optional[str]) -> Optional[Dict[str, Any]]:
    if not metric or not rows:
        return None
    values = [to_number(r.get(metric)) for r in rows]
    total = sum(values)
    return {
        "total": total,
        "avg": total / len(values),
        "max": max(values),
        "min": min(values),
        "count": len(values),
        "metricName": metric,
    }


class DrillDownSession:
    """Stack of drill-down levels; the top is the visible one."""

    def __init__(self) -> None:
        self.stack: List[DrillDownContext] = []

    @property
    def current(self) -> Optional[DrillDownContext]:
        return self.stack[-1] if self.stack else None

    @property
    def is_open(self) -> bool:
        return bool(self.stack)

    def open(
        self,
        chart: ChartConfig,
        field: str,
        value: Any,
        rows: List[Row],
        drill_down_field: Optional[str] = None,
    ) -> DrillDownContext:
        """Start a fresh drill-down (replaces any open one)."""
        context = DrillDownContext(
            chart_id=chart.id,
            chart_title=chart.title,
            clicked_value=as_label(value),
            clicked_field=field,
            drill_down_field=drill_down_field,
            data=list(rows),
            breadcrumbs=[],
        )
        self.stack = [context]
        logger.info("Drill-down opened: chart=%s %s=%s", chart.id, field, context.clicked_value)
        return context

    def _selected_field(self, context: DrillDownContext) -> Optional[str]:
        rows = drill_rows(context)
        options = drill_down_options(rows, context.clicked_field)
        if context.drill_down_field in options:
            return context.drill_down_field
        return default_drill_field(options)

    def select_field(self, field: str) -> Optional[DrillDownContext]:
        """Change the break-down field of the visible level."""
        if not self.stack:
            return None
        self.stack[-1] = self.stack[-1].model_copy(update={"drill_down_field": field})
        return self.stack[-1]

    def drill_deeper(self, value: Any, drill_down_field: Optional[str] = None) -> Optional[DrillDownContext]:
        """Push a level scoped to the visible level's rows and *value*."""
        current = self.current
        if current is None:
            return None
        field = self._selected_field(current)
        if field is None:
            logger.warning("Drill-down: no field to break down by")
            return None
        context = DrillDownContext(
            chart_id=current.chart_id,
            chart_title=current.chart_title,
            clicked_value=as_label(value),
            clicked_field=field,
            drill_down_field=drill_down_field,
            data=drill_rows(current),
            parent_value=current.clicked_value,
            breadcrumbs=[
                *current.breadcrumbs,
                Breadcrumb(field=current.clicked_field, value=current.clicked_value),
            ],
        )
        self.stack.append(context)
        return context

    def back(self) -> Optional[DrillDownContext]:
        """Pop one level; the first level stays until closed."""
        if len(self.stack) > 1:
            self.stack.pop()
        return self.current

    def navigate_to(self, index: int) -> Optional[DrillDownContext]:
        """Return to the level that breadcrumb *index* was recorded on."""
        if 0 <= index < len(self.stack) - 1:
            del self.stack[index + 1:]
        return self.current

    def close(self) -> None:
        self.stack = []

    def view(self) -> Optional[DrillDownView]:
        context = self.current
        if context is None:
            return None
        rows = drill_rows(context)
        options = drill_down_options(rows, context.clicked_field)
        metrics = numeric_columns(rows)
        selected = self._selected_field(context)
        return DrillDownView(
            context=context,
            rows=rows,
            columns=column_names(rows[:1]),
            drill_down_options=options,
            numeric_columns=metrics,
            default_drill_field=default_drill_field(options),
            selected_field=selected,
            aggregated=aggregate_by_field(rows, selected, metrics) if selected else [],
            summary=summary_stats(rows, metrics[0] if metrics else None),
            depth=len(self.stack),
        )

    def export_csv(self) -> Optional[Dict[str, str]]:
        """CSV of the visible level's rows: {filename, content}."""
        context = self.current
        if context is None:
            return None
        rows = drill_rows(context)
        frame = pd.DataFrame.from_records(rows, columns=column_names(rows[:1]) or None)
        buf = io.StringIO()
        frame.to_csv(buf, index=False)
        return {
            "filename": f"drill-down-{context.clicked_field}-{context.clicked_value}.csv",
            "content": buf.getvalue(),
        }
