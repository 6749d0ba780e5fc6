"""
Aggregation skill.

Pure functions turning rows into the shapes charts render:

- group_aggregate:        [{name, value}]            top MAX_GROUPS, descending
- multi_metric_aggregate: [{name, m1, m2, ...}]      sorted on the first metric
- time_series:            [{date, value}]            ascending by ISO date
- pivot_aggregate:        [{x, y, value}]            two-dimension cells
- kpi_value:              float                      whole-dataset scalar

Metrics are coerced with ``to_number`` (0 on failure) and groups are keyed
by ``as_label`` (missing -> "Unknown").
"""

from __future__ import annotations

import math
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from core.config import MAX_GROUPS
from core.models import Aggregation, Row
from core.utils import as_label, date_bucket, is_missing, parse_date, to_number

_GROUP_KEY = "__group__"

_PANDAS_AGG = {
    Aggregation.sum: "sum",
    Aggregation.avg: "mean",
    Aggregation.count: "count",
    Aggregation.min: "min",
    Aggregation.max: "max",
}


def _agg_name(aggregation: Any) -> str:
    try:
        return _PANDAS_AGG[Aggregation(aggregation)]
    except ValueError:
        return "sum"


def _metric_frame(keys: List[str], rows: List[Row], metrics: Sequence[str]) -> pd.DataFrame:
    frame = pd.DataFrame({_GROUP_KEY: keys})
    for i, m in enumerate(metrics):
        frame[f"__m{i}__"] = [to_number(r.get(m)) for r in rows]
    return frame


def _as_value(v: Any) -> float:
    f = float(v)
    return int(f) if f.is_integer() and math.isfinite(f) and abs(f) < 2 ** 53 else f


# ---------------------------------------------------------------------------
# Grouped aggregation
# ---------------------------------------------------------------------------

def group_aggregate(
    rows: List[Row],
    group_by: str,
    metric: str,
    aggregation: Aggregation = Aggregation.sum,
    limit: Optional[int] = MAX_GROUPS,
) -> List[Dict[str, Any]]:
    """One ``{name, value}`` per distinct group label, largest first."""
    if not rows:
        return []

    frame = _metric_frame([as_label(r.get(group_by)) for r in rows], rows, [metric])
    grouped = frame.groupby(_GROUP_KEY, sort=False)["__m0__"].agg(_agg_name(aggregation))
    grouped = grouped.sort_values(ascending=False, kind="stable")
    if limit:
        grouped = grouped.head(limit)
    return [{"name": name, "value": _as_value(v)} for name, v in grouped.items()]


def multi_metric_aggregate(
    rows: List[Row],
    group_by: str,
    metrics: Sequence[str],
    aggregation: Aggregation = Aggregation.sum,
    limit: Optional[int] = MAX_GROUPS,
) -> List[Dict[str, Any]]:
    """Like group_aggregate, one column per metric; ordering uses metrics[0]."""
    if not rows or not metrics:
        return []

    frame = _metric_frame([as_label(r.get(group_by)) for r in rows], rows, metrics)
    value_cols = [f"__m{i}__" for i in range(len(metrics))]
    grouped = frame.groupby(_GROUP_KEY, sort=False)[value_cols].agg(_agg_name(aggregation))
    grouped = grouped.sort_values(value_cols[0], ascending=False, kind="stable")
    if limit:
        grouped = grouped.head(limit)

    out: List[Dict[str, Any]] = []
    for name, rec in grouped.iterrows():
        row: Dict[str, Any] = {"name": name}
        for i, m in enumerate(metrics):
            row[m] = _as_value(rec[value_cols[i]])
        out.append(row)
    return out


def count_by(rows: List[Row], field: str, limit: Optional[int] = MAX_GROUPS) -> List[Dict[str, Any]]:
    """Row count per label (slicers, funnels without a metric)."""
    if not rows:
        return []
    counts = pd.Series([as_label(r.get(field)) for r in rows]).value_counts(sort=True)
    if limit:
        counts = counts.head(limit)
    return [{"name": name, "value": int(n)} for name, n in counts.items()]


# ---------------------------------------------------------------------------
# Time series
# ---------------------------------------------------------------------------

def _blank_date(value: Any) -> bool:
    if is_missing(value) or value is False:
        return True
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value == 0


def time_series(
    rows: List[Row],
    date_field: str,
    metric: str,
    aggregation: Aggregation = Aggregation.sum,
) -> List[Dict[str, Any]]:
    """Bucket rows by calendar date; rows with an empty date are skipped."""
    kept = [r for r in rows if not _blank_date(r.get(date_field))]
    if not kept:
        return []

    frame = _metric_frame([date_bucket(r.get(date_field)) for r in kept], kept, [metric])
    grouped = frame.groupby(_GROUP_KEY, sort=True)["__m0__"].agg(_agg_name(aggregation))
    return [{"date": d, "value": _as_value(v)} for d, v in grouped.items()]


def looks_like_time_axis(rows: List[Row], field: Optional[str]) -> bool:
    """True when the first row's value for *field* is a date string."""
    if not rows or not field:
        return False
    first = rows[0].get(field)
    return isinstance(first, str) and parse_date(first) is not None


# ---------------------------------------------------------------------------
# Two-dimension pivot
# ---------------------------------------------------------------------------

def pivot_aggregate(
    rows: List[Row],
    x_field: str,
    y_field: Optional[str],
    metric: Optional[str],
    aggregation: Aggregation = Aggregation.sum,
    max_x: Optional[int] = None,
    max_y: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """
    Cells ``{x, y, value}`` for every (x, y) combination of the first
    *max_x* / *max_y* distinct labels (first-seen order). Empty cells are 0.
    Without *y_field* every row falls in the single row ``"All"``.
    """
    if not rows:
        return []

    xs = [as_label(r.get(x_field)) for r in rows]
    ys = [as_label(r.get(y_field)) for r in rows] if y_field else ["All"] * len(rows)
    x_values = list(dict.fromkeys(xs))[:max_x] if max_x else list(dict.fromkeys(xs))
    y_values = list(dict.fromkeys(ys))[:max_y] if max_y else list(dict.fromkeys(ys))

    frame = pd.DataFrame({
        "x": xs,
        "y": ys,
        "v": [to_number(r.get(metric)) if metric else 1.0 for r in rows],
    })
    agg = _agg_name(aggregation) if metric else "sum"
    table = frame.pivot_table(index="y", columns="x", values="v", aggfunc=agg, fill_value=0, sort=False)

    cells: List[Dict[str, Any]] = []
    for x in x_values:
        for y in y_values:
            v = table.at[y, x] if (y in table.index and x in table.columns) else 0
            cells.append({"x": x, "y": y, "value": _as_value(v)})
    return cells


# ---------------------------------------------------------------------------
# Single values
# ---------------------------------------------------------------------------

def kpi_value(rows: List[Row], metric: str, aggregation: Aggregation = Aggregation.sum) -> float:
    """
    Scalar over the whole dataset.

    Over zero rows: sum/count -> 0, avg -> NaN, min -> inf, max -> -inf.
    Callers guard against empty datasets.
    """
    values = [to_number(r.get(metric)) for r in rows]
    agg = Aggregation(aggregation)
    if agg == Aggregation.count:
        return float(len(values))
    if agg == Aggregation.sum:
        return float(sum(values))
    if agg == Aggregation.avg:
        return sum(values) / len(values) if values else math.nan
    if agg == Aggregation.min:
        return min(values) if values else math.inf
    return max(values) if values else -math.inf
