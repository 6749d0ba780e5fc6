"""
Insight skill: rule-based findings over a dataset.

Summary, anomaly (z-score), trend (linear fit over date order), correlation
and top-performer insights, ordered by severity then confidence.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import statsmodels.api as sm

from core.models import ColumnType, DataSchema, Insight, Row
from core.utils import is_numeric_like, parse_date, to_number
from skills.statistics import mean, pearson, std_dev

ANOMALY_Z = 2.5
TREND_SLOPE = 0.05
TREND_MIN_STRENGTH = 0.3
CORRELATION_THRESHOLD = 0.5
INSIGHT_CORRELATION_THRESHOLD = 0.6

_SEVERITY_ORDER = {"critical": 0, "warning": 1, "success": 2, "info": 3}


def format_number(value: float) -> str:
    """Compact display: 1.2K / 3.4M / 5.6B."""
    a = abs(value)
    if a >= 1e9:
        return f"{value / 1e9:.1f}B"
    if a >= 1e6:
        return f"{value / 1e6:.1f}M"
    if a >= 1e3:
        return f"{value / 1e3:.1f}K"
    if a < 1 and value != 0:
        return f"{value:.2f}"
    return f"{value:.0f}"


def _numeric_values(rows: List[Row], field: str) -> List[float]:
    return [to_number(r.get(field)) for r in rows if is_numeric_like(r.get(field))]


# ---------------------------------------------------------------------------
# Primitives
# ---------------------------------------------------------------------------

def linear_regression(xs: Sequence[float], ys: Sequence[float]) -> Dict[str, float]:
    """OLS fit of ys on xs. Returns {slope, intercept, r2}; zeros when undefined."""
    if len(xs) != len(ys) or not len(xs):
        return {"slope": 0.0, "intercept": 0.0, "r2": 0.0}
    x = np.asarray(xs, dtype=float)
    y = np.asarray(ys, dtype=float)
    if np.ptp(x) == 0:
        return {"slope": 0.0, "intercept": float(y.mean()), "r2": 0.0}

    res = sm.OLS(y, sm.add_constant(x)).fit()
    intercept, slope = float(res.params[0]), float(res.params[1])
    # constant ys have no variance to explain
    r2 = float(res.rsquared) if np.ptp(y) > 0 else 0.0
    return {"slope": slope, "intercept": intercept, "r2": r2}


def detect_anomalies(rows: List[Row], field: str, threshold: float = ANOMALY_Z) -> List[Dict[str, Any]]:
    """Z-score of every numeric value; ``is_anomaly`` when |z| > threshold."""
    values = _numeric_values(rows, field)
    if not values:
        return []
    mu = mean(values)
    sigma = std_dev(values)
    out = []
    for i, v in enumerate(values):
        z = 0.0 if sigma == 0 else (v - mu) / sigma
        out.append({"index": i, "value": v, "zscore": z, "is_anomaly": abs(z) > threshold})
    return out


def detect_trend(rows: List[Row], date_field: str, value_field: str) -> Dict[str, Any]:
    """Direction of *value_field* over rows ordered by *date_field*."""
    def _key(r: Row):
        ts = parse_date(r.get(date_field))
        return (ts is None, ts.value if ts is not None else 0)

    ordered = sorted(rows, key=_key)
    values = _numeric_values(ordered, value_field)
    if len(values) < 2:
        return {"direction": "stable", "strength": 0.0, "slope": 0.0, "change_percent": 0.0}

    fit = linear_regression(list(range(len(values))), values)
    first, last = values[0], values[-1]
    change = (last - first) / first * 100 if first != 0 else 0.0
    slope = fit["slope"]
    if slope > TREND_SLOPE:
        direction = "increasing"
    elif slope < -TREND_SLOPE:
        direction = "decreasing"
    else:
        direction = "stable"
    return {"direction": direction, "strength": fit["r2"], "slope": slope, "change_percent": change}


def find_correlations(
    rows: List[Row],
    fields: Sequence[str],
    threshold: float = CORRELATION_THRESHOLD,
) -> List[Dict[str, Any]]:
    """Pairwise Pearson correlations with |r| >= threshold, strongest first."""
    found = []
    for i, f1 in enumerate(fields):
        for f2 in fields[i + 1:]:
            v1 = _numeric_values(rows, f1)
            v2 = _numeric_values(rows, f2)
            if len(v1) != len(v2) or not v1:
                continue
            r = pearson(v1, v2)
            if abs(r) < threshold:
                continue
            found.append({
                "field1": f1,
                "field2": f2,
                "correlation": r,
                "strength": "strong" if abs(r) >= 0.7 else "moderate" if abs(r) >= 0.5 else "weak",
                "direction": "positive" if r > 0 else "negative",
            })
    found.sort(key=lambda c: abs(c["correlation"]), reverse=True)
    return found


# ---------------------------------------------------------------------------
# Insight generation
# ---------------------------------------------------------------------------

def _summary_insights(rows: List[Row], numeric: List[str]) -> List[Insight]:
    out = []
    for field in numeric[:5]:
        values = _numeric_values(rows, field)
        if not values:
            continue
        total = sum(values)
        out.append(Insight(
            id=f"summary-{field}",
            type="summary",
            severity="info",
            title=f"{field} Overview",
            description=(
                f"Total: {format_number(total)}, Average: {format_number(mean(values))}, "
                f"Range: {format_number(min(values))} - {format_number(max(values))}"
            ),
            metric=field,
            value=total,
            confidence=1.0,
        ))
    return out


def _anomaly_insights(rows: List[Row], numeric: List[str]) -> List[Insight]:
    out = []
    for field in numeric[:3]:
        flagged = [a for a in detect_anomalies(rows, field) if a["is_anomaly"]]
        if not flagged:
            continue
        top = max(flagged, key=lambda a: abs(a["zscore"]))
        sign = "+" if top["zscore"] > 0 else ""
        out.append(Insight(
            id=f"anomaly-{field}",
            type="anomaly",
            severity="warning" if len(flagged) > 3 else "info",
            title=f"{len(flagged)} Anomalies in {field}",
            description=(
                f"Detected {len(flagged)} unusual values. Most extreme: "
                f"{format_number(top['value'])} ({sign}{top['zscore']:.1f} std dev from mean)"
            ),
            metric=field,
            value=top["value"],
            related_fields=[field],
            confidence=0.85,
        ))
    return out


def _trend_insights(rows: List[Row], numeric: List[str], date_field: Optional[str]) -> List[Insight]:
    if not date_field:
        return []
    out = []
    for field in numeric[:3]:
        trend = detect_trend(rows, date_field, field)
        if trend["strength"] <= TREND_MIN_STRENGTH:
            continue
        direction = trend["direction"]
        if direction == "stable":
            detail = "No significant change"
        else:
            sign = "+" if trend["change_percent"] > 0 else ""
            detail = f"{sign}{trend['change_percent']:.1f}% change over the period"
        out.append(Insight(
            id=f"trend-{field}",
            type="trend",
            severity={"increasing": "success", "decreasing": "warning"}.get(direction, "info"),
            title=f"{field} is {direction}",
            description=f"{detail}. Trend confidence: {trend['strength'] * 100:.0f}%",
            metric=field,
            change_percent=trend["change_percent"],
            related_fields=[field, date_field],
            confidence=min(1.0, max(0.0, trend["strength"])),
        ))
    return out


def _correlation_insights(rows: List[Row], numeric: List[str]) -> List[Insight]:
    if len(numeric) < 2:
        return []
    out = []
    for corr in find_correlations(rows, numeric, INSIGHT_CORRELATION_THRESHOLD)[:3]:
        positive = corr["direction"] == "positive"
        out.append(Insight(
            id=f"correlation-{corr['field1']}-{corr['field2']}",
            type="correlation",
            severity="info",
            title=f"{corr['strength']} {corr['direction']} correlation",
            description=(
                f"{corr['field1']} and {corr['field2']} are {corr['direction']}ly correlated "
                f"(r={corr['correlation']:.2f}). When one increases, the other tends to "
                f"{'increase' if positive else 'decrease'}."
            ),
            related_fields=[corr["field1"], corr["field2"]],
            confidence=min(1.0, abs(corr["correlation"])),
        ))
    return out


def _top_performer_insights(rows: List[Row], numeric: List[str], category: Optional[str]) -> List[Insight]:
    out = []
    for field in numeric[:2]:
        indexed = [(to_number(r.get(field)), i) for i, r in enumerate(rows) if is_numeric_like(r.get(field))]
        if not indexed:
            continue
        top_value, top_idx = max(indexed, key=lambda t: t[0])
        mu = mean([v for v, _ in indexed])
        if not top_value > mu * 2:
            continue
        who = rows[top_idx].get(category) if category else None
        lead = f'"{who}"' if who not in (None, "") else "One item"
        above = (top_value / mu - 1) * 100 if mu else 0.0
        out.append(Insight(
            id=f"top-{field}",
            type="pattern",
            severity="success",
            title=f"Top performer in {field}",
            description=f"{lead} leads with {format_number(top_value)}, which is {above:.0f}% above average.",
            metric=field,
            value=top_value,
            confidence=0.9,
        ))
    return out


def generate_insights(rows: List[Row], schema: DataSchema) -> List[Insight]:
    """All insight kinds for a dataset, most severe and most confident first."""
    if not rows or not schema.columns:
        return []

    numeric = [c.name for c in schema.columns if c.is_metric]
    date_fields = [
        c.name for c in schema.columns
        if c.type == ColumnType.datetime or "date" in c.name.lower()
    ]
    categories = schema.names_of(ColumnType.categorical, ColumnType.text)

    insights: List[Insight] = []
    insights += _summary_insights(rows, numeric)
    insights += _anomaly_insights(rows, numeric)
    insights += _trend_insights(rows, numeric, date_fields[0] if date_fields else None)
    insights += _correlation_insights(rows, numeric)
    insights += _top_performer_insights(rows, numeric, categories[0] if categories else None)

    insights.sort(key=lambda i: (_SEVERITY_ORDER[i.severity], -i.confidence))
    return insights
