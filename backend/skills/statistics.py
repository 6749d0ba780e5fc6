"""
Statistics skill.

Distribution (box-plot) statistics, the compressed per-column dataset
statistics handed to downstream consumers, stratified sampling, and the
small numeric primitives the insight engine builds on.
"""

from __future__ import annotations

import logging
import math
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from core.config import STATS_CACHE_MAX
from core.models import (
    CategoricalStats,
    ColumnStatistics,
    ColumnType,
    CorrelationPair,
    DatasetStatistics,
    DataSchema,
    DateStats,
    DistributionStats,
    NumericStats,
    Row,
)
from core.utils import as_label, content_hash, is_missing, parse_date, to_number
from skills.profile import infer_schema

logger = logging.getLogger("uvicorn.error")

PERCENTILES = (10, 25, 50, 75, 90)
TOP_VALUES = 10
TOP_CORRELATIONS = 5
MIN_ROWS_FOR_CORRELATION = 10


# ---------------------------------------------------------------------------
# Numeric primitives
# ---------------------------------------------------------------------------

def mean(values: Sequence[float]) -> float:
    return float(np.mean(values)) if len(values) else 0.0


def median(values: Sequence[float]) -> float:
    return float(np.median(values)) if len(values) else 0.0


def std_dev(values: Sequence[float]) -> float:
    """Population standard deviation."""
    return float(np.std(values)) if len(values) else 0.0


def percentile(values: Sequence[float], p: float) -> float:
    """Linear-interpolated percentile, p in [0, 100]."""
    return float(np.percentile(values, p)) if len(values) else 0.0


def pearson(xs: Sequence[float], ys: Sequence[float]) -> float:
    """Pearson correlation; 0 when undefined (fewer than 2 points, zero variance)."""
    n = min(len(xs), len(ys))
    if n < 2:
        return 0.0
    x = np.asarray(xs[:n], dtype=float)
    y = np.asarray(ys[:n], dtype=float)
    dx = x - x.mean()
    dy = y - y.mean()
    denom = math.sqrt(float((dx * dx).sum()) * float((dy * dy).sum()))
    if denom == 0:
        return 0.0
    return float((dx * dy).sum()) / denom


# ---------------------------------------------------------------------------
# Distribution statistics
# ---------------------------------------------------------------------------

def _median_sorted(vals: List[float]) -> float:
    n = len(vals)
    mid = n // 2
    return vals[mid] if n % 2 else (vals[mid - 1] + vals[mid]) / 2


def quartiles(values: Sequence[float]) -> Tuple[float, float, float]:
    """
    (q1, median, q3) by splitting the sorted values in half and taking the
    median of each half. With an odd count the median belongs to both halves.
    """
    vals = sorted(float(v) for v in values)
    n = len(vals)
    if n == 0:
        return 0.0, 0.0, 0.0
    half = n // 2
    if n % 2:
        lower, upper = vals[: half + 1], vals[half:]
    else:
        lower, upper = vals[:half], vals[half:]
    return _median_sorted(lower), _median_sorted(vals), _median_sorted(upper)


def distribution_stats(values: Sequence[float]) -> DistributionStats:
    """Box-plot summary; min/max are over non-outliers, fences at 1.5 x IQR."""
    vals = sorted(float(v) for v in values)
    if not vals:
        return DistributionStats()

    q1, med, q3 = quartiles(vals)
    iqr = q3 - q1
    lo_fence = q1 - 1.5 * iqr
    hi_fence = q3 + 1.5 * iqr
    inliers = [v for v in vals if lo_fence <= v <= hi_fence]
    outliers = [v for v in vals if v < lo_fence or v > hi_fence]

    return DistributionStats(
        min=inliers[0],
        q1=q1,
        median=med,
        q3=q3,
        max=inliers[-1],
        outliers=outliers,
    )


# ---------------------------------------------------------------------------
# Per-column dataset statistics
# ---------------------------------------------------------------------------

def _numeric_stats(values: List[float]) -> NumericStats:
    return NumericStats(
        min=float(min(values)),
        max=float(max(values)),
        mean=mean(values),
        median=median(values),
        std_dev=std_dev(values),
        percentiles={f"p{p}": percentile(values, p) for p in PERCENTILES},
    )


def _categorical_stats(raw: List[Any]) -> CategoricalStats:
    present = [as_label(v) for v in raw if not is_missing(v)]
    counts = pd.Series(present, dtype=object).value_counts() if present else pd.Series(dtype=int)
    return CategoricalStats(
        unique_count=int(len(counts)),
        top_values=[{"value": str(k), "count": int(c)} for k, c in counts.head(TOP_VALUES).items()],
        null_count=len(raw) - len(present),
    )


def infer_frequency(dates: List[pd.Timestamp]) -> str:
    """Name the typical spacing between consecutive distinct dates."""
    distinct = sorted(set(dates))
    if len(distinct) < 2:
        return "irregular"
    gaps = np.diff([d.value for d in distinct]) / 86_400e9
    gap = float(np.median(gaps))
    if gap <= 1.5:
        return "daily"
    if gap <= 8:
        return "weekly"
    if gap <= 35:
        return "monthly"
    if gap <= 100:
        return "quarterly"
    return "yearly"


def _date_stats(raw: List[Any]) -> DateStats:
    dates = [d for d in (parse_date(v) for v in raw) if d is not None]
    if not dates:
        return DateStats()
    lo, hi = min(dates), max(dates)
    return DateStats(
        min_date=lo.date().isoformat(),
        max_date=hi.date().isoformat(),
        range_days=int((hi.normalize() - lo.normalize()).days),
        inferred_frequency=infer_frequency(dates),
    )


def top_correlations(numeric: Dict[str, List[float]], limit: int = TOP_CORRELATIONS) -> List[CorrelationPair]:
    """Strongest absolute Pearson pairs among equally long numeric columns."""
    if len(numeric) < 2:
        return []
    corr = pd.DataFrame(numeric).corr(method="pearson")
    names = list(numeric)
    pairs: List[CorrelationPair] = []
    for i, a in enumerate(names):
        for b in names[i + 1:]:
            r = corr.at[a, b]
            if pd.isna(r):
                continue
            pairs.append(CorrelationPair(column1=a, column2=b, correlation=round(float(r), 4)))
    pairs.sort(key=lambda p: abs(p.correlation), reverse=True)
    return pairs[:limit]


def dataset_statistics(rows: List[Row], schema: Optional[DataSchema] = None) -> DatasetStatistics:
    """Compressed description of a dataset: per-column stats plus top correlations."""
    if schema is None:
        schema = infer_schema(rows)

    columns: List[ColumnStatistics] = []
    numeric_full: Dict[str, List[float]] = {}

    for col in schema.columns:
        raw = [r.get(col.name) for r in rows]
        stats = ColumnStatistics(name=col.name, type=col.type)
        if col.type == ColumnType.numeric:
            present = [to_number(v) for v in raw if not is_missing(v)]
            if present:
                stats.numeric = _numeric_stats(present)
            numeric_full[col.name] = [to_number(v) for v in raw]
        elif col.type == ColumnType.datetime:
            stats.date = _date_stats(raw)
        else:
            stats.categorical = _categorical_stats(raw)
        columns.append(stats)

    correlations: List[CorrelationPair] = []
    if len(numeric_full) >= 2 and len(rows) > MIN_ROWS_FOR_CORRELATION:
        correlations = top_correlations(numeric_full)

    return DatasetStatistics(
        row_count=len(rows),
        column_count=len(schema.columns),
        columns=columns,
        correlations=correlations,
    )


_stats_cache: "OrderedDict[str, DatasetStatistics]" = OrderedDict()


def cached_statistics(
    rows: List[Row],
    schema: Optional[DataSchema] = None,
    data_hash: Optional[str] = None,
) -> DatasetStatistics:
    """dataset_statistics memoized on the row content hash (LRU)."""
    key = data_hash or content_hash(rows)
    if schema is not None:
        key = f"{key}:{'|'.join(f'{c.name}={c.type.value}' for c in schema.columns)}"
    cached = _stats_cache.get(key)
    if cached is not None:
        _stats_cache.move_to_end(key)
        return cached

    result = dataset_statistics(rows, schema)
    _stats_cache[key] = result
    _stats_cache.move_to_end(key)
    if len(_stats_cache) > STATS_CACHE_MAX:
        _stats_cache.popitem(last=False)
    logger.info("Statistics computed: rows=%d columns=%d", result.row_count, result.column_count)
    return result


def clear_statistics_cache() -> None:
    _stats_cache.clear()


# ---------------------------------------------------------------------------
# Sampling
# ---------------------------------------------------------------------------

def stratified_sample(rows: List[Row], n: int) -> List[Row]:
    """First row, last row and n-2 evenly spaced rows in between."""
    if n <= 0 or not rows:
        return []
    if len(rows) <= n:
        return list(rows)
    if n == 1:
        return [rows[0]]
    last = len(rows) - 1
    return [rows[round(i * last / (n - 1))] for i in range(n)]
