"""
Schema inference skill.

Builds a DataSchema (one ColumnDescriptor per column) from raw rows.
Classification order: numeric, then datetime, then low-cardinality
categorical, else text.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any, List, Mapping, Optional, Tuple

from core.config import SCHEMA_SAMPLE_SIZE, STATS_CACHE_MAX
from core.models import ColumnDescriptor, ColumnType, DataSchema, Row
from core.utils import (
    as_label,
    column_names,
    content_hash,
    example_values,
    is_missing,
    is_numeric_like,
    looks_like_date,
)

logger = logging.getLogger("uvicorn.error")

CATEGORICAL_MAX_UNIQUE = 20
CATEGORICAL_MAX_RATIO = 0.3


# ---------------------------------------------------------------------------
# Column classification
# ---------------------------------------------------------------------------

def classify_column(values: List[Any]) -> ColumnType:
    """Classify a column from its first SCHEMA_SAMPLE_SIZE non-missing values."""
    sample = [v for v in values if not is_missing(v)][:SCHEMA_SAMPLE_SIZE]
    if not sample:
        return ColumnType.text

    if all(is_numeric_like(v) for v in sample):
        return ColumnType.numeric

    if all(looks_like_date(v) for v in sample):
        return ColumnType.datetime

    unique = {as_label(v) for v in sample}
    if len(unique) <= min(CATEGORICAL_MAX_UNIQUE, len(sample) * CATEGORICAL_MAX_RATIO):
        return ColumnType.categorical

    return ColumnType.text


def describe_column(name: str, values: List[Any], col_type: ColumnType) -> ColumnDescriptor:
    present = [v for v in values if not is_missing(v)]
    return ColumnDescriptor(
        name=name,
        type=col_type,
        sample_values=example_values(present, k=5),
        unique_count=len({as_label(v) for v in present}),
        null_count=len(values) - len(present),
        is_metric=col_type == ColumnType.numeric,
        is_dimension=col_type != ColumnType.numeric,
    )


def retype_column(col: ColumnDescriptor, col_type: ColumnType) -> ColumnDescriptor:
    """Copy of *col* with a new type; metric/dimension flags follow it."""
    return col.model_copy(update={
        "type": col_type,
        "is_metric": col_type == ColumnType.numeric,
        "is_dimension": col_type != ColumnType.numeric,
    })


# ---------------------------------------------------------------------------
# Summary text
# ---------------------------------------------------------------------------

def summarize_schema(columns: List[ColumnDescriptor], row_count: int) -> str:
    metrics = [c.name for c in columns if c.is_metric]
    dimensions = [c.name for c in columns if c.is_dimension]
    dates = [c.name for c in columns if c.type == ColumnType.datetime]

    parts = [f"Dataset contains {row_count:,} rows and {len(columns)} columns."]
    if metrics:
        parts.append(f"Metrics: {', '.join(metrics)}.")
    if dimensions:
        parts.append(f"Dimensions: {', '.join(dimensions)}.")
    if dates:
        parts.append(f"Time series detected on: {', '.join(dates)}.")
    return " ".join(parts)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def infer_schema(
    rows: List[Row],
    overrides: Optional[Mapping[str, ColumnType]] = None,
) -> DataSchema:
    """
    Infer the schema of a dataset.

    ``uniqueCount``/``nullCount`` cover every row; only the type decision is
    made on a sample. User overrides win over the inferred type.
    """
    if not rows:
        return DataSchema(columns=[], row_count=0, summary="Empty dataset")

    columns: List[ColumnDescriptor] = []
    for name in column_names(rows):
        values = [row.get(name) for row in rows]
        col_type = classify_column(values)
        if overrides and name in overrides:
            col_type = ColumnType(overrides[name])
        columns.append(describe_column(name, values, col_type))

    return DataSchema(
        columns=columns,
        row_count=len(rows),
        summary=summarize_schema(columns, len(rows)),
    )


# ---------------------------------------------------------------------------
# Content-addressed cache
# ---------------------------------------------------------------------------

_schema_cache: "OrderedDict[Tuple[str, Tuple], DataSchema]" = OrderedDict()


def cached_schema(
    rows: List[Row],
    overrides: Optional[Mapping[str, ColumnType]] = None,
    data_hash: Optional[str] = None,
) -> DataSchema:
    """infer_schema memoized on the row content hash (LRU)."""
    digest = data_hash or content_hash(rows)
    key = (digest, tuple(sorted((k, ColumnType(v).value) for k, v in (overrides or {}).items())))
    cached = _schema_cache.get(key)
    if cached is not None:
        _schema_cache.move_to_end(key)
        return cached

    schema = infer_schema(rows, overrides)
    _schema_cache[key] = schema
    _schema_cache.move_to_end(key)
    if len(_schema_cache) > STATS_CACHE_MAX:
        _schema_cache.popitem(last=False)
    logger.info("Schema inferred: rows=%d columns=%d", schema.row_count, len(schema.columns))
    return schema


def clear_schema_cache() -> None:
    _schema_cache.clear()
