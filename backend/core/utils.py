"""
Shared value helpers.

Pure functions: no I/O, no side effects. Every metric coercion and group label
in the project goes through `to_number` / `as_label` so aggregation, filters
and drill-down agree on what a cell "is".
"""

from __future__ import annotations

import hashlib
import json
import math
import re
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

import numpy as np
import pandas as pd

UNKNOWN_LABEL = "Unknown"

_DATE_PATTERN = re.compile(r"^\d{4}[-/]\d{1,2}[-/]\d{1,2}|^\d{1,2}[-/]\d{1,2}[-/]\d{2,4}")


# ---------------------------------------------------------------------------
# Scalar coercion
# ---------------------------------------------------------------------------

def is_missing(value: Any) -> bool:
    """None, NaN/NA, or the empty string."""
    if value is None:
        return True
    if isinstance(value, str):
        return value == ""
    if isinstance(value, float):
        return math.isnan(value)
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def to_number(value: Any) -> float:
    """Parse a cell as a number, 0 on failure. Never raises."""
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float, np.integer, np.floating)):
        f = float(value)
        return 0.0 if math.isnan(f) else f
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        try:
            f = float(text)
        except ValueError:
            return 0.0
        return 0.0 if math.isnan(f) else f
    return 0.0


def is_numeric_like(value: Any) -> bool:
    """True for numbers and strings that parse as a finite-or-infinite number."""
    if isinstance(value, bool):
        return True
    if isinstance(value, (int, float, np.integer, np.floating)):
        return not (isinstance(value, float) and math.isnan(value))
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return False
        try:
            return not math.isnan(float(text))
        except ValueError:
            return False
    return False


def as_label(value: Any) -> str:
    """String form of a cell used for grouping and equality filters."""
    if is_missing(value):
        return UNKNOWN_LABEL
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (float, np.floating)) and float(value).is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date, pd.Timestamp)):
        return value.isoformat()
    return str(value)


def parse_date(value: Any) -> Optional[pd.Timestamp]:
    """Parse a cell as a date; None if it is not one."""
    if is_missing(value) or isinstance(value, bool):
        return None
    if isinstance(value, (pd.Timestamp, datetime, date)):
        return pd.Timestamp(value)
    if isinstance(value, (int, float, np.integer, np.floating)):
        return None
    text = str(value).strip()
    if not any(ch.isdigit() for ch in text):
        return None
    ts = pd.to_datetime(text, errors="coerce")
    if ts is None or pd.isna(ts):
        return None
    return ts


def looks_like_date(value: Any) -> bool:
    if isinstance(value, (pd.Timestamp, datetime, date)):
        return True
    if isinstance(value, str) and _DATE_PATTERN.match(value.strip()):
        return True
    return parse_date(value) is not None


def date_bucket(value: Any) -> str:
    """ISO calendar date for a parseable value, its label otherwise."""
    ts = parse_date(value)
    if ts is None:
        return as_label(value)
    return ts.date().isoformat()


def round2(value: float) -> float:
    return round(value, 2)


# ---------------------------------------------------------------------------
# Rows / DataFrames
# ---------------------------------------------------------------------------

def column_names(rows: Iterable[Dict[str, Any]]) -> List[str]:
    """Union of row keys in first-seen order."""
    seen: Dict[str, None] = {}
    for row in rows:
        for key in row.keys():
            if key not in seen:
                seen[key] = None
    return list(seen)


def df_json_safe(df: pd.DataFrame) -> pd.DataFrame:
    """Replace +/-inf -> NaN, then NaN -> None so JSON serialization works."""
    if df.empty:
        return df
    tmp = df.replace([np.inf, -np.inf], np.nan)
    tmp = tmp.astype(object)
    return tmp.where(pd.notna(tmp), None)


def df_to_records_safe(df: pd.DataFrame) -> list[dict]:
    """Convert DataFrame to list of dicts with JSON-safe values."""
    return df_json_safe(df).to_dict(orient="records")


def example_values(values: Iterable[Any], k: int = 5) -> List[str]:
    """Up to *k* distinct non-missing values as short strings."""
    out: List[str] = []
    for v in values:
        if is_missing(v):
            continue
        s = str(v)[:80]
        if s not in out:
            out.append(s)
        if len(out) >= k:
            break
    return out


def content_hash(rows: List[Dict[str, Any]]) -> str:
    """Stable hash of row content, used as a cache key."""
    digest = hashlib.sha256()
    for row in rows:
        digest.update(json.dumps(row, sort_keys=True, default=str).encode("utf-8"))
        digest.update(b"\n")
    return digest.hexdigest()
