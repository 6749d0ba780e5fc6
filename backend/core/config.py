"""
Runtime configuration.

Values come from the environment (optionally a `.env` file); layout constants
are fixed so every panel geometry conversion agrees.
"""

from __future__ import annotations

import os
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


def _env(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip() or default


def _env_int(key: str, default: int) -> int:
    raw = _env(key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

PROJECT_DIR: Optional[str] = _env("DASHBOARD_PROJECT_DIR")


def cors_origins() -> List[str]:
    raw = _env("DASHBOARD_CORS_ORIGINS", "*") or "*"
    return [o.strip() for o in raw.split(",") if o.strip()]


# ---------------------------------------------------------------------------
# Layout geometry
# ---------------------------------------------------------------------------

GRID_COLUMNS = 4
GRID_MIN_SPAN = 1
GRID_MAX_SPAN = GRID_COLUMNS

UNIT_WIDTH_PX = 300
UNIT_HEIGHT_PX = 220

MIN_WIDTH_PX = 250
MAX_WIDTH_PX = 1400
MIN_HEIGHT_PX = 200
MAX_HEIGHT_PX = 900

PANEL_GAP_PX = 16

CANVAS_WIDTH_PX = _env_int("DASHBOARD_CANVAS_WIDTH", 1600)
SNAP_SIZE_PX = _env_int("DASHBOARD_SNAP_SIZE", 20)


# ---------------------------------------------------------------------------
# Aggregation / profiling limits
# ---------------------------------------------------------------------------

MAX_GROUPS = 20
SCHEMA_SAMPLE_SIZE = 100
STATS_CACHE_MAX = 64
