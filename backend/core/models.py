"""
Core Pydantic models for the dashboard builder.

All domain types live here so every module shares the same vocabulary.
JSON payloads use camelCase (``xAxis``, ``formulaLabel``); Python code uses
the snake_case attribute names.
"""

from __future__ import annotations

import time
import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

Row = Dict[str, Any]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def now_iso() -> str:
    return datetime.utcnow().isoformat() + "Z"


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class ColumnType(str, Enum):
    numeric = "numeric"
    categorical = "categorical"
    datetime = "datetime"
    text = "text"


class ColumnDescriptor(CamelModel):
    name: str
    type: ColumnType
    sample_values: List[str] = Field(default_factory=list)   # at most 5
    unique_count: int = 0
    null_count: int = 0
    is_metric: bool = False
    is_dimension: bool = False


class DataSchema(CamelModel):
    columns: List[ColumnDescriptor] = Field(default_factory=list)
    row_count: int = 0
    summary: str = ""

    def column(self, name: str) -> Optional[ColumnDescriptor]:
        for c in self.columns:
            if c.name == name:
                return c
        return None

    def names_of(self, *types: ColumnType) -> List[str]:
        return [c.name for c in self.columns if c.type in types]


# ---------------------------------------------------------------------------
# Chart configuration
# ---------------------------------------------------------------------------

class ChartType(str, Enum):
    # single value
    kpi = "kpi"
    card = "card"
    multi_row_card = "multi-row-card"
    gauge = "gauge"
    # bar & column
    bar = "bar"
    stacked_bar = "stacked-bar"
    clustered_bar = "clustered-bar"
    stacked_bar_100 = "100-stacked-bar"
    column = "column"
    stacked_column = "stacked-column"
    clustered_column = "clustered-column"
    stacked_column_100 = "100-stacked-column"
    # line, area & combo
    line = "line"
    area = "area"
    stacked_area = "stacked-area"
    stacked_area_100 = "100-stacked-area"
    combo = "combo"
    line_clustered_column = "line-clustered-column"
    line_stacked_column = "line-stacked-column"
    # pie
    pie = "pie"
    donut = "donut"
    # distribution
    scatter = "scatter"
    bubble = "bubble"
    histogram = "histogram"
    box_plot = "box-plot"
    # tabular
    table = "table"
    matrix = "matrix"
    # geo
    map = "map"
    filled_map = "filled-map"
    bubble_map = "bubble-map"
    # specialised
    heatmap = "heatmap"
    treemap = "treemap"
    waterfall = "waterfall"
    funnel = "funnel"
    radar = "radar"
    ribbon = "ribbon"
    sankey = "sankey"
    bullet = "bullet"
    # slicers
    slicer = "slicer"
    list_slicer = "list-slicer"
    dropdown_slicer = "dropdown-slicer"
    date_slicer = "date-slicer"
    numeric_slicer = "numeric-slicer"


class Aggregation(str, Enum):
    sum = "sum"
    avg = "avg"
    count = "count"
    min = "min"
    max = "max"


class SortOrder(str, Enum):
    asc = "asc"
    desc = "desc"


class SingleField(BaseModel):
    kind: Literal["single"] = "single"
    name: str

    @property
    def fields(self) -> List[str]:
        return [self.name]


class MultiField(BaseModel):
    kind: Literal["multi"] = "multi"
    names: List[str] = Field(min_length=1)

    @property
    def fields(self) -> List[str]:
        return list(self.names)


FieldBinding = Annotated[Union[SingleField, MultiField], Field(discriminator="kind")]


def primary_field(binding: Optional[Union[SingleField, MultiField]]) -> Optional[str]:
    """First bound field, or None when nothing is bound."""
    if binding is None:
        return None
    return binding.fields[0]


def secondary_field(binding: Optional[Union[SingleField, MultiField]]) -> Optional[str]:
    """Second bound field (secondary axis, bubble size, bullet target)."""
    if binding is None:
        return None
    fields = binding.fields
    return fields[1] if len(fields) > 1 else None


class ChartConfig(CamelModel):
    id: str = Field(default_factory=lambda: _new_id("chart"))
    type: ChartType
    title: str = ""
    x_axis: Optional[str] = None
    y_axis: Optional[FieldBinding] = None
    x_axis_title: Optional[str] = None
    y_axis_title: Optional[str] = None
    group_by: Optional[str] = None
    aggregation: Aggregation = Aggregation.sum
    colors: List[str] = Field(default_factory=list)
    sort_by: Optional[str] = None
    sort_order: Optional[SortOrder] = None
    filter_column: Optional[str] = None
    filter_values: List[str] = Field(default_factory=list)
    columns: Optional[List[str]] = None          # table/matrix column subset
    title_position: Literal["top", "bottom"] = "top"
    formula: Optional[str] = None
    formula_label: Optional[str] = None
    trend: Optional[Literal["up", "down", "flat"]] = None
    trend_value: Optional[float] = None
    # geometry: grid units for size; x/y are grid slots or free-form pixels
    width: float = 1
    height: float = 1
    x: float = 0
    y: float = 0

    @field_validator("y_axis", mode="before")
    @classmethod
    def _coerce_binding(cls, value: Any) -> Any:
        # clients send the plain "field or list of fields" shape
        if value is None or isinstance(value, (SingleField, MultiField)):
            return value
        if isinstance(value, str):
            return {"kind": "single", "name": value} if value else None
        if isinstance(value, (list, tuple)):
            names = [str(v) for v in value if v]
            if not names:
                return None
            return {"kind": "multi", "names": names}
        return value

    @property
    def metrics(self) -> List[str]:
        return self.y_axis.fields if self.y_axis is not None else []

    @property
    def primary_metric(self) -> Optional[str]:
        return primary_field(self.y_axis)

    @property
    def secondary_metric(self) -> Optional[str]:
        return secondary_field(self.y_axis)

    def has_binding(self) -> bool:
        return self.y_axis is not None or bool(self.formula and self.formula.strip())


class LayoutMode(str, Enum):
    grid = "grid"
    free = "free"


class DashboardPage(CamelModel):
    id: str = Field(default_factory=lambda: _new_id("page"))
    name: str = "Page"
    charts: List[ChartConfig] = Field(default_factory=list)
    show_title: bool = False
    layout_mode: LayoutMode = LayoutMode.grid

    def index_of(self, chart_id: str) -> int:
        for i, c in enumerate(self.charts):
            if c.id == chart_id:
                return i
        return -1


class FilterState(CamelModel):
    column: str
    values: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Project & data sources
# ---------------------------------------------------------------------------

class DataSource(CamelModel):
    id: str = Field(default_factory=lambda: _new_id("datasource"))
    name: str
    data: List[Row] = Field(default_factory=list)
    schema_: DataSchema = Field(default_factory=DataSchema, alias="schema")
    column_type_overrides: Dict[str, ColumnType] = Field(default_factory=dict)
    data_hash: str = ""


class Cardinality(str, Enum):
    one_to_one = "one-to-one"
    one_to_many = "one-to-many"
    many_to_one = "many-to-one"
    many_to_many = "many-to-many"


class DataRelation(CamelModel):
    id: str = Field(default_factory=lambda: _new_id("relation"))
    source_id: str
    target_id: str
    source_column: str
    target_column: str
    cardinality: Cardinality = Cardinality.one_to_many
    is_manual_match: bool = False


class Project(CamelModel):
    id: str = Field(default_factory=lambda: _new_id("project"))
    name: str = "Untitled"
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)
    data_sources: List[DataSource] = Field(default_factory=list)
    relations: List[DataRelation] = Field(default_factory=list)
    pages: List[DashboardPage] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Interaction state (ephemeral)
# ---------------------------------------------------------------------------

class ResizeHandle(str, Enum):
    n = "n"
    s = "s"
    e = "e"
    w = "w"
    ne = "ne"
    nw = "nw"
    se = "se"
    sw = "sw"


class Idle(BaseModel):
    kind: Literal["idle"] = "idle"


class Dragging(BaseModel):
    kind: Literal["dragging"] = "dragging"
    panel_id: str
    page_id: str
    grab_offset_x: float
    grab_offset_y: float
    preview_x: float
    preview_y: float


class Resizing(BaseModel):
    kind: Literal["resizing"] = "resizing"
    panel_id: str
    page_id: str
    handle: ResizeHandle
    start_pointer_x: float
    start_pointer_y: float
    origin_x: float
    origin_y: float
    origin_width: float      # px
    origin_height: float     # px
    preview_x: float
    preview_y: float
    preview_width: float     # px
    preview_height: float    # px


Gesture = Annotated[Union[Idle, Dragging, Resizing], Field(discriminator="kind")]


class DeletedPanel(CamelModel):
    panel: ChartConfig
    page_id: str
    original_index: int


class CrossFilterSelection(CamelModel):
    source_chart_id: str
    field: str
    value: str
    timestamp: float = Field(default_factory=time.time)


class Breadcrumb(CamelModel):
    field: str
    value: str


class DrillDownContext(CamelModel):
    chart_id: str
    chart_title: str = ""
    clicked_value: str
    clicked_field: str
    drill_down_field: Optional[str] = None
    data: List[Row] = Field(default_factory=list)
    parent_value: Optional[str] = None
    breadcrumbs: List[Breadcrumb] = Field(default_factory=list)


class PanelFilter(CamelModel):
    column: Optional[str] = None
    values: List[str] = Field(default_factory=list)
    range_column: Optional[str] = None
    range_min: Optional[float] = None
    range_max: Optional[float] = None

    def is_active(self) -> bool:
        return bool(self.column and self.values) or self.range_column is not None


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------

class DistributionStats(BaseModel):
    min: float = 0.0
    q1: float = 0.0
    median: float = 0.0
    q3: float = 0.0
    max: float = 0.0
    outliers: List[float] = Field(default_factory=list)


class NumericStats(CamelModel):
    min: float
    max: float
    mean: float
    median: float
    std_dev: float
    percentiles: Dict[str, float] = Field(default_factory=dict)


class CategoricalStats(CamelModel):
    unique_count: int
    top_values: List[Dict[str, Any]] = Field(default_factory=list)
    null_count: int = 0


class DateStats(CamelModel):
    min_date: Optional[str] = None
    max_date: Optional[str] = None
    range_days: int = 0
    inferred_frequency: str = "irregular"


class ColumnStatistics(CamelModel):
    name: str
    type: ColumnType
    numeric: Optional[NumericStats] = None
    categorical: Optional[CategoricalStats] = None
    date: Optional[DateStats] = None


class CorrelationPair(CamelModel):
    column1: str
    column2: str
    correlation: float


class DatasetStatistics(CamelModel):
    row_count: int = 0
    column_count: int = 0
    columns: List[ColumnStatistics] = Field(default_factory=list)
    correlations: List[CorrelationPair] = Field(default_factory=list)


class Insight(CamelModel):
    id: str
    type: Literal["anomaly", "trend", "correlation", "pattern", "summary", "recommendation"]
    severity: Literal["info", "warning", "critical", "success"] = "info"
    title: str
    description: str = ""
    metric: Optional[str] = None
    value: Optional[float] = None
    change_percent: Optional[float] = None
    related_fields: List[str] = Field(default_factory=list)
    confidence: float = 1.0


# ---------------------------------------------------------------------------
# Render output
# ---------------------------------------------------------------------------

class PixelGeometry(CamelModel):
    x: float
    y: float
    width: float
    height: float


class PanelView(CamelModel):
    chart_id: str
    type: ChartType
    title: str = ""
    rows: List[Row] = Field(default_factory=list)
    data: Optional[List[Row]] = None           # filtered input, for self-computing renderers
    input_row_count: int = 0
    col_span: int = 1
    row_span: int = 1
    pixels: Optional[PixelGeometry] = None
    local_filter_active: bool = False
    is_empty: bool = True
    warnings: List[str] = Field(default_factory=list)


class CrossFilterBanner(CamelModel):
    field: str
    value: str
    source_chart_id: str
    matching_rows: int
    total_rows: int


class PageRender(CamelModel):
    page_id: Optional[str] = None
    page_name: str = ""
    show_title: bool = False
    layout_mode: LayoutMode = LayoutMode.grid
    edit_mode: bool = False
    panels: List[PanelView] = Field(default_factory=list)
    cross_filter: Optional[CrossFilterBanner] = None
    can_undo: bool = False
    undo_depth: int = 0
    total_rows: int = 0
    filtered_rows: int = 0
    message: Optional[str] = None


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class PageRequest(CamelModel):
    name: str = "Page"
    show_title: bool = False


class PageUpdateRequest(CamelModel):
    name: Optional[str] = None
    show_title: Optional[bool] = None


class ToggleRequest(CamelModel):
    enabled: bool


class LayoutModeRequest(CamelModel):
    mode: LayoutMode


class ReorderRequest(CamelModel):
    from_index: int
    to_index: int


class GridResizeRequest(CamelModel):
    delta_width: int = 0
    delta_height: int = 0


class PointerRequest(CamelModel):
    pointer_x: float
    pointer_y: float


class DragStartRequest(PointerRequest):
    page_id: str
    panel_id: str
    on_control: bool = False


class ResizeStartRequest(PointerRequest):
    page_id: str
    panel_id: str
    handle: ResizeHandle


class CrossFilterRequest(CamelModel):
    chart_id: str
    field: str
    value: Any


class DrillDownRequest(CamelModel):
    chart_id: str
    field: str
    value: Any
    drill_down_field: Optional[str] = None


class DrillDeeperRequest(CamelModel):
    value: Any
    drill_down_field: Optional[str] = None


class RowsRequest(CamelModel):
    rows: List[Row]


class CalculatedColumnRequest(CamelModel):
    name: str
    formula: str


class ColumnTypeRequest(CamelModel):
    column: str
    type: ColumnType


class DrillNavigateRequest(CamelModel):
    index: int


class DrillFieldRequest(CamelModel):
    field: str


class FormulaCheckRequest(CamelModel):
    formula: str
    source_id: Optional[str] = None


class TemplateRequest(CamelModel):
    layouts: List[Dict[str, Any]] = Field(default_factory=list)
