"""
Application state and its named actions.

Every action is a pure function ``(state, ...) -> new state``; it never
mutates its input. Lists are replaced, not edited (copy-on-write), so a
reader holding the old state keeps a consistent snapshot. ``Store`` applies
actions and persists the project after each persisting one.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from pydantic import Field

from core.models import (
    CamelModel,
    ChartConfig,
    ColumnType,
    DashboardPage,
    DataRelation,
    DataSource,
    FilterState,
    Project,
    Row,
    now_iso,
)
from core.storage import save_project
from core.utils import content_hash
from skills.formula import add_calculated_column as _append_formula_column
from skills.profile import cached_schema

logger = logging.getLogger("uvicorn.error")


class DashboardState(CamelModel):
    project: Project = Field(default_factory=Project)
    current_page_id: Optional[str] = None
    filters: List[FilterState] = Field(default_factory=list)
    edit_mode: bool = False
    active_source_id: Optional[str] = None

    # -- read helpers -------------------------------------------------------

    def page(self, page_id: Optional[str]) -> Optional[DashboardPage]:
        for p in self.project.pages:
            if p.id == page_id:
                return p
        return None

    def current_page(self) -> Optional[DashboardPage]:
        """Current page, falling back to the first page."""
        page = self.page(self.current_page_id)
        if page is None and self.project.pages:
            return self.project.pages[0]
        return page

    def chart(self, chart_id: str) -> Optional[ChartConfig]:
        for p in self.project.pages:
            for c in p.charts:
                if c.id == chart_id:
                    return c
        return None

    def page_of_chart(self, chart_id: str) -> Optional[DashboardPage]:
        for p in self.project.pages:
            if p.index_of(chart_id) >= 0:
                return p
        return None

    def data_source(self, source_id: str) -> Optional[DataSource]:
        for ds in self.project.data_sources:
            if ds.id == source_id or ds.name == source_id:
                return ds
        return None

    def primary_source(self) -> Optional[DataSource]:
        """Source the canvas renders: the active one, else the first."""
        if self.active_source_id:
            for ds in self.project.data_sources:
                if ds.id == self.active_source_id:
                    return ds
        return self.project.data_sources[0] if self.project.data_sources else None

    def primary_rows(self) -> List[Row]:
        source = self.primary_source()
        return source.data if source is not None else []


# ---------------------------------------------------------------------------
# Action plumbing
# ---------------------------------------------------------------------------

Action = Callable[..., DashboardState]


def action(persist: bool = True) -> Callable[[Action], Action]:
    """Mark a function as a state action; persisting actions trigger a save."""
    def wrap(fn: Action) -> Action:
        fn.persist = persist  # type: ignore[attr-defined]
        return fn
    return wrap


def _with_project(state: DashboardState, **updates: Any) -> DashboardState:
    project = state.project.model_copy(update={**updates, "updated_at": now_iso()})
    return state.model_copy(update={"project": project})


def _map_pages(state: DashboardState, page_id: str, fn: Callable[[DashboardPage], DashboardPage]) -> DashboardState:
    pages = [fn(p) if p.id == page_id else p for p in state.project.pages]
    return _with_project(state, pages=pages)


def _map_sources(state: DashboardState, source_id: str, fn: Callable[[DataSource], DataSource]) -> DashboardState:
    sources = [fn(ds) if ds.id == source_id else ds for ds in state.project.data_sources]
    return _with_project(state, data_sources=sources)


def _field_updates(model_cls: type, updates: Dict[str, Any]) -> Dict[str, Any]:
    """Map camelCase keys onto field names."""
    aliases = {f.alias or name: name for name, f in model_cls.model_fields.items()}
    return {aliases.get(k, k): v for k, v in updates.items()}


def make_data_source(
    name: str,
    rows: List[Row],
    overrides: Optional[Dict[str, ColumnType]] = None,
    source_id: Optional[str] = None,
) -> DataSource:
    """Data source with its schema inferred (cached on content hash)."""
    digest = content_hash(rows)
    fields: Dict[str, Any] = dict(
        name=name,
        data=list(rows),
        schema=cached_schema(rows, overrides, data_hash=digest),
        column_type_overrides=dict(overrides or {}),
        data_hash=digest,
    )
    if source_id:
        fields["id"] = source_id
    return DataSource(**fields)


# ---------------------------------------------------------------------------
# Pages
# ---------------------------------------------------------------------------

@action()
def add_page(state: DashboardState, page: DashboardPage) -> DashboardState:
    new = _with_project(state, pages=[*state.project.pages, page])
    return new.model_copy(update={"current_page_id": page.id})


@action()
def update_page(state: DashboardState, page_id: str, updates: Dict[str, Any]) -> DashboardState:
    updates = _field_updates(DashboardPage, updates)

    def patch(page: DashboardPage) -> DashboardPage:
        return DashboardPage.model_validate({**page.model_dump(), **updates, "id": page.id})
    return _map_pages(state, page_id, patch)


@action()
def delete_page(state: DashboardState, page_id: str) -> DashboardState:
    pages = [p for p in state.project.pages if p.id != page_id]
    new = _with_project(state, pages=pages)
    current = state.current_page_id
    if current == page_id:
        current = pages[0].id if pages else None
    return new.model_copy(update={"current_page_id": current})


@action(persist=False)
def set_current_page(state: DashboardState, page_id: str) -> DashboardState:
    return state.model_copy(update={"current_page_id": page_id})


@action(persist=False)
def set_edit_mode(state: DashboardState, enabled: bool) -> DashboardState:
    return state.model_copy(update={"edit_mode": enabled})


# ---------------------------------------------------------------------------
# Charts
# ---------------------------------------------------------------------------

@action()
def add_chart(state: DashboardState, page_id: str, chart: ChartConfig) -> DashboardState:
    return _map_pages(state, page_id, lambda p: p.model_copy(update={"charts": [*p.charts, chart]}))


@action()
def update_chart(state: DashboardState, page_id: str, chart_id: str, updates: Dict[str, Any]) -> DashboardState:
    """Partial update; *updates* (field or camelCase names) is validated against ChartConfig."""
    updates = _field_updates(ChartConfig, updates)

    def patch(page: DashboardPage) -> DashboardPage:
        charts = []
        for c in page.charts:
            if c.id == chart_id:
                merged = {**c.model_dump(), **updates, "id": c.id}
                c = ChartConfig.model_validate(merged)
            charts.append(c)
        return page.model_copy(update={"charts": charts})
    return _map_pages(state, page_id, patch)


@action()
def delete_chart(state: DashboardState, page_id: str, chart_id: str) -> DashboardState:
    return _map_pages(
        state, page_id,
        lambda p: p.model_copy(update={"charts": [c for c in p.charts if c.id != chart_id]}),
    )


@action()
def replace_charts(state: DashboardState, page_id: str, charts: List[ChartConfig]) -> DashboardState:
    return _map_pages(state, page_id, lambda p: p.model_copy(update={"charts": list(charts)}))


@action()
def set_filters(state: DashboardState, filters: List[FilterState]) -> DashboardState:
    return state.model_copy(update={"filters": list(filters)})


# ---------------------------------------------------------------------------
# Data sources & relations
# ---------------------------------------------------------------------------

@action()
def add_data_source(state: DashboardState, source: DataSource) -> DashboardState:
    """Append *source*, replacing one with the same name (case-insensitive)."""
    sources = list(state.project.data_sources)
    for i, ds in enumerate(sources):
        if ds.name.lower() == source.name.lower():
            sources[i] = source
            break
    else:
        sources.append(source)
    new = _with_project(state, data_sources=sources)
    return new.model_copy(update={"active_source_id": source.id})


@action(persist=False)
def set_active_source(state: DashboardState, source_id: str) -> DashboardState:
    return state.model_copy(update={"active_source_id": source_id})


@action()
def remove_data_source(state: DashboardState, source_id: str) -> DashboardState:
    sources = [ds for ds in state.project.data_sources if ds.id != source_id]
    relations = [
        r for r in state.project.relations
        if r.source_id != source_id and r.target_id != source_id
    ]
    new = _with_project(state, data_sources=sources, relations=relations)
    if state.active_source_id == source_id:
        new = new.model_copy(update={"active_source_id": None})
    return new


@action()
def replace_dataset_rows(state: DashboardState, source_id: str, rows: List[Row]) -> DashboardState:
    """Full replacement of a source's rows; the schema is recomputed."""
    return _map_sources(
        state, source_id,
        lambda ds: make_data_source(ds.name, rows, ds.column_type_overrides, source_id=ds.id),
    )


@action()
def add_relation(state: DashboardState, relation: DataRelation) -> DashboardState:
    return _with_project(state, relations=[*state.project.relations, relation])


@action()
def remove_relation(state: DashboardState, relation_id: str) -> DashboardState:
    return _with_project(state, relations=[r for r in state.project.relations if r.id != relation_id])


@action()
def update_column_type(state: DashboardState, source_id: str, column: str, col_type: ColumnType) -> DashboardState:
    def retype(ds: DataSource) -> DataSource:
        overrides = {**ds.column_type_overrides, column: ColumnType(col_type)}
        return make_data_source(ds.name, ds.data, overrides, source_id=ds.id)
    return _map_sources(state, source_id, retype)


@action()
def add_calculated_column(state: DashboardState, source_id: str, name: str, formula: str) -> DashboardState:
    """Append a formula column to a source; it is typed numeric."""
    def extend(ds: DataSource) -> DataSource:
        rows = _append_formula_column(ds.data, name, formula)
        overrides = {**ds.column_type_overrides, name: ColumnType.numeric}
        return make_data_source(ds.name, rows, overrides, source_id=ds.id)
    return _map_sources(state, source_id, extend)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class Store:
    """Single source of truth for one dashboard session."""

    def __init__(
        self,
        state: Optional[DashboardState] = None,
        saver: Callable[[Project], Optional[str]] = save_project,
    ) -> None:
        self.state = state or DashboardState()
        self._saver = saver
        self.last_save_error: Optional[str] = None

    def dispatch(self, fn: Action, *args: Any, **kwargs: Any) -> DashboardState:
        self.state = fn(self.state, *args, **kwargs)
        logger.info("Action applied: %s", fn.__name__)
        if getattr(fn, "persist", False):
            self.save()
        return self.state

    def save(self) -> None:
        self.last_save_error = self._saver(self.state.project)

    def dismiss_error(self) -> None:
        self.last_save_error = None
