"""
Dashboard API routes, mounted as a sub-router on the main FastAPI app.

Every route works on the caller's DashboardSession (``X-Session-Id``).
Mutations return the updated object or the re-rendered page; the event
stream (GET /api/events) pushes live dataset replacements.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import Response, StreamingResponse

from core.models import (
    CalculatedColumnRequest,
    ChartConfig,
    ColumnTypeRequest,
    CrossFilterRequest,
    DashboardPage,
    DataRelation,
    DataSource,
    DragStartRequest,
    DrillDeeperRequest,
    DrillDownRequest,
    DrillFieldRequest,
    DrillNavigateRequest,
    FilterState,
    FormulaCheckRequest,
    GridResizeRequest,
    LayoutModeRequest,
    PageRequest,
    PageUpdateRequest,
    PanelFilter,
    PointerRequest,
    ReorderRequest,
    ResizeStartRequest,
    RowsRequest,
    TemplateRequest,
    ToggleRequest,
)
from core.state import (
    add_calculated_column,
    add_chart,
    add_page,
    add_relation,
    delete_page,
    remove_data_source,
    remove_relation,
    set_active_source,
    set_current_page,
    set_filters,
    update_chart,
    update_column_type,
    update_page,
)
from core.storage import get_session_hashes, load_project, project_payload
from core.utils import column_names
from server.canvas import DashboardSession, get_dashboard
from server.sse import EVT_CONNECTED, SSEEvent
from skills.crossfilter import panel_filter_options
from skills.formula import validate_formula
from skills.insights import generate_insights
from skills.statistics import cached_statistics, stratified_sample

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/api", tags=["dashboard"])

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _require_session_id(request: Request) -> str:
    sid = request.headers.get("X-Session-Id")
    if not sid:
        raise HTTPException(status_code=400, detail="Missing X-Session-Id header.")
    return sid


def _session(request: Request) -> DashboardSession:
    return get_dashboard(_require_session_id(request))


def _dump(model: Any) -> Any:
    return model.model_dump(by_alias=True, mode="json") if model is not None else None


def _page_or_404(dash: DashboardSession, page_id: str) -> DashboardPage:
    page = dash.store.state.page(page_id)
    if page is None:
        raise HTTPException(status_code=404, detail=f"Page '{page_id}' not found.")
    return page


def _chart_or_404(dash: DashboardSession, chart_id: str) -> ChartConfig:
    chart = dash.store.state.chart(chart_id)
    if chart is None:
        raise HTTPException(status_code=404, detail=f"Chart '{chart_id}' not found.")
    return chart


def _source_or_404(dash: DashboardSession, source_id: str) -> DataSource:
    source = dash.store.state.data_source(source_id)
    if source is None:
        raise HTTPException(status_code=404, detail=f"Data source '{source_id}' not found.")
    return source


def _render(dash: DashboardSession) -> Dict[str, Any]:
    return _dump(dash.render())


# ---------------------------------------------------------------------------
# Dashboard & pages
# ---------------------------------------------------------------------------

@router.get("/dashboard")
async def get_dashboard_state(request: Request):
    """Current state: project (rows excluded), current page, filters, edit mode."""
    dash = _session(request)
    state = dash.store.state
    return {
        "project": project_payload(state.project),
        "currentPageId": state.current_page_id,
        "activeSourceId": state.active_source_id,
        "filters": [_dump(f) for f in state.filters],
        "editMode": state.edit_mode,
        "snapEnabled": dash.layout.snap_enabled,
        "crossFilterEnabled": dash.crossfilter.enabled,
        "canUndo": dash.layout.can_undo,
        "saveError": dash.store.last_save_error,
    }


@router.post("/pages")
async def create_page(request: Request, body: PageRequest = PageRequest()):
    dash = _session(request)
    page = DashboardPage(name=body.name, show_title=body.show_title)
    dash.store.dispatch(add_page, page)
    return _dump(page)


@router.patch("/pages/{page_id}")
async def patch_page(request: Request, page_id: str, body: PageUpdateRequest):
    dash = _session(request)
    _page_or_404(dash, page_id)
    dash.store.dispatch(update_page, page_id, body.model_dump(exclude_none=True))
    return _dump(dash.store.state.page(page_id))


@router.delete("/pages/{page_id}")
async def remove_page(request: Request, page_id: str):
    dash = _session(request)
    _page_or_404(dash, page_id)
    dash.store.dispatch(delete_page, page_id)
    return {"ok": True, "currentPageId": dash.store.state.current_page_id}


@router.post("/pages/{page_id}/select")
async def select_page(request: Request, page_id: str):
    dash = _session(request)
    _page_or_404(dash, page_id)
    dash.store.dispatch(set_current_page, page_id)
    return _render(dash)


@router.post("/pages/{page_id}/template")
async def apply_page_template(request: Request, page_id: str, body: TemplateRequest):
    dash = _session(request)
    _page_or_404(dash, page_id)
    created = dash.layout.apply_template(page_id, body.layouts, dash.schema())
    return {"charts": [_dump(c) for c in created]}


# ---------------------------------------------------------------------------
# Charts
# ---------------------------------------------------------------------------

@router.post("/pages/{page_id}/charts")
async def create_chart(request: Request, page_id: str, chart: ChartConfig):
    dash = _session(request)
    _page_or_404(dash, page_id)
    dash.store.dispatch(add_chart, page_id, chart)
    logger.info("Chart added: page=%s chart=%s type=%s", page_id, chart.id, chart.type.value)
    return _dump(chart)


@router.patch("/pages/{page_id}/charts/{chart_id}")
async def patch_chart(request: Request, page_id: str, chart_id: str, updates: Dict[str, Any]):
    dash = _session(request)
    page = _page_or_404(dash, page_id)
    if page.index_of(chart_id) < 0:
        raise HTTPException(status_code=404, detail=f"Chart '{chart_id}' not found.")
    try:
        dash.store.dispatch(update_chart, page_id, chart_id, updates)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid chart update: {e}")
    return _dump(dash.store.state.chart(chart_id))


@router.delete("/pages/{page_id}/charts/{chart_id}")
async def remove_chart(request: Request, page_id: str, chart_id: str):
    """Delete through the layout engine so edit-mode deletions can be undone."""
    dash = _session(request)
    _page_or_404(dash, page_id)
    removed = dash.layout.delete_panel(page_id, chart_id)
    if removed is None:
        raise HTTPException(status_code=404, detail=f"Chart '{chart_id}' not found.")
    dash.panel_filters.pop(chart_id, None)
    return {"ok": True, "canUndo": dash.layout.can_undo}


@router.post("/undo")
async def undo_delete(request: Request):
    dash = _session(request)
    restored = dash.layout.undo()
    return {"restored": _dump(restored), "canUndo": dash.layout.can_undo}


# ---------------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------------

@router.post("/edit-mode")
async def toggle_edit_mode(request: Request, body: ToggleRequest):
    dash = _session(request)
    dash.layout.set_edit_mode(body.enabled)
    return _render(dash)


@router.post("/pages/{page_id}/layout-mode")
async def change_layout_mode(request: Request, page_id: str, body: LayoutModeRequest):
    dash = _session(request)
    _page_or_404(dash, page_id)
    dash.layout.set_layout_mode(page_id, body.mode)
    return _dump(dash.store.state.page(page_id))


@router.post("/snap")
async def toggle_snap(request: Request, body: ToggleRequest):
    dash = _session(request)
    dash.layout.set_snap(body.enabled)
    return {"snapEnabled": dash.layout.snap_enabled}


@router.post("/pages/{page_id}/reorder")
async def reorder_charts(request: Request, page_id: str, body: ReorderRequest):
    dash = _session(request)
    _page_or_404(dash, page_id)
    ok = dash.layout.reorder(page_id, body.from_index, body.to_index)
    return {"ok": ok, "page": _dump(dash.store.state.page(page_id))}


@router.post("/charts/{chart_id}/grid-resize")
async def grid_resize_chart(request: Request, chart_id: str, body: GridResizeRequest):
    dash = _session(request)
    _chart_or_404(dash, chart_id)
    chart = dash.layout.grid_resize(chart_id, body.delta_width, body.delta_height)
    return {"ok": chart is not None, "chart": _dump(dash.store.state.chart(chart_id))}


@router.post("/gestures/drag")
async def start_drag(request: Request, body: DragStartRequest):
    dash = _session(request)
    ok = dash.layout.begin_drag(body.page_id, body.panel_id, body.pointer_x, body.pointer_y, body.on_control)
    return {"ok": ok, "gesture": dash.layout.gesture.model_dump(mode="json")}


@router.post("/gestures/resize")
async def start_resize(request: Request, body: ResizeStartRequest):
    dash = _session(request)
    ok = dash.layout.begin_resize(body.page_id, body.panel_id, body.handle, body.pointer_x, body.pointer_y)
    return {"ok": ok, "gesture": dash.layout.gesture.model_dump(mode="json")}


@router.post("/gestures/move")
async def move_pointer(request: Request, body: PointerRequest):
    dash = _session(request)
    gesture = dash.layout.pointer_move(body.pointer_x, body.pointer_y)
    return {"gesture": gesture.model_dump(mode="json")}


@router.post("/gestures/end")
async def end_gesture(request: Request):
    dash = _session(request)
    chart = dash.layout.pointer_up()
    return {"committed": _dump(chart)}


@router.post("/gestures/leave")
async def leave_canvas(request: Request):
    dash = _session(request)
    chart = dash.layout.pointer_leave()
    return {"committed": _dump(chart)}


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------

@router.put("/filters")
async def replace_filters(request: Request, filters: List[FilterState]):
    dash = _session(request)
    dash.store.dispatch(set_filters, filters)
    return _render(dash)


@router.put("/charts/{chart_id}/local-filter")
async def set_local_filter(request: Request, chart_id: str, body: PanelFilter):
    dash = _session(request)
    _chart_or_404(dash, chart_id)
    dash.set_panel_filter(chart_id, body)
    return _render(dash)


@router.get("/charts/{chart_id}/filter-options")
async def local_filter_options(request: Request, chart_id: str):
    dash = _session(request)
    _chart_or_404(dash, chart_id)
    _, rows = dash.filtered_rows()
    return panel_filter_options(rows, dash.schema())


@router.post("/cross-filter")
async def toggle_cross_filter(request: Request, body: CrossFilterRequest):
    dash = _session(request)
    _chart_or_404(dash, body.chart_id)
    dash.crossfilter.toggle(body.chart_id, body.field, body.value)
    return _render(dash)


@router.delete("/cross-filter")
async def clear_cross_filter(request: Request):
    dash = _session(request)
    dash.crossfilter.clear()
    return _render(dash)


@router.post("/cross-filter/enabled")
async def enable_cross_filter(request: Request, body: ToggleRequest):
    dash = _session(request)
    dash.crossfilter.set_enabled(body.enabled)
    return _render(dash)


# ---------------------------------------------------------------------------
# Drill-down
# ---------------------------------------------------------------------------

def _drill_view(dash: DashboardSession) -> Dict[str, Any]:
    view = dash.drilldown.view()
    if view is None:
        raise HTTPException(status_code=404, detail="No drill-down is open.")
    return _dump(view)


@router.post("/drill-down")
async def open_drill_down(request: Request, body: DrillDownRequest):
    dash = _session(request)
    chart = _chart_or_404(dash, body.chart_id)
    dash.drilldown.open(chart, body.field, body.value, dash.store.state.primary_rows(), body.drill_down_field)
    return _drill_view(dash)


@router.post("/drill-down/deeper")
async def drill_deeper(request: Request, body: DrillDeeperRequest):
    dash = _session(request)
    if not dash.drilldown.is_open:
        raise HTTPException(status_code=404, detail="No drill-down is open.")
    if dash.drilldown.drill_deeper(body.value, body.drill_down_field) is None:
        raise HTTPException(status_code=400, detail="Nothing left to drill into.")
    return _drill_view(dash)


@router.post("/drill-down/field")
async def drill_select_field(request: Request, body: DrillFieldRequest):
    dash = _session(request)
    dash.drilldown.select_field(body.field)
    return _drill_view(dash)


@router.post("/drill-down/back")
async def drill_back(request: Request):
    dash = _session(request)
    dash.drilldown.back()
    return _drill_view(dash)


@router.post("/drill-down/navigate")
async def drill_navigate(request: Request, body: DrillNavigateRequest):
    dash = _session(request)
    dash.drilldown.navigate_to(body.index)
    return _drill_view(dash)


@router.get("/drill-down")
async def get_drill_down(request: Request):
    return _drill_view(_session(request))


@router.get("/drill-down/export")
async def export_drill_down(request: Request):
    dash = _session(request)
    export = dash.drilldown.export_csv()
    if export is None:
        raise HTTPException(status_code=404, detail="No drill-down is open.")
    return Response(
        content=export["content"],
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{export["filename"]}"'},
    )


@router.delete("/drill-down")
async def close_drill_down(request: Request):
    dash = _session(request)
    dash.drilldown.close()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Render
# ---------------------------------------------------------------------------

@router.get("/render")
async def render_page(request: Request, page_id: Optional[str] = Query(None, alias="pageId")):
    dash = _session(request)
    if page_id:
        _page_or_404(dash, page_id)
    return _dump(dash.render(page_id))


# ---------------------------------------------------------------------------
# Datasets
# ---------------------------------------------------------------------------

@router.put("/datasets/{source_id}/rows")
async def put_dataset_rows(request: Request, source_id: str, body: RowsRequest):
    """Live update: replace every row; subscribers get ``dataset_replaced``."""
    dash = _session(request)
    source = _source_or_404(dash, source_id)
    await dash.replace_rows(source.id, body.rows)
    updated = dash.store.state.data_source(source.id)
    return {"ok": True, "rows": len(updated.data), "schema": _dump(updated.schema_)}


@router.post("/datasets/{source_id}/select")
async def select_dataset(request: Request, source_id: str):
    dash = _session(request)
    source = _source_or_404(dash, source_id)
    dash.store.dispatch(set_active_source, source.id)
    return _render(dash)


@router.delete("/datasets/{source_id}")
async def delete_dataset(request: Request, source_id: str):
    sid = _require_session_id(request)
    dash = get_dashboard(sid)
    source = _source_or_404(dash, source_id)
    dash.store.dispatch(remove_data_source, source.id)
    dash.meta.pop(source.name, None)
    hashes = get_session_hashes(sid)
    for digest in [h for h, name in hashes.items() if name == source.name]:
        hashes.pop(digest)
    return {"ok": True}


@router.post("/datasets/{source_id}/calculated-columns")
async def create_calculated_column(request: Request, source_id: str, body: CalculatedColumnRequest):
    dash = _session(request)
    source = _source_or_404(dash, source_id)
    ok, message = validate_formula(body.formula, column_names(source.data))
    dash.store.dispatch(add_calculated_column, source.id, body.name, body.formula)
    updated = dash.store.state.data_source(source.id)
    return {"ok": ok, "message": message, "schema": _dump(updated.schema_)}


@router.post("/datasets/{source_id}/column-types")
async def change_column_type(request: Request, source_id: str, body: ColumnTypeRequest):
    dash = _session(request)
    source = _source_or_404(dash, source_id)
    if source.schema_.column(body.column) is None:
        raise HTTPException(status_code=404, detail=f"Column '{body.column}' not found.")
    dash.store.dispatch(update_column_type, source.id, body.column, body.type)
    return _dump(dash.store.state.data_source(source.id).schema_)


@router.get("/datasets/{source_id}/statistics")
async def dataset_stats(request: Request, source_id: str):
    dash = _session(request)
    source = _source_or_404(dash, source_id)
    return _dump(cached_statistics(source.data, source.schema_, source.data_hash))


@router.get("/datasets/{source_id}/sample")
async def dataset_sample(request: Request, source_id: str, n: int = Query(20, ge=0, le=1000)):
    dash = _session(request)
    source = _source_or_404(dash, source_id)
    return {"rows": stratified_sample(source.data, n), "totalRows": len(source.data)}


@router.get("/datasets/{source_id}/insights")
async def dataset_insights(request: Request, source_id: str):
    dash = _session(request)
    source = _source_or_404(dash, source_id)
    return {"insights": [_dump(i) for i in generate_insights(source.data, source.schema_)]}


@router.post("/formulas/validate")
async def check_formula(request: Request, body: FormulaCheckRequest):
    dash = _session(request)
    source = _source_or_404(dash, body.source_id) if body.source_id else dash.store.state.primary_source()
    columns = [c.name for c in source.schema_.columns] if source is not None else []
    ok, message = validate_formula(body.formula, columns)
    return {"ok": ok, "message": message}


# ---------------------------------------------------------------------------
# Relations & persistence
# ---------------------------------------------------------------------------

@router.post("/relations")
async def create_relation(request: Request, relation: DataRelation):
    dash = _session(request)
    _source_or_404(dash, relation.source_id)
    _source_or_404(dash, relation.target_id)
    dash.store.dispatch(add_relation, relation)
    return _dump(relation)


@router.delete("/relations/{relation_id}")
async def delete_relation(request: Request, relation_id: str):
    dash = _session(request)
    dash.store.dispatch(remove_relation, relation_id)
    return {"ok": True}


@router.post("/save-error/dismiss")
async def dismiss_save_error(request: Request):
    dash = _session(request)
    dash.store.dismiss_error()
    return {"ok": True}


@router.get("/projects/{project_id}")
async def get_saved_project(request: Request, project_id: str):
    """Saved project configuration (data source rows are not persisted)."""
    _require_session_id(request)
    project = load_project(project_id)
    if project is None:
        raise HTTPException(status_code=404, detail=f"Project '{project_id}' not found.")
    return project_payload(project)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@router.get("/events")
async def stream_events(
    request: Request,
    session_id: str = Query(None, alias="session_id"),
):
    """
    SSE endpoint: live dataset replacements for this session.

    EventSource doesn't support custom headers, so session_id may be passed
    as a query parameter.
    """
    sid = session_id or request.headers.get("X-Session-Id")
    if not sid:
        raise HTTPException(status_code=400, detail="Missing session_id query parameter.")
    dash = get_dashboard(sid)
    channel = dash.events.subscribe()

    async def _stream():
        try:
            yield SSEEvent(event=EVT_CONNECTED, data={"sessionId": sid}).format()
            async for event_str in channel:
                yield event_str
        finally:
            dash.events.unsubscribe(channel)

    return StreamingResponse(_stream(), media_type="text/event-stream", headers=_SSE_HEADERS)
