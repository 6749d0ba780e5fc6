"""
Dashboard canvas: the composition root of one dashboard session.

Wires the Store, LayoutEngine, cross-filter, drill-down and panel-local
filters together and renders the current page:

    raw rows -> cross-filter -> dashboard filters -> panel filter -> build_view
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from core.models import (
    ChartConfig,
    ChartType,
    CrossFilterBanner,
    DashboardPage,
    DataSchema,
    LayoutMode,
    PageRender,
    PanelFilter,
    PanelView,
    Row,
)
from core.state import Store, add_page, replace_dataset_rows
from core.storage import get_session, save_project
from server.sse import EVT_DATASET_REPLACED, SSEHub
from skills.build_view import build_view
from skills.crossfilter import (
    CrossFilterCoordinator,
    DrillDownSession,
    apply_dashboard_filters,
    apply_panel_filter,
)
from skills.layout import LayoutEngine, grid_span, panel_pixels

logger = logging.getLogger("uvicorn.error")

# renderers that compute from the filtered input themselves
_SELF_COMPUTING = {ChartType.histogram, ChartType.box_plot}


class DashboardSession:
    """Everything one browser session edits and views."""

    def __init__(self, store: Optional[Store] = None) -> None:
        self.store = store or Store(saver=save_project)
        self.layout = LayoutEngine(self.store)
        self.crossfilter = CrossFilterCoordinator()
        self.drilldown = DrillDownSession()
        self.panel_filters: Dict[str, PanelFilter] = {}
        self.events = SSEHub()
        self.meta: Dict[str, dict] = {}  # data source name -> upload metadata

    # -- pages ------------------------------------------------------------------

    def ensure_page(self) -> DashboardPage:
        """Current page, creating "Page 1" for an empty project."""
        page = self.store.state.current_page()
        if page is None:
            self.store.dispatch(add_page, DashboardPage(name="Page 1"))
            page = self.store.state.current_page()
        return page

    # -- data -------------------------------------------------------------------

    def schema(self) -> DataSchema:
        source = self.store.state.primary_source()
        return source.schema_ if source is not None else DataSchema()

    def filtered_rows(self) -> Tuple[List[Row], List[Row]]:
        """(raw rows, rows after cross-filter and dashboard filters)."""
        raw = self.store.state.primary_rows()
        rows = self.crossfilter.apply(raw)
        rows = apply_dashboard_filters(rows, self.store.state.filters)
        return raw, rows

    def panel_rows(self, chart_id: str) -> List[Row]:
        _, rows = self.filtered_rows()
        return apply_panel_filter(rows, self.panel_filters.get(chart_id))

    def set_panel_filter(self, chart_id: str, panel_filter: Optional[PanelFilter]) -> None:
        if panel_filter is None or not panel_filter.is_active():
            self.panel_filters.pop(chart_id, None)
        else:
            self.panel_filters[chart_id] = panel_filter

    async def replace_rows(self, source_id: str, rows: List[Row]) -> bool:
        """Live update: full replacement of a source's rows, pushed to subscribers."""
        source = self.store.state.data_source(source_id)
        if source is None:
            logger.warning("Live update for unknown data source %s", source_id)
            return False
        self.store.dispatch(replace_dataset_rows, source.id, rows)
        updated = self.store.state.data_source(source.id)
        logger.info("Dataset replaced: %s rows=%d", updated.name, len(rows))
        await self.events.publish(EVT_DATASET_REPLACED, {
            "sourceId": updated.id,
            "name": updated.name,
            "rowCount": len(updated.data),
            "dataHash": updated.data_hash,
            "schema": updated.schema_.model_dump(by_alias=True, mode="json"),
        })
        return True

    # -- render -----------------------------------------------------------------

    def _render_panel(
        self,
        chart: ChartConfig,
        rows: List[Row],
        schema: DataSchema,
        layout_mode: LayoutMode,
    ) -> PanelView:
        panel_filter = self.panel_filters.get(chart.id)
        panel_rows = apply_panel_filter(rows, panel_filter)
        view = build_view(chart, panel_rows, schema, include_data=chart.type in _SELF_COMPUTING)
        updates: Dict[str, Any] = {
            "col_span": grid_span(chart.width),
            "row_span": grid_span(chart.height),
            "local_filter_active": panel_filter is not None,
        }
        if layout_mode == LayoutMode.free:
            updates["pixels"] = panel_pixels(chart)
        return view.model_copy(update=updates)

    def render(self, page_id: Optional[str] = None) -> PageRender:
        state = self.store.state
        page = state.page(page_id) if page_id else state.current_page()
        if page is None:
            return PageRender(edit_mode=state.edit_mode, message="No page selected")

        raw, rows = self.filtered_rows()
        schema = self.schema()
        panels = [self._render_panel(c, rows, schema, page.layout_mode) for c in page.charts]

        banner = None
        selection = self.crossfilter.selection
        if selection is not None:
            banner = CrossFilterBanner(
                field=selection.field,
                value=selection.value,
                source_chart_id=selection.source_chart_id,
                matching_rows=len(self.crossfilter.apply(raw)),
                total_rows=len(raw),
            )

        return PageRender(
            page_id=page.id,
            page_name=page.name,
            show_title=page.show_title,
            layout_mode=page.layout_mode,
            edit_mode=state.edit_mode,
            panels=panels,
            cross_filter=banner,
            can_undo=self.layout.can_undo,
            undo_depth=len(self.layout.undo_stack),
            total_rows=len(raw),
            filtered_rows=len(rows),
            message=self.store.last_save_error,
        )


def get_dashboard(session_id: str) -> DashboardSession:
    return get_session(session_id, DashboardSession)
