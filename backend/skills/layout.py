"""
Layout / interaction engine.

Owns panel geometry for a dashboard session:

- grid mode: integer spans in a 4-column grid, reorder by array position,
  +/- resize bounded to [1, 4]
- free-form mode: pixel positions, drag and 8-handle resize with a live
  preview, optional snap on commit, one-shot auto-layout on mode entry
- an undo stack for panels deleted in edit mode

At most one gesture is active (``Idle | Dragging | Resizing``). Pointer up
and pointer leave both commit; there is no cancel path.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Optional, Tuple

from core.config import (
    CANVAS_WIDTH_PX,
    GRID_MAX_SPAN,
    GRID_MIN_SPAN,
    MAX_HEIGHT_PX,
    MAX_WIDTH_PX,
    MIN_HEIGHT_PX,
    MIN_WIDTH_PX,
    PANEL_GAP_PX,
    SNAP_SIZE_PX,
    UNIT_HEIGHT_PX,
    UNIT_WIDTH_PX,
)
from core.models import (
    ChartConfig,
    ChartType,
    DashboardPage,
    DataSchema,
    DeletedPanel,
    Dragging,
    Gesture,
    Idle,
    LayoutMode,
    PixelGeometry,
    ResizeHandle,
    Resizing,
)
from core.state import (
    Store,
    add_chart,
    delete_chart,
    replace_charts,
    set_edit_mode,
    update_chart,
    update_page,
)

logger = logging.getLogger("uvicorn.error")

Rect = Tuple[float, float, float, float]  # x, y, width px, height px


# ---------------------------------------------------------------------------
# Geometry helpers
# ---------------------------------------------------------------------------

def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def width_px(units: float) -> float:
    return clamp(units * UNIT_WIDTH_PX, MIN_WIDTH_PX, MAX_WIDTH_PX)


def height_px(units: float) -> float:
    return clamp(units * UNIT_HEIGHT_PX, MIN_HEIGHT_PX, MAX_HEIGHT_PX)


def snap(value: float, size: int = SNAP_SIZE_PX) -> float:
    """Nearest multiple of *size*, halves rounding up."""
    if size <= 0:
        return value
    return math.floor(value / size + 0.5) * size


def grid_span(units: float) -> int:
    """Integer column/row span for grid mode."""
    return int(clamp(round(units), GRID_MIN_SPAN, GRID_MAX_SPAN))


def panel_rect(chart: ChartConfig) -> Rect:
    return chart.x, chart.y, width_px(chart.width), height_px(chart.height)


def panel_pixels(chart: ChartConfig) -> PixelGeometry:
    x, y, w, h = panel_rect(chart)
    return PixelGeometry(x=x, y=y, width=w, height=h)


def resize_rect(handle: ResizeHandle, origin: Rect, dx: float, dy: float) -> Rect:
    """
    Apply a pointer delta to *origin* through *handle*. ``n``/``w`` handles
    move the top/left edge, keeping the opposite edge fixed.
    """
    x, y, w, h = origin
    name = ResizeHandle(handle).value
    new_x, new_y, new_w, new_h = x, y, w, h
    if "e" in name:
        new_w = clamp(w + dx, MIN_WIDTH_PX, MAX_WIDTH_PX)
    if "w" in name:
        new_w = clamp(w - dx, MIN_WIDTH_PX, MAX_WIDTH_PX)
        new_x = x + (w - new_w)
    if "s" in name:
        new_h = clamp(h + dy, MIN_HEIGHT_PX, MAX_HEIGHT_PX)
    if "n" in name:
        new_h = clamp(h - dy, MIN_HEIGHT_PX, MAX_HEIGHT_PX)
        new_y = y + (h - new_h)
    return new_x, new_y, new_w, new_h


def reorder(charts: List[ChartConfig], from_index: int, to_index: int) -> List[ChartConfig]:
    """Remove the panel at *from_index* and reinsert it at *to_index*."""
    if not (0 <= from_index < len(charts)):
        return list(charts)
    out = list(charts)
    moved = out.pop(from_index)
    to_index = int(clamp(to_index, 0, len(out)))
    out.insert(to_index, moved)
    return out


def needs_auto_layout(charts: List[ChartConfig]) -> bool:
    return bool(charts) and all(c.x == 0 and c.y == 0 for c in charts)


def pack_panels(
    charts: List[ChartConfig],
    canvas_width: float = CANVAS_WIDTH_PX,
    gap: float = PANEL_GAP_PX,
    top: Optional[float] = None,
) -> List[ChartConfig]:
    """
    Left-to-right, top-to-bottom placement: a panel that would cross the
    canvas width starts a new row below the tallest panel of the current one.
    """
    out: List[ChartConfig] = []
    x, y, row_h = gap, gap if top is None else top, 0.0
    for chart in charts:
        w, h = width_px(chart.width), height_px(chart.height)
        if x > gap and x + w > canvas_width:
            x = gap
            y += row_h + gap
            row_h = 0.0
        out.append(chart.model_copy(update={"x": x, "y": y}))
        x += w + gap
        row_h = max(row_h, h)
    return out


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class LayoutEngine:
    """Gesture state machine + undo stack bound to one Store."""

    def __init__(
        self,
        store: Store,
        snap_enabled: bool = True,
        snap_size: int = SNAP_SIZE_PX,
        canvas_width: float = CANVAS_WIDTH_PX,
    ) -> None:
        self.store = store
        self.gesture: Gesture = Idle()
        self.undo_stack: List[DeletedPanel] = []
        self.snap_enabled = snap_enabled
        self.snap_size = snap_size
        self.canvas_width = canvas_width

    # -- queries --------------------------------------------------------------

    @property
    def edit_mode(self) -> bool:
        return self.store.state.edit_mode

    @property
    def is_idle(self) -> bool:
        return isinstance(self.gesture, Idle)

    def _page(self, page_id: str) -> Optional[DashboardPage]:
        page = self.store.state.page(page_id)
        if page is None:
            logger.warning("Layout: unknown page %s", page_id)
        return page

    def _chart(self, page: DashboardPage, chart_id: str) -> Optional[ChartConfig]:
        idx = page.index_of(chart_id)
        if idx < 0:
            logger.warning("Layout: unknown panel %s on page %s", chart_id, page.id)
            return None
        return page.charts[idx]

    # -- modes ----------------------------------------------------------------

    def set_edit_mode(self, enabled: bool) -> None:
        if not enabled:
            if not self.is_idle:
                self.pointer_up()
            self.undo_stack.clear()
        self.store.dispatch(set_edit_mode, enabled)

    def set_snap(self, enabled: bool) -> None:
        self.snap_enabled = enabled

    def set_layout_mode(self, page_id: str, mode: LayoutMode) -> bool:
        """Switch a page's geometry mode; entering free-form may auto-layout once."""
        page = self._page(page_id)
        if page is None:
            return False
        mode = LayoutMode(mode)
        if not self.is_idle:
            self.pointer_up()
        self.store.dispatch(update_page, page_id, {"layout_mode": mode})
        if mode == LayoutMode.free and page.layout_mode != LayoutMode.free:
            if needs_auto_layout(page.charts):
                packed = pack_panels(page.charts, self.canvas_width)
                self.store.dispatch(replace_charts, page_id, packed)
                logger.info("Auto-layout: page=%s panels=%d", page_id, len(packed))
        return True

    # -- grid mode --------------------------------------------------------------

    def reorder(self, page_id: str, from_index: int, to_index: int) -> bool:
        page = self._page(page_id)
        if page is None or not self.edit_mode:
            return False
        if not (0 <= from_index < len(page.charts)):
            logger.warning("Layout: reorder index %d out of range", from_index)
            return False
        self.store.dispatch(replace_charts, page_id, reorder(page.charts, from_index, to_index))
        return True

    def grid_resize(self, chart_id: str, delta_width: int = 0, delta_height: int = 0) -> Optional[ChartConfig]:
        """Step a panel's span; always lands in [1, 4] x [1, 4]."""
        if not self.edit_mode:
            return None
        page = self.store.state.page_of_chart(chart_id)
        if page is None:
            logger.warning("Layout: unknown panel %s", chart_id)
            return None
        chart = self._chart(page, chart_id)
        width = grid_span(grid_span(chart.width) + delta_width)
        height = grid_span(grid_span(chart.height) + delta_height)
        self.store.dispatch(update_chart, page.id, chart_id, {"width": width, "height": height})
        return self.store.state.chart(chart_id)

    # -- free-form gestures -----------------------------------------------------

    def _can_start(self, page: Optional[DashboardPage], on_control: bool) -> bool:
        return (
            page is not None
            and self.edit_mode
            and self.is_idle
            and not on_control
            and page.layout_mode == LayoutMode.free
        )

    def begin_drag(
        self,
        page_id: str,
        panel_id: str,
        pointer_x: float,
        pointer_y: float,
        on_control: bool = False,
    ) -> bool:
        page = self._page(page_id)
        if not self._can_start(page, on_control):
            return False
        chart = self._chart(page, panel_id)
        if chart is None:
            return False
        self.gesture = Dragging(
            panel_id=panel_id,
            page_id=page_id,
            grab_offset_x=pointer_x - chart.x,
            grab_offset_y=pointer_y - chart.y,
            preview_x=chart.x,
            preview_y=chart.y,
        )
        return True

    def begin_resize(
        self,
        page_id: str,
        panel_id: str,
        handle: ResizeHandle,
        pointer_x: float,
        pointer_y: float,
    ) -> bool:
        page = self._page(page_id)
        if not self._can_start(page, False):
            return False
        chart = self._chart(page, panel_id)
        if chart is None:
            return False
        x, y, w, h = panel_rect(chart)
        self.gesture = Resizing(
            panel_id=panel_id,
            page_id=page_id,
            handle=ResizeHandle(handle),
            start_pointer_x=pointer_x,
            start_pointer_y=pointer_y,
            origin_x=x,
            origin_y=y,
            origin_width=w,
            origin_height=h,
            preview_x=x,
            preview_y=y,
            preview_width=w,
            preview_height=h,
        )
        return True

    def pointer_move(self, pointer_x: float, pointer_y: float) -> Gesture:
        """Update the live preview; nothing is committed."""
        g = self.gesture
        if isinstance(g, Dragging):
            self.gesture = g.model_copy(update={
                "preview_x": max(0.0, pointer_x - g.grab_offset_x),
                "preview_y": max(0.0, pointer_y - g.grab_offset_y),
            })
        elif isinstance(g, Resizing):
            x, y, w, h = resize_rect(
                g.handle,
                (g.origin_x, g.origin_y, g.origin_width, g.origin_height),
                pointer_x - g.start_pointer_x,
                pointer_y - g.start_pointer_y,
            )
            self.gesture = g.model_copy(update={
                "preview_x": x, "preview_y": y, "preview_width": w, "preview_height": h,
            })
        return self.gesture

    def _snap(self, value: float) -> float:
        return snap(value, self.snap_size) if self.snap_enabled else value

    def _commit_span(
        self,
        start: float,
        size: float,
        far_edge: float,
        moves_start: bool,
        lo: float,
        hi: float,
    ) -> Tuple[float, float]:
        """
        Snapped (start, size) along one axis of a resize. When the handle
        moves the start edge, that edge is snapped and the far edge stays put.
        """
        if not moves_start:
            return self._snap(max(0.0, start)), clamp(self._snap(size), lo, hi)
        edge = self._snap(max(0.0, start))
        size = clamp(far_edge - edge, lo, hi)
        return max(0.0, far_edge - size), size

    def pointer_up(self) -> Optional[ChartConfig]:
        """Commit the active gesture's preview and return to idle."""
        g = self.gesture
        self.gesture = Idle()
        if isinstance(g, Dragging):
            updates: Dict[str, Any] = {
                "x": self._snap(max(0.0, g.preview_x)),
                "y": self._snap(max(0.0, g.preview_y)),
            }
        elif isinstance(g, Resizing):
            name = ResizeHandle(g.handle).value
            x, w = self._commit_span(
                g.preview_x, g.preview_width, g.origin_x + g.origin_width,
                "w" in name, MIN_WIDTH_PX, MAX_WIDTH_PX,
            )
            y, h = self._commit_span(
                g.preview_y, g.preview_height, g.origin_y + g.origin_height,
                "n" in name, MIN_HEIGHT_PX, MAX_HEIGHT_PX,
            )
            updates = {
                "x": x,
                "y": y,
                "width": w / UNIT_WIDTH_PX,
                "height": h / UNIT_HEIGHT_PX,
            }
        else:
            return None

        if self.store.state.page(g.page_id) is None:
            logger.warning("Layout: gesture page %s vanished before commit", g.page_id)
            return None
        self.store.dispatch(update_chart, g.page_id, g.panel_id, updates)
        logger.info("Gesture committed: %s panel=%s %s", g.kind, g.panel_id, updates)
        return self.store.state.chart(g.panel_id)

    def pointer_leave(self) -> Optional[ChartConfig]:
        """Leaving the canvas commits like a pointer up."""
        return self.pointer_up()

    # -- delete / undo ----------------------------------------------------------

    def delete_panel(self, page_id: str, chart_id: str) -> Optional[ChartConfig]:
        page = self._page(page_id)
        if page is None:
            return None
        idx = page.index_of(chart_id)
        if idx < 0:
            logger.warning("Layout: delete of unknown panel %s", chart_id)
            return None
        chart = page.charts[idx]
        if not self.is_idle and self.gesture.panel_id == chart_id:
            self.gesture = Idle()
        if self.edit_mode:
            self.undo_stack.append(DeletedPanel(panel=chart, page_id=page_id, original_index=idx))
        self.store.dispatch(delete_chart, page_id, chart_id)
        return chart

    @property
    def can_undo(self) -> bool:
        return bool(self.undo_stack)

    def undo(self) -> Optional[ChartConfig]:
        """Restore the most recently deleted panel, appended to its page."""
        if not self.undo_stack:
            return None
        entry = self.undo_stack.pop()
        if self.store.state.page(entry.page_id) is None:
            logger.warning("Undo: page %s no longer exists; panel dropped", entry.page_id)
            return None
        self.store.dispatch(add_chart, entry.page_id, entry.panel)
        return entry.panel

    # -- templates ----------------------------------------------------------------

    def apply_template(
        self,
        page_id: str,
        layouts: List[Dict[str, Any]],
        schema: Optional[DataSchema] = None,
    ) -> List[ChartConfig]:
        """
        Add one panel per ``{type, width, height}`` layout, bin-packed after
        the existing ones. ``suggestedDimension`` / ``suggestedMetric`` are
        bound when the dataset has them, otherwise mapped onto its columns.
        """
        page = self._page(page_id)
        if page is None:
            return []
        names = [c.name for c in schema.columns] if schema is not None else []
        metrics = [c.name for c in schema.columns if c.is_metric] if schema is not None else []
        dimensions = [c.name for c in schema.columns if c.is_dimension] if schema is not None else []

        created = []
        for i, layout in enumerate(layouts):
            try:
                chart_type = ChartType(layout.get("type", ChartType.bar))
            except ValueError:
                logger.warning("Template: skipping layout with unknown type %r", layout.get("type"))
                continue
            x_axis = layout.get("suggestedDimension")
            y_axis = layout.get("suggestedMetric")
            if x_axis and x_axis not in names:
                x_axis = dimensions[0] if dimensions else (names[0] if names else None)
            if y_axis and y_axis not in names:
                y_axis = metrics[i % len(metrics)] if metrics else None
            if not x_axis and dimensions:
                x_axis = dimensions[0]
            if not y_axis and metrics:
                y_axis = metrics[0]
            created.append(ChartConfig(
                type=chart_type,
                title=layout.get("title") or f"{chart_type.value.capitalize()} Chart",
                width=layout.get("width", 1),
                height=layout.get("height", 1),
                x_axis=x_axis,
                y_axis=y_axis,
            ))

        top = None
        if page.charts:
            top = max(c.y + height_px(c.height) for c in page.charts) + PANEL_GAP_PX
        packed = pack_panels(created, self.canvas_width, top=top)
        self.store.dispatch(replace_charts, page_id, [*page.charts, *packed])
        logger.info("Template applied: page=%s panels=%d", page_id, len(packed))
        return packed
