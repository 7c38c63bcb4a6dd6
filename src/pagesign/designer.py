"""Visual field placement on top of a rendered page.

The designer's state is a single :data:`~pagesign.models.DesignerMode`:
``Idle``, ``Placing(field_type)`` or ``Editing(field_id)``. Every edit
goes to the owned :class:`~pagesign.registry.FieldRegistry` and stays
local until :meth:`FieldDesigner.save`.
"""

import asyncio
import logging
from typing import Optional

from .config import DesignerDefaults
from .coords import Point, screen_delta_to_doc, screen_rect
from .models import DesignerMode, Editing, FieldType, Idle, Placing, TemplateField
from .registry import FieldRegistry
from .renderer import PageRenderer
from .store import RecordStore

logger = logging.getLogger("pagesign.designer")


class FieldDesigner:
    """Place, select, move, resize and edit template fields.

    Args:
        registry: Fields being edited. Shared, not copied.
        renderer: Page renderer the fields are drawn over.
        defaults: Default footprint per field type.
    """

    def __init__(
        self,
        registry: FieldRegistry,
        renderer: PageRenderer,
        defaults: Optional[DesignerDefaults] = None,
    ) -> None:
        self.registry = registry
        self.renderer = renderer
        self.defaults = defaults or DesignerDefaults()
        self.mode: DesignerMode = Idle()
        self._saved = registry.snapshot()
        self._drag: Optional[tuple[Point, Point]] = None
        renderer.on_click(self._on_page_click)

    # ------------------------------------------------------------------
    # Mode
    # ------------------------------------------------------------------

    @property
    def selected(self) -> Optional[TemplateField]:
        if isinstance(self.mode, Editing) and self.mode.field_id in self.registry:
            return self.registry.get(self.mode.field_id)
        return None

    def start_placing(self, field_type: FieldType) -> None:
        """Arm placement: the next page click creates a field of this type."""
        self.mode = Placing(FieldType(field_type))

    def cancel_placing(self) -> None:
        if isinstance(self.mode, Placing):
            self.mode = Idle()

    def select(self, field_id: str) -> TemplateField:
        field = self.registry.get(field_id)
        self.mode = Editing(field_id)
        return field

    def deselect(self) -> None:
        self.mode = Idle()
        self._drag = None

    # ------------------------------------------------------------------
    # Clicks
    # ------------------------------------------------------------------

    def handle_page_click(self, screen_point: Point) -> Optional[TemplateField]:
        """Forward a click on the rendered page.

        Returns the created or selected field, or ``None`` when the click
        was ignored (page not loaded) or hit empty space while idle.
        """
        if self.renderer.click(screen_point) is None:
            return None
        return self.selected

    def _on_page_click(self, page: int, point: Point) -> None:
        if isinstance(self.mode, Placing):
            self._place(self.mode.field_type, page, point)
            return
        hit = self.field_at(page, point)
        if hit is None:
            self.deselect()
        else:
            self.mode = Editing(hit.id)

    def _place(self, field_type: FieldType, page: int, point: Point) -> TemplateField:
        size = self.defaults.size_for(field_type)
        dims = self.renderer.page_dimensions(page)
        x = min(point.x, max(0.0, dims.page_width - size.width))
        y = min(point.y, max(0.0, dims.page_height - size.height))
        field = self.registry.add(
            TemplateField(
                name=f"{field_type.value}_field_{len(self.registry) + 1}",
                field_type=field_type,
                page=page,
                x=x,
                y=y,
                width=size.width,
                height=size.height,
                required=True,
            )
        )
        self.mode = Editing(field.id)
        logger.debug("Placed %s field at (%.1f, %.1f) on page %d", field_type.value, x, y, page)
        return field

    def field_at(self, page: int, point: Point) -> Optional[TemplateField]:
        """Topmost field on ``page`` containing a document-space point."""
        for field in reversed(self.registry.list_by_page(page)):
            if field.contains(point.x, point.y):
                return field
        return None

    # ------------------------------------------------------------------
    # Editing the selection
    # ------------------------------------------------------------------

    def _require_selection(self) -> TemplateField:
        field = self.selected
        if field is None:
            raise LookupError("No field is selected")
        return field

    def edit_selected(self, **changes) -> TemplateField:
        """Change properties of the selected field.

        Accepts ``name``, ``field_type``, ``placeholder`` and ``required``.
        """
        allowed = {"name", "field_type", "placeholder", "required"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Cannot edit {', '.join(sorted(unknown))}")
        field = self._require_selection()
        return self.registry.update(field.id, **changes)

    def resize_selected(self, width: float, height: float) -> TemplateField:
        field = self._require_selection()
        return self.registry.update(field.id, width=width, height=height)

    def delete_selected(self) -> TemplateField:
        field = self._require_selection()
        removed = self.registry.remove(field.id)
        self.deselect()
        return removed

    # ------------------------------------------------------------------
    # Dragging
    # ------------------------------------------------------------------

    def begin_drag(self, screen_point: Point) -> None:
        """Start moving the selected field from the pointer's position."""
        field = self._require_selection()
        self._drag = (Point(*screen_point), Point(field.x, field.y))

    def drag_to(self, screen_point: Point) -> TemplateField:
        """Move the selected field by the pointer delta since drag start.

        Using the delta rather than the absolute pointer keeps the grab
        offset, so the field does not jump under the cursor.
        """
        if self._drag is None:
            raise LookupError("No drag in progress")
        field = self._require_selection()
        start, origin = self._drag
        delta = screen_delta_to_doc(
            screen_point[0] - start.x, screen_point[1] - start.y, self.renderer.scale
        )
        x = max(0.0, origin.x + delta.x)
        y = max(0.0, origin.y + delta.y)
        info = self.renderer.page_info
        if info is not None:
            x = min(x, max(0.0, info.page_width - field.width))
            y = min(y, max(0.0, info.page_height - field.height))
        return self.registry.update(field.id, x=x, y=y)

    def end_drag(self) -> None:
        self._drag = None

    # ------------------------------------------------------------------
    # Overlays and persistence
    # ------------------------------------------------------------------

    def overlays(self) -> list[tuple[TemplateField, tuple[float, float, float, float]]]:
        """Screen rectangles of the fields on the current page."""
        return [
            (
                field,
                screen_rect(
                    field.x,
                    field.y,
                    field.width,
                    field.height,
                    self.renderer.scale,
                    self.renderer.page_offset,
                ),
            )
            for field in self.registry.list_by_page(self.renderer.current_page)
        ]

    @property
    def is_dirty(self) -> bool:
        return [f.model_dump() for f in self.registry] != [
            f.model_dump() for f in self._saved
        ]

    async def save(self, store: RecordStore) -> list[TemplateField]:
        """Persist every field through the registry's replace-all path."""
        saved = await asyncio.to_thread(self.registry.replace_all, store)
        self._saved = self.registry.snapshot()
        selected = self.mode
        if isinstance(selected, Editing) and selected.field_id not in self.registry:
            self.mode = Idle()
        logger.info("Saved %d fields for template %s", len(saved), self.registry.template_id[:8])
        return saved

    def close(self) -> None:
        """Discard unsaved edits."""
        if self.is_dirty:
            logger.info("Discarding unsaved field edits")
        self.registry.restore(self._saved)
        self.mode = Idle()
        self._drag = None
