"""Single-page PDF renderer with page navigation and a zoom ladder.

Rasterisation uses PyMuPDF. Loading happens off the event loop; until it
finishes, page dimensions are unknown and page clicks are ignored so that
no coordinate conversion ever runs against unresolved dimensions.
"""

import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional, Union

import fitz  # PyMuPDF

from .config import ViewerConfig
from .coords import ORIGIN, Point, screen_to_doc
from .models import PageInfo

logger = logging.getLogger("pagesign.renderer")

ClickHandler = Callable[[int, Point], None]

_KEY_ACTIONS = {
    "ArrowRight": "next",
    "PageDown": "next",
    "ArrowLeft": "prev",
    "PageUp": "prev",
    "Home": "first",
    "End": "last",
    "+": "zoom_in",
    "=": "zoom_in",
    "-": "zoom_out",
    "0": "reset_zoom",
}


class PageRenderer:
    """Renders one page of a PDF at a time.

    Args:
        source: PDF bytes or a path to a PDF file.
        config: Zoom ladder and clamp bounds.
        page_offset: Screen position of the page's top-left corner inside
            the viewport, used when converting clicks.
    """

    def __init__(
        self,
        source: Union[bytes, Path, str],
        config: Optional[ViewerConfig] = None,
        page_offset: Point = ORIGIN,
    ) -> None:
        self.source = source
        self.config = config or ViewerConfig()
        self.page_offset = page_offset
        self.current_page = 1
        self.scale = self.config.default_scale
        self._doc: Optional[fitz.Document] = None
        self._handlers: list[ClickHandler] = []

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _open(self) -> fitz.Document:
        if isinstance(self.source, bytes):
            return fitz.open(stream=self.source, filetype="pdf")
        return fitz.open(str(self.source))

    async def load(self) -> PageInfo:
        """Open the document and report its page dimensions.

        Raises:
            ValueError: If the source is not a readable PDF.
        """
        try:
            doc = await asyncio.to_thread(self._open)
        except (fitz.FileDataError, RuntimeError, ValueError) as exc:
            raise ValueError(f"Could not open PDF: {exc}") from exc
        if doc.page_count == 0:
            doc.close()
            raise ValueError("PDF has no pages")
        self._doc = doc
        self.current_page = 1
        logger.info("Loaded PDF with %d pages", doc.page_count)
        return self.page_dimensions()

    def close(self) -> None:
        if self._doc is not None:
            self._doc.close()
            self._doc = None

    @property
    def is_loaded(self) -> bool:
        return self._doc is not None

    @property
    def num_pages(self) -> int:
        return self._doc.page_count if self._doc is not None else 0

    @property
    def page_info(self) -> Optional[PageInfo]:
        """Dimensions of the current page, or ``None`` before load."""
        if self._doc is None:
            return None
        return self.page_dimensions()

    def page_dimensions(self, page: Optional[int] = None) -> PageInfo:
        """Width and height of a page in points.

        Raises:
            RuntimeError: If called before :meth:`load` finished.
        """
        if self._doc is None:
            raise RuntimeError("Page dimensions are not available until the PDF has loaded")
        rect = self._doc[(page or self.current_page) - 1].rect
        return PageInfo(
            num_pages=self._doc.page_count,
            page_width=rect.width,
            page_height=rect.height,
        )

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def go_to(self, page: int) -> int:
        """Move to a page, clamped to the document's range."""
        if self._doc is None:
            return self.current_page
        self.current_page = max(1, min(self.num_pages, page))
        return self.current_page

    def first(self) -> int:
        return self.go_to(1)

    def prev(self) -> int:
        return self.go_to(self.current_page - 1)

    def next(self) -> int:
        return self.go_to(self.current_page + 1)

    def last(self) -> int:
        return self.go_to(self.num_pages)

    # ------------------------------------------------------------------
    # Zoom
    # ------------------------------------------------------------------

    def set_scale(self, scale: float) -> float:
        self.scale = self.config.clamp(scale)
        return self.scale

    def zoom_in(self) -> float:
        """Step to the next larger ladder value."""
        for step in self.config.scale_steps:
            if step > self.scale + 1e-9:
                return self.set_scale(step)
        return self.set_scale(self.config.max_scale)

    def zoom_out(self) -> float:
        """Step to the next smaller ladder value."""
        for step in reversed(self.config.scale_steps):
            if step < self.scale - 1e-9:
                return self.set_scale(step)
        return self.set_scale(self.config.min_scale)

    def reset_zoom(self) -> float:
        return self.set_scale(self.config.default_scale)

    def handle_key(self, key: str) -> bool:
        """Apply a keyboard shortcut. Returns True if the key was handled."""
        action = _KEY_ACTIONS.get(key)
        if action is None:
            return False
        getattr(self, action)()
        return True

    # ------------------------------------------------------------------
    # Rendering and clicks
    # ------------------------------------------------------------------

    def render_png(self) -> bytes:
        """Rasterise the current page at the current scale as PNG."""
        if self._doc is None:
            raise RuntimeError("Cannot render before the PDF has loaded")
        page = self._doc[self.current_page - 1]
        pix = page.get_pixmap(matrix=fitz.Matrix(self.scale, self.scale), alpha=False)
        return pix.tobytes("png")

    def on_click(self, handler: ClickHandler) -> None:
        """Register a handler receiving ``(page, doc_point)`` for page clicks."""
        self._handlers.append(handler)

    def to_doc(self, screen_point: Point) -> Optional[Point]:
        """Convert a screen point on the current page to stored coordinates.

        Returns ``None`` while the page has not loaded.
        """
        info = self.page_info
        if info is None:
            return None
        return screen_to_doc(
            screen_point,
            self.scale,
            self.page_offset,
            page_size=(info.page_width, info.page_height),
        )

    def click(self, screen_point: Point) -> Optional[Point]:
        """Dispatch a click on the rendered page.

        A no-op returning ``None`` until the page has loaded.
        """
        point = self.to_doc(screen_point)
        if point is None:
            logger.debug("Ignoring page click before load")
            return None
        for handler in self._handlers:
            handler(self.current_page, point)
        return point
