"""Coordinate conversion between the page render and the document.

Screen space: origin at the top-left of the rendered page, y down, in
pixels, scaled by the zoom factor and shifted by the page's offset
inside the viewport.

Stored field space: PDF points, origin top-left, y down. Converting
screen to stored space only divides by the scale; it never flips y.

PDF-native space: origin bottom-left, y up. :func:`to_pdf_rect` is the
one and only place that flips y, and only assembly calls it.
"""

from typing import NamedTuple, Optional


class Point(NamedTuple):
    x: float
    y: float


ORIGIN = Point(0.0, 0.0)


def _check_scale(scale: float) -> None:
    if scale <= 0:
        raise ValueError(f"scale must be positive, got {scale}")


def screen_to_doc(
    point: Point,
    scale: float,
    offset: Point = ORIGIN,
    page_size: Optional[tuple[float, float]] = None,
) -> Point:
    """Map a screen point to stored field coordinates.

    Args:
        point: Pointer position in screen pixels.
        scale: Current zoom factor.
        offset: Screen position of the page's top-left corner.
        page_size: Optional ``(width, height)`` in points; when given the
            result is also clamped to the page.

    Returns:
        The point in points, clamped to ``>= 0``.
    """
    _check_scale(scale)
    x = max(0.0, (point[0] - offset[0]) / scale)
    y = max(0.0, (point[1] - offset[1]) / scale)
    if page_size is not None:
        x = min(x, page_size[0])
        y = min(y, page_size[1])
    return Point(x, y)


def doc_to_screen(point: Point, scale: float, offset: Point = ORIGIN) -> Point:
    """Inverse of :func:`screen_to_doc` for points inside the page."""
    _check_scale(scale)
    return Point(point[0] * scale + offset[0], point[1] * scale + offset[1])


def screen_delta_to_doc(dx: float, dy: float, scale: float) -> Point:
    """Convert a pointer movement into a movement in points."""
    _check_scale(scale)
    return Point(dx / scale, dy / scale)


def screen_rect(
    x: float, y: float, width: float, height: float, scale: float, offset: Point = ORIGIN
) -> tuple[float, float, float, float]:
    """Screen-space ``(left, top, width, height)`` of a stored field box."""
    left, top = doc_to_screen(Point(x, y), scale, offset)
    return left, top, width * scale, height * scale


def to_pdf_rect(
    x: float, y: float, width: float, height: float, page_height: float
) -> tuple[float, float, float, float]:
    """Flip a stored field box into PDF-native coordinates.

    ``pdf_y = page_height - y - height`` gives the bottom-left corner of
    the box with y measured upward.

    Returns:
        ``(pdf_x, pdf_y, width, height)``.
    """
    return x, page_height - y - height, width, height
