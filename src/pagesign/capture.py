"""Freehand signature capture.

A :class:`SignatureCapture` is a drawing surface bound to one signature
field. Strokes are recorded as point lists in surface pixels and
rasterised with Pillow into a transparent PNG, exported as a data URL
into the session's :class:`~pagesign.models.FieldValues`.
"""

import base64
import io
import logging
from typing import Optional

from PIL import Image, ImageDraw

from .coords import Point
from .models import FieldType, FieldValues, TemplateField

logger = logging.getLogger("pagesign.capture")

PNG_DATA_URL_PREFIX = "data:image/png;base64,"


def png_data_url(png: bytes) -> str:
    return PNG_DATA_URL_PREFIX + base64.b64encode(png).decode("ascii")


def decode_data_url(value: str) -> bytes:
    """Extract the raw bytes from a base64 data URL.

    Plain base64 (without the ``data:`` header) is accepted too.

    Raises:
        ValueError: If the payload is not valid base64.
    """
    payload = value.split(",", 1)[1] if value.startswith("data:") else value
    return base64.b64decode(payload, validate=True)


class SignatureCapture:
    """Drawing surface for a single signature field.

    Args:
        field: The signature field this surface fills.
        values: Session values receiving the exported image.
        size: Surface size in pixels, ``(width, height)``.
        pen_width: Stroke width in pixels.
    """

    def __init__(
        self,
        field: TemplateField,
        values: FieldValues,
        size: tuple[int, int] = (500, 200),
        pen_width: int = 3,
    ) -> None:
        if field.field_type != FieldType.SIGNATURE:
            raise ValueError(f"Field {field.name!r} is not a signature field")
        if field.id is None:
            raise ValueError("Signature capture needs a persisted field id")
        self.field = field
        self.values = values
        self.size = size
        self.pen_width = pen_width
        self.strokes: list[list[Point]] = []
        self._active: Optional[list[Point]] = None

    @property
    def is_empty(self) -> bool:
        return not any(self.strokes) and not self._active

    def begin_stroke(self, point: Point) -> None:
        self._active = [self._clip(point)]

    def add_point(self, point: Point) -> None:
        if self._active is None:
            self.begin_stroke(point)
            return
        self._active.append(self._clip(point))

    def end_stroke(self) -> Optional[str]:
        """Finish the current stroke and export the surface."""
        if self._active:
            self.strokes.append(self._active)
        self._active = None
        return self.export()

    def _clip(self, point: Point) -> Point:
        w, h = self.size
        return Point(min(max(point[0], 0), w - 1), min(max(point[1], 0), h - 1))

    def to_png(self) -> bytes:
        """Rasterise the strokes onto a transparent PNG."""
        image = Image.new("RGBA", self.size, (255, 255, 255, 0))
        draw = ImageDraw.Draw(image)
        r = self.pen_width / 2
        for stroke in self.strokes:
            if len(stroke) == 1:
                x, y = stroke[0]
                draw.ellipse((x - r, y - r, x + r, y + r), fill=(0, 0, 0, 255))
            else:
                draw.line(stroke, fill=(0, 0, 0, 255), width=self.pen_width, joint="curve")
        buf = io.BytesIO()
        image.save(buf, format="PNG")
        return buf.getvalue()

    def export(self) -> Optional[str]:
        """Store the surface as the field's value.

        Only finished strokes count; a stroke still being drawn is not
        exported. With none, this is a no-op: an earlier signature is kept
        and no completion is recorded.

        Returns:
            The data URL, or ``None`` if nothing was drawn.
        """
        if not any(self.strokes):
            return None
        url = png_data_url(self.to_png())
        self.values.signatures[self.field.id] = url
        return url

    def clear(self) -> None:
        """Erase the surface and forget the field's signature."""
        self.strokes = []
        self._active = None
        self.values.signatures.pop(self.field.id, None)
