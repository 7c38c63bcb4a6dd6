"""PageSign assembly engine: bakes collected values into the PDF.

Reads the original document with pypdf, draws one reportlab overlay per
page that has something to show (text, dates, checkmarks, signature
images) and merges it onto the page. Field boxes are flipped into
PDF-native space through :func:`pagesign.coords.to_pdf_rect` only.

The engine holds no document state: bytes and fields in, bytes out. Persisting the
result is :class:`pagesign.service.SigningService`'s job.
"""

import hashlib
import io
import logging
import re
import threading
from collections import defaultdict
from datetime import datetime
from typing import Iterable, Optional

from PIL import Image, UnidentifiedImageError
from pypdf import PdfReader, PdfWriter
from pypdf.errors import PdfReadError
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfgen import canvas

from .capture import decode_data_url
from .config import AssemblyConfig
from .coords import to_pdf_rect
from .errors import SignatureDecodeError
from .models import FieldType, FieldValues, TemplateField

logger = logging.getLogger("pagesign.assembly")

CHECK_FONT = "ZapfDingbats"
CHECK_GLYPH = "4"  # ✔ in ZapfDingbats


class AssemblyEngine:
    """Draws field values onto a copy of the original PDF.

    Args:
        config: Font sizing and naming settings.
    """

    def __init__(self, config: Optional[AssemblyConfig] = None) -> None:
        self.config = config or AssemblyConfig()
        self._last_stamp = 0
        self._stamp_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Hashing and naming
    # ------------------------------------------------------------------

    @staticmethod
    def hash_bytes(data: bytes) -> str:
        """Hex SHA-256 of raw bytes."""
        return hashlib.sha256(data).hexdigest()

    @staticmethod
    def page_count(pdf_data: bytes) -> int:
        """Number of pages in a PDF.

        Raises:
            ValueError: If the bytes are not a readable PDF.
        """
        try:
            return len(PdfReader(io.BytesIO(pdf_data)).pages)
        except PdfReadError as exc:
            raise ValueError(f"Not a readable PDF: {exc}") from exc

    def artifact_name(self, title: str, now: datetime) -> str:
        """Storage path of the final document.

        ``{prefix}/{epoch ms}_{title}_signed.pdf`` with the title reduced
        to characters that are safe in a file name. A stamp is never
        handed out twice by the same engine.
        """
        safe = re.sub(r"[^\w.-]+", "_", title).strip("_") or "document"
        with self._stamp_lock:
            stamp = max(int(now.timestamp() * 1000), self._last_stamp + 1)
            self._last_stamp = stamp
        return f"{self.config.signed_prefix}/{stamp}_{safe}_signed.pdf"

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def render(
        self,
        pdf_data: bytes,
        fields: Iterable[TemplateField],
        values: FieldValues,
    ) -> bytes:
        """Produce the final document.

        Fields without a value are skipped silently. Fields pointing past
        the last page, and signatures that cannot be decoded, are logged
        and skipped.

        Args:
            pdf_data: Original PDF bytes.
            fields: Template fields in drawing order.
            values: Values and signatures collected in the session.

        Returns:
            The new PDF bytes.

        Raises:
            ValueError: If ``pdf_data`` is not a readable PDF.
        """
        try:
            reader = PdfReader(io.BytesIO(pdf_data))
            pages = reader.pages
            num_pages = len(pages)
        except PdfReadError as exc:
            raise ValueError(f"Not a readable PDF: {exc}") from exc

        by_page: dict[int, list[tuple[TemplateField, str]]] = defaultdict(list)
        for field in fields:
            value = values.get(field)
            if not value:
                continue
            if not 1 <= field.page <= num_pages:
                logger.warning(
                    "Skipping field %s: page %d outside 1..%d",
                    field.name,
                    field.page,
                    num_pages,
                )
                continue
            by_page[field.page].append((field, value))

        writer = PdfWriter()
        for page in pages:
            writer.add_page(page)

        drawn = 0
        for page_number, items in sorted(by_page.items()):
            target = writer.pages[page_number - 1]
            overlay, count = self._overlay(target.mediabox, items)
            if count:
                target.merge_page(PdfReader(io.BytesIO(overlay)).pages[0])
                drawn += count

        out = io.BytesIO()
        writer.write(out)
        logger.info("Assembled document: %d field(s) drawn on %d page(s)", drawn, len(by_page))
        return out.getvalue()

    def _overlay(self, mediabox, items: list[tuple[TemplateField, str]]) -> tuple[bytes, int]:
        left = float(mediabox.left)
        bottom = float(mediabox.bottom)
        page_height = float(mediabox.height)

        buf = io.BytesIO()
        c = canvas.Canvas(buf, pagesize=(float(mediabox.right), float(mediabox.top)))
        count = 0
        for field, value in items:
            x, y, w, h = to_pdf_rect(field.x, field.y, field.width, field.height, page_height)
            x += left
            y += bottom
            if field.field_type == FieldType.SIGNATURE:
                try:
                    self._draw_signature(c, value, x, y, w, h)
                except SignatureDecodeError as exc:
                    logger.warning("Skipping signature %s: %s", field.name, exc)
                    continue
            elif field.field_type == FieldType.CHECKBOX:
                if value != "true":
                    continue
                self._draw_check(c, x, y, w, h)
            else:
                self._draw_text(c, str(value), x, y, w, h)
            count += 1
        c.showPage()
        c.save()
        return buf.getvalue(), count

    def font_size_for(self, text: str, width: float, height: float) -> float:
        """Font size for a value: box-height derived, capped, and shrunk to fit the width."""
        cfg = self.config
        size = max(cfg.min_font_size, min(cfg.max_font_size, height - 4))
        available = width - 2 * cfg.text_padding
        text_width = pdfmetrics.stringWidth(text, cfg.font_name, size)
        if text_width > available > 0:
            size = max(cfg.min_font_size, size * available / text_width)
        return size

    def text_baseline(self, y: float, height: float, size: float) -> float:
        """Baseline that centres the font's glyph band in the box."""
        ascent, descent = pdfmetrics.getAscentDescent(self.config.font_name, size)
        return y + height / 2 - (ascent + descent) / 2

    def _draw_text(self, c: canvas.Canvas, text: str, x: float, y: float, w: float, h: float) -> None:
        size = self.font_size_for(text, w, h)
        c.setFont(self.config.font_name, size)
        c.drawString(x + self.config.text_padding, self.text_baseline(y, h, size), text)

    @staticmethod
    def _draw_check(c: canvas.Canvas, x: float, y: float, w: float, h: float) -> None:
        size = max(4.0, min(w, h) - 4)
        c.setFont(CHECK_FONT, size)
        c.drawString(x + 2, y + (h - size * 0.7) / 2, CHECK_GLYPH)

    @staticmethod
    def _draw_signature(c: canvas.Canvas, value: str, x: float, y: float, w: float, h: float) -> None:
        try:
            image = Image.open(io.BytesIO(decode_data_url(value)))
            image.load()
        except (ValueError, UnidentifiedImageError, OSError) as exc:
            raise SignatureDecodeError(str(exc)) from exc
        if image.mode not in ("RGB", "RGBA"):
            image = image.convert("RGBA")
        c.drawImage(ImageReader(image), x, y, width=w, height=h, mask="auto")
