"""Shared fixtures for PageSign tests."""

import asyncio
import io

import pytest
from PIL import Image, ImageDraw
from reportlab.pdfgen import canvas

from pagesign.background import drain
from pagesign.models import FieldType, Recipient, TemplateField
from pagesign.notify import RecordingNotifier
from pagesign.service import SigningService
from pagesign.store import SigningStore

PAGE_WIDTH = 612
PAGE_HEIGHT = 792


def make_pdf(pages: int = 2, size: tuple[float, float] = (PAGE_WIDTH, PAGE_HEIGHT)) -> bytes:
    """A small PDF with a heading on each page."""
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=size)
    for n in range(1, pages + 1):
        c.setFont("Helvetica", 14)
        c.drawString(72, size[1] - 72, f"Agreement page {n}")
        c.showPage()
    c.save()
    return buf.getvalue()


def make_png(size: tuple[int, int] = (200, 80)) -> bytes:
    """A transparent PNG with one black stroke, like a drawn signature."""
    image = Image.new("RGBA", size, (255, 255, 255, 0))
    draw = ImageDraw.Draw(image)
    draw.line([(10, size[1] - 20), (size[0] // 2, 15), (size[0] - 10, size[1] - 25)], fill=(0, 0, 0, 255), width=4)
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


def by_name(fields) -> dict[str, TemplateField]:
    return {f.name: f for f in fields}


@pytest.fixture
def tmp_store(tmp_path):
    """Create a temporary SigningStore."""
    return SigningStore(base_dir=tmp_path)


@pytest.fixture
def sample_pdf() -> bytes:
    """Two US-letter pages."""
    return make_pdf()


@pytest.fixture
def signature_png() -> bytes:
    return make_png()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(tmp_store, notifier):
    return SigningService(tmp_store, notifier=notifier)


@pytest.fixture
def template(service, sample_pdf):
    """An uploaded template with four fields over two pages."""
    tpl = service.create_template("Mutual NDA", sample_pdf)
    service.store.replace_template_fields(
        tpl.template_id,
        [
            TemplateField(name="Name", field_type=FieldType.TEXT, page=1, x=72, y=100, width=200, height=24),
            TemplateField(name="Agree", field_type=FieldType.CHECKBOX, page=1, x=72, y=140, width=20, height=20, required=False),
            TemplateField(name="Date", field_type=FieldType.DATE, page=2, x=72, y=500, width=120, height=24, required=False),
            TemplateField(name="Signature", field_type=FieldType.SIGNATURE, page=2, x=72, y=600, width=150, height=60),
        ],
    )
    return tpl


@pytest.fixture
def signing_request(service, template):
    """A sent-out request with a single recipient, Jane Doe."""
    return service.create_request(
        template.template_id,
        "Mutual NDA",
        [Recipient(name="Jane Doe", email="jane@example.com")],
    )


@pytest.fixture
def token(signing_request) -> str:
    return signing_request.recipients[0].access_token


def run(coro):
    """Run a coroutine and wait for the background work it scheduled."""

    async def _main():
        try:
            return await coro
        finally:
            await drain()

    return asyncio.run(_main())
