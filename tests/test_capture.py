"""Tests for freehand signature capture."""

import base64
import io

import pytest
from PIL import Image

from pagesign.capture import (
    PNG_DATA_URL_PREFIX,
    SignatureCapture,
    decode_data_url,
    png_data_url,
)
from pagesign.coords import Point
from pagesign.models import FieldType, FieldValues, TemplateField


@pytest.fixture
def field():
    return TemplateField(id="sig-1", name="Signature", field_type=FieldType.SIGNATURE)


class TestDataUrls:
    def test_png_data_url(self):
        url = png_data_url(b"\x89PNG")
        assert url.startswith(PNG_DATA_URL_PREFIX)
        assert decode_data_url(url) == b"\x89PNG"

    def test_plain_base64_accepted(self):
        assert decode_data_url(base64.b64encode(b"abc").decode()) == b"abc"

    def test_garbage_rejected(self):
        with pytest.raises(ValueError):
            decode_data_url("data:image/png;base64,***")


class TestSignatureCapture:
    """Drawing and exporting."""

    def test_only_signature_fields(self):
        with pytest.raises(ValueError):
            SignatureCapture(TemplateField(id="t", name="Name"), FieldValues())

    def test_needs_persisted_id(self):
        with pytest.raises(ValueError):
            SignatureCapture(TemplateField(name="Sig", field_type=FieldType.SIGNATURE), FieldValues())

    def test_stroke_exports_png(self, field):
        values = FieldValues()
        capture = SignatureCapture(field, values, size=(300, 100))
        capture.begin_stroke(Point(10, 50))
        capture.add_point(Point(150, 20))
        url = capture.end_stroke()

        assert values.signatures["sig-1"] == url
        image = Image.open(io.BytesIO(decode_data_url(url)))
        assert image.size == (300, 100)
        assert image.mode == "RGBA"
        assert image.getpixel((0, 99))[3] == 0

    def test_empty_export_is_noop(self, field):
        values = FieldValues(signatures={"sig-1": "earlier"})
        capture = SignatureCapture(field, values)
        assert capture.is_empty
        assert capture.export() is None
        assert values.signatures["sig-1"] == "earlier"

    def test_export_mid_stroke_records_nothing(self, field):
        values = FieldValues()
        capture = SignatureCapture(field, values)
        capture.begin_stroke(Point(10, 10))
        capture.add_point(Point(100, 80))

        assert capture.export() is None
        assert "sig-1" not in values.signatures

    def test_export_after_stroke_is_not_blank(self, field):
        values = FieldValues()
        capture = SignatureCapture(field, values)
        capture.begin_stroke(Point(10, 10))
        capture.add_point(Point(100, 80))
        capture.end_stroke()

        image = Image.open(io.BytesIO(decode_data_url(capture.export())))
        assert image.getchannel("A").getbbox() is not None

    def test_single_point_is_a_dot(self, field):
        capture = SignatureCapture(field, FieldValues())
        capture.begin_stroke(Point(20, 20))
        assert capture.end_stroke() is not None

    def test_points_clipped_to_surface(self, field):
        capture = SignatureCapture(field, FieldValues(), size=(100, 50))
        capture.begin_stroke(Point(-10, 500))
        assert capture._active == [Point(0, 49)]

    def test_clear(self, field):
        values = FieldValues()
        capture = SignatureCapture(field, values)
        capture.begin_stroke(Point(1, 1))
        capture.add_point(Point(40, 40))
        capture.end_stroke()
        capture.clear()
        assert capture.is_empty
        assert "sig-1" not in values.signatures
