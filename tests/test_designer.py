"""Tests for the field designer."""

import asyncio

import pytest

from pagesign.coords import Point
from pagesign.designer import FieldDesigner
from pagesign.models import Editing, FieldType, Idle, Placing, TemplateField
from pagesign.registry import FieldRegistry, is_temporary
from pagesign.renderer import PageRenderer


@pytest.fixture
def renderer(sample_pdf):
    r = PageRenderer(sample_pdf)
    asyncio.run(r.load())
    yield r
    r.close()


@pytest.fixture
def designer(renderer):
    return FieldDesigner(FieldRegistry("tpl", page_count=2), renderer)


class TestPlacing:
    """Click-to-place."""

    def test_click_places_field_on_current_page(self, designer, renderer):
        renderer.next()
        renderer.set_scale(1.5)
        designer.start_placing(FieldType.TEXT)

        field = designer.handle_page_click(Point(120, 80))

        assert field.page == 2
        assert field.x == pytest.approx(80)
        assert field.y == pytest.approx(53.333, abs=1e-3)
        assert (field.width, field.height) == (100, 30)
        assert field.name == "text_field_1"
        assert is_temporary(field.id)
        assert designer.mode == Editing(field.id)

    def test_signature_gets_larger_box(self, designer):
        designer.start_placing(FieldType.SIGNATURE)
        field = designer.handle_page_click(Point(10, 10))
        assert (field.width, field.height) == (150, 60)

    def test_click_near_edge_keeps_box_on_page(self, designer):
        designer.start_placing(FieldType.TEXT)
        field = designer.handle_page_click(Point(600, 790))
        assert field.x == pytest.approx(612 - 100)
        assert field.y == pytest.approx(792 - 30)
        assert field.y + field.height <= 792

    def test_names_count_up(self, designer):
        for _ in range(2):
            designer.start_placing(FieldType.DATE)
            designer.handle_page_click(Point(300, 300))
        assert [f.name for f in designer.registry] == ["date_field_1", "date_field_2"]

    def test_cancel_placing(self, designer):
        designer.start_placing(FieldType.CHECKBOX)
        assert designer.mode == Placing(FieldType.CHECKBOX)
        designer.cancel_placing()
        assert designer.mode == Idle()
        assert designer.handle_page_click(Point(10, 10)) is None
        assert len(designer.registry) == 0

    def test_click_before_load_is_ignored(self, sample_pdf):
        d = FieldDesigner(FieldRegistry("tpl"), PageRenderer(sample_pdf))
        d.start_placing(FieldType.TEXT)
        assert d.handle_page_click(Point(10, 10)) is None
        assert len(d.registry) == 0
        assert d.mode == Placing(FieldType.TEXT)


class TestSelection:
    def test_click_selects_field(self, designer):
        field = designer.registry.add(TemplateField(name="Name", x=100, y=100, width=100, height=30))
        assert designer.handle_page_click(Point(150, 110)).id == field.id
        assert designer.selected.id == field.id

    def test_click_on_empty_space_deselects(self, designer):
        field = designer.registry.add(TemplateField(name="Name", x=100, y=100))
        designer.select(field.id)
        designer.handle_page_click(Point(500, 700))
        assert designer.mode == Idle()

    def test_hit_test_respects_page(self, designer):
        designer.registry.add(TemplateField(name="P2", page=2, x=0, y=0))
        assert designer.handle_page_click(Point(10, 10)) is None


class TestEditingSelected:
    """Edits on the selected field."""

    def test_edit_properties(self, designer):
        field = designer.registry.add(TemplateField(name="Name"))
        designer.select(field.id)
        updated = designer.edit_selected(name="Full name", required=False, placeholder="Jane")
        assert updated.name == "Full name"
        assert updated.required is False
        assert updated.placeholder == "Jane"

    def test_edit_rejects_geometry(self, designer):
        field = designer.registry.add(TemplateField(name="Name"))
        designer.select(field.id)
        with pytest.raises(ValueError):
            designer.edit_selected(x=5)

    def test_resize(self, designer):
        field = designer.registry.add(TemplateField(name="Name"))
        designer.select(field.id)
        assert designer.resize_selected(220, 40).width == 220

    def test_delete(self, designer):
        field = designer.registry.add(TemplateField(name="Name"))
        designer.select(field.id)
        designer.delete_selected()
        assert field.id not in designer.registry
        assert designer.mode == Idle()

    def test_nothing_selected(self, designer):
        with pytest.raises(LookupError):
            designer.resize_selected(10, 10)


class TestDragging:
    def test_drag_moves_by_delta(self, designer, renderer):
        renderer.set_scale(2.0)
        field = designer.registry.add(TemplateField(name="Name", x=100, y=100))
        designer.select(field.id)

        designer.begin_drag(Point(250, 250))
        moved = designer.drag_to(Point(270, 290))
        designer.end_drag()

        assert (moved.x, moved.y) == (110, 120)

    def test_drag_clamped_to_page(self, designer):
        field = designer.registry.add(TemplateField(name="Name", x=100, y=100, width=100, height=30))
        designer.select(field.id)
        designer.begin_drag(Point(0, 0))
        moved = designer.drag_to(Point(5000, -5000))
        assert moved.x == pytest.approx(512)
        assert moved.y == 0

    def test_drag_without_begin(self, designer):
        field = designer.registry.add(TemplateField(name="Name"))
        designer.select(field.id)
        with pytest.raises(LookupError):
            designer.drag_to(Point(1, 1))


class TestOverlaysAndSaving:
    def test_overlays_for_current_page(self, designer, renderer):
        renderer.set_scale(2.0)
        designer.registry.add(TemplateField(name="P1", page=1, x=10, y=20, width=30, height=40))
        designer.registry.add(TemplateField(name="P2", page=2))
        overlays = designer.overlays()
        assert len(overlays) == 1
        assert overlays[0][1] == (20, 40, 60, 80)

    def test_save_persists(self, designer, tmp_store):
        designer.start_placing(FieldType.TEXT)
        designer.handle_page_click(Point(50, 50))
        assert designer.is_dirty

        saved = asyncio.run(designer.save(tmp_store))

        assert not designer.is_dirty
        assert not is_temporary(saved[0].id)
        assert [f.id for f in tmp_store.list_template_fields("tpl")] == [saved[0].id]

    def test_close_discards_unsaved(self, designer):
        designer.start_placing(FieldType.TEXT)
        designer.handle_page_click(Point(50, 50))
        designer.close()
        assert len(designer.registry) == 0
        assert designer.mode == Idle()
