"""Ordered, explicitly owned collection of a template's fields.

The registry is created by whoever opens a template and handed by
reference to the designer and the signing session. Saving always
replaces the template's whole field set; there is no per-field update
on the store side.
"""

import itertools
import logging
import time
from typing import Iterator, Optional

from .errors import RegistrySaveError
from .models import TemplateField
from .store import TEMP_ID_PREFIX, RecordStore

logger = logging.getLogger("pagesign.registry")

_temp_counter = itertools.count(1)


def temporary_id() -> str:
    """Client-side id used until the store assigns a real one."""
    return f"{TEMP_ID_PREFIX}{time.time_ns()}-{next(_temp_counter)}"


def is_temporary(field_id: Optional[str]) -> bool:
    return field_id is None or field_id.startswith(TEMP_ID_PREFIX)


class FieldRegistry:
    """Fields of one template, in insertion order.

    Args:
        template_id: Template the fields belong to.
        fields: Initial fields (usually loaded from the store).
        page_count: Document page count, when known. Used to reject
            fields placed past the last page.

    Attributes:
        stale: Set when a save failed part-way; the local list is no
            longer authoritative until :meth:`refetch` succeeds.
    """

    def __init__(
        self,
        template_id: str,
        fields: tuple = (),
        page_count: Optional[int] = None,
    ) -> None:
        self.template_id = template_id
        self.page_count = page_count
        self.stale = False
        self._fields: list[TemplateField] = []
        for field in fields:
            self.add(field)

    @classmethod
    def load(
        cls, store: RecordStore, template_id: str, page_count: Optional[int] = None
    ) -> "FieldRegistry":
        """Build a registry from the fields stored for a template."""
        return cls(template_id, store.list_template_fields(template_id), page_count)

    def __iter__(self) -> Iterator[TemplateField]:
        return iter(list(self._fields))

    def __len__(self) -> int:
        return len(self._fields)

    def __contains__(self, field_id: str) -> bool:
        return any(f.id == field_id for f in self._fields)

    def _check_page(self, field: TemplateField) -> None:
        if self.page_count is not None and field.page > self.page_count:
            raise ValueError(
                f"Field {field.name!r} is on page {field.page} "
                f"but the document has {self.page_count} pages"
            )

    def _index(self, field_id: str) -> int:
        for i, f in enumerate(self._fields):
            if f.id == field_id:
                return i
        raise KeyError(f"Field not found: {field_id}")

    # ------------------------------------------------------------------
    # Editing
    # ------------------------------------------------------------------

    def add(self, field: TemplateField) -> TemplateField:
        """Append a field, giving it a temporary id if it has none.

        Raises:
            ValueError: If the field's page is past the last page or its
                id is already taken.
        """
        self._check_page(field)
        if field.id is None:
            field = field.model_copy(update={"id": temporary_id()})
        if field.id in self:
            raise ValueError(f"Duplicate field id: {field.id}")
        if field.template_id is None:
            field = field.model_copy(update={"template_id": self.template_id})
        self._fields.append(field)
        return field

    def get(self, field_id: str) -> TemplateField:
        return self._fields[self._index(field_id)]

    def update(self, field_id: str, **patch) -> TemplateField:
        """Apply a partial change to a field.

        ``patch`` takes attribute names (``x``, ``name``, ``required`` ...).
        The patched field is validated as a whole before it replaces the
        old one.
        """
        i = self._index(field_id)
        data = self._fields[i].model_dump()
        data.update(patch)
        updated = TemplateField.model_validate(data)
        self._check_page(updated)
        self._fields[i] = updated
        return updated

    def remove(self, field_id: str) -> TemplateField:
        return self._fields.pop(self._index(field_id))

    def list_by_page(self, page: int) -> list[TemplateField]:
        return [f for f in self._fields if f.page == page]

    def snapshot(self) -> list[TemplateField]:
        """Deep copy of the current fields."""
        return [f.model_copy(deep=True) for f in self._fields]

    def restore(self, fields: list[TemplateField]) -> None:
        self._fields = [f.model_copy(deep=True) for f in fields]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def replace_all(self, store: RecordStore) -> list[TemplateField]:
        """Persist the whole field list, replacing what the store holds.

        On success the local fields adopt the store's ids. On failure the
        registry is marked stale: the store may now hold no fields at
        all, so callers must :meth:`refetch` before trusting either side.

        Raises:
            RegistrySaveError: If the store rejects the write.
        """
        try:
            saved = store.replace_template_fields(self.template_id, self.snapshot())
        except Exception as exc:
            self.stale = True
            logger.error(
                "Saving fields for template %s failed: %s", self.template_id[:8], exc
            )
            raise RegistrySaveError(f"Failed to save fields: {exc}") from exc
        self._fields = list(saved)
        self.stale = False
        return self.snapshot()

    def refetch(self, store: RecordStore) -> list[TemplateField]:
        """Reload the fields from the store and clear :attr:`stale`."""
        self._fields = list(store.list_template_fields(self.template_id))
        self.stale = False
        return self.snapshot()
