"""Core data models for PageSign.

Field records keep the wire names used by the persisted field table
(``field_name``, ``x_position``, ``page_number`` ...) as aliases, while
Python code works with short attribute names.

Field coordinates are stored in PDF points, top-left origin, y growing
downward, which is the convention of the on-screen designer. Only the
assembly step flips into PDF-native (bottom-left) space, through
:func:`pagesign.coords.to_pdf_rect`.
"""

from datetime import datetime, timezone
from enum import Enum
from secrets import token_urlsafe
from typing import NamedTuple, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class FieldType(str, Enum):
    """Placeable field types."""

    TEXT = "text"
    DATE = "date"
    SIGNATURE = "signature"
    CHECKBOX = "checkbox"


class RequestStatus(str, Enum):
    """Lifecycle states for a signing request."""

    DRAFT = "draft"
    SENT = "sent"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RecipientStatus(str, Enum):
    """Lifecycle states for an individual recipient."""

    PENDING = "pending"
    SIGNED = "signed"
    DECLINED = "declined"


class SigningStep(str, Enum):
    """Steps of a signing session, in strict forward order."""

    WELCOME = "welcome"
    REVIEW = "review"
    FORM = "form"
    SIGNATURE = "signature"
    CONFIRMATION = "confirmation"


class AuditAction(str, Enum):
    """Actions recorded in the audit trail."""

    CREATED = "created"
    SENT = "sent"
    VIEWED = "viewed"
    SIGNED = "signed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ASSEMBLY_FAILED = "assembly_failed"


# ---------------------------------------------------------------------------
# Template fields
# ---------------------------------------------------------------------------

class TemplateField(BaseModel):
    """One placeable element on one page of a template.

    Attributes:
        id: Stable identifier. ``None`` until the field is persisted;
            designers may assign a temporary ``tmp-`` id meanwhile.
        template_id: Owning template.
        name: Human label (``field_name`` on the wire).
        field_type: Type of field.
        page: 1-indexed page number.
        x: Left edge in points from the page's left side.
        y: Top edge in points from the page's top side.
        width: Box width in points.
        height: Box height in points.
        required: Whether the recipient must fill the field.
        placeholder: Hint shown in the empty field.
        properties: Free-form rendering properties.
    """

    id: Optional[str] = None
    template_id: Optional[str] = None
    name: str = Field(alias="field_name")
    field_type: FieldType = FieldType.TEXT
    page: int = Field(1, alias="page_number", ge=1)
    x: float = Field(0.0, alias="x_position", ge=0)
    y: float = Field(0.0, alias="y_position", ge=0)
    width: float = Field(100.0, gt=0)
    height: float = Field(30.0, gt=0)
    required: bool = Field(True, alias="is_required")
    placeholder: Optional[str] = Field(None, alias="placeholder_text")
    properties: dict = Field(default_factory=dict)

    model_config = {"populate_by_name": True, "validate_assignment": True}

    @property
    def is_signature(self) -> bool:
        return self.field_type == FieldType.SIGNATURE

    def contains(self, x: float, y: float) -> bool:
        """Whether a document-space point falls inside the field box."""
        return (
            self.x <= x <= self.x + self.width
            and self.y <= y <= self.y + self.height
        )

    def to_record(self) -> dict:
        """Serialize to the persisted field record shape."""
        return self.model_dump(by_alias=True, exclude_none=True)


class Template(BaseModel):
    """An uploaded PDF that fields are placed on.

    Attributes:
        template_id: Unique identifier.
        name: Display name.
        file_path: Object-storage path of the original PDF.
        page_count: Number of pages, recorded at upload.
        created_at: Upload timestamp.
    """

    template_id: str = Field(default_factory=lambda: str(uuid4()))
    name: str
    file_path: Optional[str] = None
    page_count: Optional[int] = None
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


# ---------------------------------------------------------------------------
# Signing requests
# ---------------------------------------------------------------------------

class Recipient(BaseModel):
    """One invitee on a signing request.

    The access token is the recipient's whole identity in a session:
    whoever holds the link can sign. ``expired_at`` is set when signing
    completes and makes the link permanently inert.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str = Field(alias="recipient_name")
    email: str = Field(alias="recipient_email")
    access_token: str = Field(default_factory=lambda: token_urlsafe(32))
    status: RecipientStatus = RecipientStatus.PENDING
    access_count: int = 0
    expired_at: Optional[datetime] = None
    signed_at: Optional[datetime] = None

    model_config = {"populate_by_name": True}

    @property
    def is_consumed(self) -> bool:
        return self.status == RecipientStatus.SIGNED or self.expired_at is not None


class SigningRequest(BaseModel):
    """A template sent out for signing.

    Attributes:
        id: Unique identifier.
        template_id: Template being signed.
        title: Title shown to recipients and used in the artifact name.
        message: Note from the sender.
        status: Current lifecycle status.
        recipients: Invitees.
        created_at: Creation timestamp.
        completed_at: When every recipient had signed.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    template_id: str
    title: str
    message: str = ""
    status: RequestStatus = RequestStatus.DRAFT
    recipients: list[Recipient] = Field(default_factory=list)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    completed_at: Optional[datetime] = None

    @property
    def is_complete(self) -> bool:
        """All recipients have signed."""
        return bool(self.recipients) and all(
            r.status == RecipientStatus.SIGNED for r in self.recipients
        )

    def recipient(self, recipient_id: str) -> Optional[Recipient]:
        for r in self.recipients:
            if r.id == recipient_id:
                return r
        return None


# ---------------------------------------------------------------------------
# Session values and results
# ---------------------------------------------------------------------------

class FieldValues(BaseModel):
    """Values collected during one signing session.

    ``values`` holds text, date and checkbox (``"true"``/``"false"``)
    answers; ``signatures`` holds PNG data URLs keyed by field id.
    """

    values: dict[str, str] = Field(default_factory=dict)
    signatures: dict[str, str] = Field(default_factory=dict)

    def get(self, field: TemplateField) -> Optional[str]:
        source = self.signatures if field.is_signature else self.values
        return source.get(field.id) if field.id else None

    def has(self, field: TemplateField) -> bool:
        """Whether the field has a non-empty answer.

        An unticked checkbox counts as empty.
        """
        value = self.get(field)
        if not value:
            return False
        if field.field_type == FieldType.CHECKBOX:
            return value == "true"
        return bool(value.strip())

    def field_data(self) -> dict[str, str]:
        return {**self.values, **self.signatures}


class CompletionData(BaseModel):
    """Audit payload stored verbatim with the signed document."""

    recipient_id: str
    field_data: dict[str, str] = Field(default_factory=dict)


class SignedDocument(BaseModel):
    """The output record of a successful assembly.

    One per recipient. ``document_hash`` is the SHA-256 of the final PDF.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    signing_request_id: str
    recipient_id: str
    final_document_path: str
    document_hash: str
    completion_data: CompletionData
    completed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class AuditEntry(BaseModel):
    """Audit log entry for a signing request.

    Attributes:
        entry_id: Unique identifier.
        request_id: Related signing request.
        action: What happened.
        actor: Recipient name or operator label.
        timestamp: When it happened.
        details: Free-form details.
    """

    entry_id: str = Field(default_factory=lambda: str(uuid4()))
    request_id: str
    action: AuditAction
    actor: Optional[str] = None
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    details: str = ""


# ---------------------------------------------------------------------------
# Rendering and designer state
# ---------------------------------------------------------------------------

class PageInfo(BaseModel):
    """Dimensions reported by the page renderer, in PDF points."""

    num_pages: int
    page_width: float
    page_height: float


class Idle(NamedTuple):
    """Designer is not placing anything and nothing is selected."""


class Placing(NamedTuple):
    """The next page click places a new field of this type."""

    field_type: FieldType


class Editing(NamedTuple):
    """An existing field is selected for editing."""

    field_id: str


DesignerMode = Union[Idle, Placing, Editing]


class SessionContext(BaseModel):
    """Everything a signing session needs after the access guard passes."""

    request: SigningRequest
    recipient: Recipient
    template: Template
    fields: list[TemplateField] = Field(default_factory=list)

    @model_validator(mode="after")
    def _recipient_belongs_to_request(self) -> "SessionContext":
        if self.request.recipient(self.recipient.id) is None:
            raise ValueError("recipient does not belong to the signing request")
        return self
