"""PageSign REST API: FastAPI server for template design and guided signing.

Sender endpoints manage templates, their fields and signing requests.
Recipient endpoints under ``/api/sign/{token}`` are addressed by the
access token alone; the server re-checks the link and the required
fields on completion instead of trusting the client.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel

from . import __version__
from .background import drain
from .config import PageSignConfig
from .errors import (
    AlreadySignedError,
    AssemblyError,
    AssemblyInProgressError,
    ExpiredLinkError,
    FieldValidationError,
    InvalidLinkError,
    PageSignError,
    RegistrySaveError,
)
from .models import (
    AuditEntry,
    FieldValues,
    Recipient,
    RequestStatus,
    SessionContext,
    SignedDocument,
    SigningRequest,
    Template,
    TemplateField,
)
from .registry import FieldRegistry
from .renderer import PageRenderer
from .service import SigningService
from .store import SigningStore

logger = logging.getLogger("pagesign.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await drain()
    logger.info("Background work finished")


app = FastAPI(
    title="PageSign",
    description="Field overlay and guided signing for PDF templates.",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_config = PageSignConfig()
_store = SigningStore(_config.data_dir)
_service = SigningService(_store, config=_config)


def configure(
    config: Optional[PageSignConfig] = None, service: Optional[SigningService] = None
) -> SigningService:
    """Point the app at another data directory or service.

    Used by ``pagesign serve`` and by tests.
    """
    global _config, _store, _service
    _config = config or (service.config if service else PageSignConfig())
    _service = service or SigningService(SigningStore(_config.data_dir), config=_config)
    _store = _service.store
    return _service


def _http_error(exc: PageSignError) -> HTTPException:
    if isinstance(exc, InvalidLinkError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ExpiredLinkError):
        return HTTPException(status_code=410, detail=str(exc))
    if isinstance(exc, FieldValidationError):
        return HTTPException(
            status_code=422,
            detail={"message": str(exc), "missing": [f.id for f in exc.missing]},
        )
    if isinstance(exc, (AlreadySignedError, AssemblyInProgressError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, AssemblyError):
        return HTTPException(status_code=500, detail={"message": str(exc), "stage": exc.stage})
    return HTTPException(status_code=400, detail=str(exc))


def _load_template(template_id: str) -> Template:
    try:
        return _store.load_template(template_id)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="Template not found")


def _load_request(request_id: str) -> SigningRequest:
    try:
        return _store.load_request(request_id)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="Signing request not found")


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class RecipientIn(BaseModel):
    """A recipient to invite."""

    name: str
    email: str


class CreateRequestBody(BaseModel):
    """Request body for creating a signing request."""

    template_id: str
    title: str
    message: str = ""
    recipients: list[RecipientIn]


class CompleteBody(BaseModel):
    """Answers submitted by a recipient.

    ``values`` holds text, date and checkbox answers; ``signatures`` holds
    PNG data URLs. Both are keyed by field id.
    """

    values: dict[str, str] = {}
    signatures: dict[str, str] = {}


class ProgressOut(BaseModel):
    request_id: str
    status: RequestStatus
    signed: int
    total: int


# ---------------------------------------------------------------------------
# Template endpoints
# ---------------------------------------------------------------------------

@app.post("/api/templates", response_model=Template, status_code=201)
async def create_template(
    name: str = Form(...), file: UploadFile = File(...)
) -> Template:
    """Upload a PDF as a new template."""
    pdf_data = await file.read()
    try:
        return await asyncio.to_thread(_service.create_template, name, pdf_data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@app.get("/api/templates", response_model=list[Template])
async def list_templates() -> list[Template]:
    """List all templates."""
    return _store.list_templates()


@app.get("/api/templates/{template_id}", response_model=Template)
async def get_template(template_id: str) -> Template:
    """Get a template by ID."""
    return _load_template(template_id)


@app.delete("/api/templates/{template_id}", status_code=204)
async def delete_template(template_id: str) -> None:
    """Delete a template and its fields."""
    if not _store.delete_template(template_id):
        raise HTTPException(status_code=404, detail="Template not found")


@app.get("/api/templates/{template_id}/fields", response_model=list[TemplateField])
async def list_fields(template_id: str) -> list[TemplateField]:
    """Fields of a template, in page order."""
    _load_template(template_id)
    return _store.list_template_fields(template_id)


@app.put("/api/templates/{template_id}/fields", response_model=list[TemplateField])
async def replace_fields(
    template_id: str, fields: list[TemplateField]
) -> list[TemplateField]:
    """Replace a template's whole field set.

    Fields without an id, or with a temporary ``tmp-`` id, get a
    permanent one.
    """
    template = _load_template(template_id)
    try:
        registry = FieldRegistry(template_id, fields, page_count=template.page_count)
        return await asyncio.to_thread(registry.replace_all, _store)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except RegistrySaveError as exc:
        raise HTTPException(status_code=500, detail=str(exc))


@app.get("/api/templates/{template_id}/pages/{page}.png")
async def render_page(
    template_id: str,
    page: int,
    scale: Optional[float] = Query(None, gt=0, description="Zoom factor"),
) -> Response:
    """Rasterise one page of a template as PNG."""
    template = _load_template(template_id)
    try:
        pdf_data = await asyncio.to_thread(_service.template_pdf, template)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="Template PDF not found")

    renderer = PageRenderer(pdf_data, _config.viewer)
    try:
        info = await renderer.load()
        if not 1 <= page <= info.num_pages:
            raise HTTPException(status_code=404, detail="Page not found")
        renderer.go_to(page)
        if scale is not None:
            renderer.set_scale(scale)
        png = await asyncio.to_thread(renderer.render_png)
    finally:
        renderer.close()
    return Response(content=png, media_type="image/png")


# ---------------------------------------------------------------------------
# Signing request endpoints
# ---------------------------------------------------------------------------

@app.post("/api/requests", response_model=SigningRequest, status_code=201)
async def create_request(body: CreateRequestBody) -> SigningRequest:
    """Create a draft signing request for a template."""
    _load_template(body.template_id)
    recipients = [Recipient(name=r.name, email=r.email) for r in body.recipients]
    try:
        return _service.create_request(body.template_id, body.title, recipients, body.message)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@app.get("/api/requests", response_model=list[SigningRequest])
async def list_requests(
    status: Optional[RequestStatus] = Query(None, description="Filter by status"),
) -> list[SigningRequest]:
    """List signing requests, optionally filtered by status."""
    return _store.list_requests(status=status)


@app.get("/api/requests/{request_id}", response_model=SigningRequest)
async def get_request(request_id: str) -> SigningRequest:
    """Get a signing request by ID."""
    return _load_request(request_id)


@app.get("/api/requests/{request_id}/progress", response_model=ProgressOut)
async def get_progress(request_id: str) -> ProgressOut:
    """How many recipients have signed."""
    request = _load_request(request_id)
    signed, total = _service.request_progress(request_id)
    return ProgressOut(request_id=request_id, status=request.status, signed=signed, total=total)


@app.post("/api/requests/{request_id}/send", response_model=SigningRequest)
async def send_request(request_id: str) -> SigningRequest:
    """Send the request; each pending recipient gets a signing link."""
    _load_request(request_id)
    try:
        return await _service.send_request(request_id)
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc))


@app.post("/api/requests/{request_id}/cancel", response_model=SigningRequest)
async def cancel_request(request_id: str) -> SigningRequest:
    """Cancel the request; its signing links stop working."""
    _load_request(request_id)
    try:
        return _service.cancel_request(request_id)
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc))


@app.get("/api/requests/{request_id}/audit", response_model=list[AuditEntry])
async def get_audit_trail(request_id: str) -> list[AuditEntry]:
    """Get the audit trail for a signing request."""
    return _store.get_audit_trail(request_id)


# ---------------------------------------------------------------------------
# Recipient endpoints
# ---------------------------------------------------------------------------

@app.get("/api/sign/{token}", response_model=SessionContext)
async def open_signing_link(token: str) -> SessionContext:
    """Open a signing link.

    Returns the request, the addressed recipient, the template and its
    fields. Counts as a visit.
    """
    try:
        return await _service.guard.open(token)
    except PageSignError as exc:
        raise _http_error(exc)


@app.get("/api/sign/{token}/document")
async def signing_document(token: str) -> Response:
    """The original PDF, for the review step."""
    try:
        context = await _service.guard.open(token, record_view=False)
        pdf_data = await asyncio.to_thread(_service.template_pdf, context.template)
    except PageSignError as exc:
        raise _http_error(exc)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="Template PDF not found")
    return Response(content=pdf_data, media_type="application/pdf")


@app.post("/api/sign/{token}/complete", response_model=SignedDocument)
async def complete_signing(token: str, body: CompleteBody) -> SignedDocument:
    """Assemble and record the recipient's signed document.

    The link is checked again and required fields are validated against
    the stored field set.
    """
    try:
        context = await _service.guard.open(token, record_view=False)
        values = FieldValues(values=body.values, signatures=body.signatures)
        return await _service.complete(context, context.fields, values)
    except PageSignError as exc:
        raise _http_error(exc)


@app.get("/api/signed/{request_id}")
async def download_signed(
    request_id: str,
    recipient_id: Optional[str] = Query(None, description="Recipient whose copy to fetch"),
) -> Response:
    """Download a final signed PDF.

    Without ``recipient_id`` the most recently completed copy is returned.
    """
    records = _store.list_signed_documents(request_id)
    if recipient_id:
        records = [r for r in records if r.recipient_id == recipient_id]
    if not records:
        raise HTTPException(status_code=404, detail="No signed document")
    record = records[-1]
    try:
        pdf_data = await asyncio.to_thread(_service.storage.get, record.final_document_path)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="Signed PDF missing from storage")
    filename = Path(record.final_document_path).name
    return Response(
        content=pdf_data,
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "X-Document-Hash": record.document_hash,
        },
    )


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.get("/api/health")
async def health() -> dict:
    """Health check."""
    return {
        "status": "ok",
        "service": "pagesign",
        "version": __version__,
    }
