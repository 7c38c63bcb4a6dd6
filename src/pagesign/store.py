"""Filesystem-backed record and object storage for PageSign.

Everything lives on disk as JSON, JSONL and PDF files under
``~/.pagesign/``. No database required.

Directory layout::

    ~/.pagesign/
    ├── templates/          # Template records (JSON)
    ├── fields/             # One field list per template (JSON)
    ├── requests/           # Signing requests with their recipients (JSON)
    ├── signed/             # SignedDocument records, one per recipient
    ├── audit/              # Append-only audit logs (JSONL)
    └── files/              # Object storage (original and signed PDFs)

The :class:`RecordStore` and :class:`ObjectStorage` protocols are what the
rest of the package depends on; :class:`SigningStore` and
:class:`FileStorage` are the default implementations.
"""

import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Callable, Optional, Protocol
from uuid import uuid4

from .models import (
    AuditEntry,
    RecipientStatus,
    RequestStatus,
    SignedDocument,
    SigningRequest,
    Template,
    TemplateField,
)

logger = logging.getLogger("pagesign.store")

DEFAULT_PAGESIGN_DIR = Path.home() / ".pagesign"

TEMP_ID_PREFIX = "tmp-"


# ---------------------------------------------------------------------------
# Ports
# ---------------------------------------------------------------------------

class ObjectStorage(Protocol):
    """Opaque file storage: put bytes under a path, get them back."""

    def put(self, path: str, data: bytes) -> str: ...

    def get(self, path: str) -> bytes: ...


class RecordStore(Protocol):
    """Record operations the signing core depends on."""

    def load_template(self, template_id: str) -> Template: ...

    def list_template_fields(self, template_id: str) -> list[TemplateField]: ...

    def replace_template_fields(
        self, template_id: str, fields: list[TemplateField]
    ) -> list[TemplateField]: ...

    def load_request(self, request_id: str) -> SigningRequest: ...

    def save_request(self, request: SigningRequest) -> Path: ...

    def update_request(
        self, request_id: str, mutate: Callable[[SigningRequest], None]
    ) -> SigningRequest: ...

    def find_by_token(self, access_token: str) -> Optional[SigningRequest]: ...

    def increment_access_count(self, recipient_id: str) -> int: ...

    def record_completion(self, record: SignedDocument) -> bool: ...

    def append_audit(self, entry: AuditEntry) -> None: ...


# ---------------------------------------------------------------------------
# Object storage
# ---------------------------------------------------------------------------

class FileStorage:
    """Object storage rooted at a directory.

    Paths are POSIX-style keys such as ``signed-documents/x.pdf``; keys
    that would escape the root are rejected.

    Args:
        root: Directory holding the stored objects.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        key = PurePosixPath(path)
        if key.is_absolute() or ".." in key.parts:
            raise ValueError(f"Invalid storage path: {path}")
        return self.root.joinpath(*key.parts)

    def put(self, path: str, data: bytes) -> str:
        """Store bytes under ``path`` and return the path."""
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        logger.info("Stored %s (%d bytes)", path, len(data))
        return path

    def get(self, path: str) -> bytes:
        """Read stored bytes.

        Raises:
            FileNotFoundError: If nothing is stored under ``path``.
        """
        target = self._resolve(path)
        if not target.exists():
            raise FileNotFoundError(f"Stored file not found: {path}")
        return target.read_bytes()


# ---------------------------------------------------------------------------
# Record store
# ---------------------------------------------------------------------------

class SigningStore:
    """Filesystem-backed CRUD for templates, fields, requests and audit logs.

    Recipient writes go through a lock so that marking a recipient signed
    is a conditional write: it succeeds for exactly one caller.

    Args:
        base_dir: Root directory for all pagesign data.
    """

    def __init__(self, base_dir: Optional[Path] = None) -> None:
        self.base = base_dir or DEFAULT_PAGESIGN_DIR
        self._templates_dir = self.base / "templates"
        self._fields_dir = self.base / "fields"
        self._requests_dir = self.base / "requests"
        self._signed_dir = self.base / "signed"
        self._audit_dir = self.base / "audit"
        self._lock = threading.RLock()

        for d in (
            self._templates_dir,
            self._fields_dir,
            self._requests_dir,
            self._signed_dir,
            self._audit_dir,
        ):
            d.mkdir(parents=True, exist_ok=True)

    def file_storage(self) -> FileStorage:
        """Object storage living next to the records."""
        return FileStorage(self.base / "files")

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def save_template(self, template: Template) -> Path:
        """Save a template record.

        Args:
            template: Template to persist.

        Returns:
            Path to the saved JSON file.
        """
        path = self._templates_dir / f"{template.template_id}.json"
        path.write_text(template.model_dump_json(indent=2), encoding="utf-8")
        logger.info("Saved template %s (%s)", template.name, template.template_id[:8])
        return path

    def load_template(self, template_id: str) -> Template:
        """Load a template by ID.

        Raises:
            FileNotFoundError: If the template doesn't exist.
        """
        path = self._templates_dir / f"{template_id}.json"
        if not path.exists():
            raise FileNotFoundError(f"Template not found: {template_id}")
        return Template.model_validate_json(path.read_text(encoding="utf-8"))

    def list_templates(self) -> list[Template]:
        """List all templates, newest first."""
        templates = []
        for f in self._templates_dir.glob("*.json"):
            try:
                templates.append(Template.model_validate_json(f.read_text(encoding="utf-8")))
            except ValueError as exc:
                logger.warning("Skipping invalid template %s: %s", f.name, exc)
        templates.sort(key=lambda t: t.created_at, reverse=True)
        return templates

    def delete_template(self, template_id: str) -> bool:
        """Delete a template and its fields.

        Returns:
            True if deleted, False if not found.
        """
        path = self._templates_dir / f"{template_id}.json"
        if not path.exists():
            return False
        path.unlink()
        fields_path = self._fields_dir / f"{template_id}.json"
        if fields_path.exists():
            fields_path.unlink()
        logger.info("Deleted template %s", template_id[:8])
        return True

    # ------------------------------------------------------------------
    # Template fields
    # ------------------------------------------------------------------

    def list_template_fields(self, template_id: str) -> list[TemplateField]:
        """Fields of a template ordered by page number."""
        path = self._fields_dir / f"{template_id}.json"
        if not path.exists():
            return []
        records = json.loads(path.read_text(encoding="utf-8"))
        fields = [TemplateField.model_validate(r) for r in records]
        return sorted(fields, key=lambda f: f.page)

    def replace_template_fields(
        self, template_id: str, fields: list[TemplateField]
    ) -> list[TemplateField]:
        """Replace a template's whole field set.

        Deletes every stored field, then inserts the given ones. Fields
        without an id, or with a temporary client id, get a fresh one.

        Args:
            template_id: Template whose fields are replaced.
            fields: The complete new field list.

        Returns:
            The stored fields with their server ids.
        """
        path = self._fields_dir / f"{template_id}.json"
        with self._lock:
            if path.exists():
                path.unlink()

            stored = []
            for field in fields:
                field_id = field.id
                if not field_id or field_id.startswith(TEMP_ID_PREFIX):
                    field_id = str(uuid4())
                stored.append(
                    field.model_copy(update={"id": field_id, "template_id": template_id})
                )

            path.write_text(
                json.dumps([f.to_record() for f in stored], indent=2),
                encoding="utf-8",
            )
        logger.info("Saved %d fields for template %s", len(stored), template_id[:8])
        return stored

    # ------------------------------------------------------------------
    # Signing requests and recipients
    # ------------------------------------------------------------------

    def save_request(self, request: SigningRequest) -> Path:
        """Save a signing request with its recipients.

        Written to a temporary file and moved into place, so readers never
        see a half-written request.
        """
        path = self._requests_dir / f"{request.id}.json"
        tmp = path.with_suffix(".json.tmp")
        with self._lock:
            tmp.write_text(
                request.model_dump_json(indent=2, by_alias=True), encoding="utf-8"
            )
            os.replace(tmp, path)
        logger.info("Saved signing request %s (%s)", request.title, request.id[:8])
        return path

    def load_request(self, request_id: str) -> SigningRequest:
        """Load a signing request by ID.

        Raises:
            FileNotFoundError: If the request doesn't exist.
        """
        path = self._requests_dir / f"{request_id}.json"
        if not path.exists():
            raise FileNotFoundError(f"Signing request not found: {request_id}")
        return SigningRequest.model_validate_json(path.read_text(encoding="utf-8"))

    def update_request(
        self, request_id: str, mutate: Callable[[SigningRequest], None]
    ) -> SigningRequest:
        """Load, change and save a request as one step under the store lock.

        ``mutate`` edits the request in place and may raise to abort; then
        nothing is written.

        Raises:
            FileNotFoundError: If the request doesn't exist.
        """
        with self._lock:
            request = self.load_request(request_id)
            mutate(request)
            self.save_request(request)
        return request

    def list_requests(
        self, status: Optional[RequestStatus] = None
    ) -> list[SigningRequest]:
        """List signing requests, optionally filtered by status, newest first."""
        requests = []
        for f in self._requests_dir.glob("*.json"):
            try:
                req = SigningRequest.model_validate_json(f.read_text(encoding="utf-8"))
            except ValueError as exc:
                logger.warning("Skipping invalid request %s: %s", f.name, exc)
                continue
            if status is None or req.status == status:
                requests.append(req)
        requests.sort(key=lambda r: r.created_at, reverse=True)
        return requests

    def find_by_token(self, access_token: str) -> Optional[SigningRequest]:
        """Find the request holding a recipient with this access token.

        The returned request carries only the addressed recipient.
        """
        for req in self.list_requests():
            for recipient in req.recipients:
                if recipient.access_token == access_token:
                    return req.model_copy(update={"recipients": [recipient]})
        return None

    def _find_recipient(self, recipient_id: str):
        for req in self.list_requests():
            recipient = req.recipient(recipient_id)
            if recipient is not None:
                return req, recipient
        raise FileNotFoundError(f"Recipient not found: {recipient_id}")

    def increment_access_count(self, recipient_id: str) -> int:
        """Bump a recipient's access counter.

        Returns:
            The new count.
        """
        with self._lock:
            req, recipient = self._find_recipient(recipient_id)
            recipient.access_count += 1
            self.save_request(req)
            return recipient.access_count

    def mark_recipient_signed(self, recipient_id: str) -> bool:
        """Mark a recipient signed and expire the link, if still pending.

        Returns:
            True if this call made the change, False if the recipient was
            already signed or expired, or the request was cancelled.
        """
        with self._lock:
            req, recipient = self._find_recipient(recipient_id)
            if recipient.is_consumed or recipient.status != RecipientStatus.PENDING:
                return False
            if req.status == RequestStatus.CANCELLED:
                return False
            now = datetime.now(timezone.utc)
            recipient.status = RecipientStatus.SIGNED
            recipient.signed_at = now
            recipient.expired_at = now
            if req.is_complete:
                req.status = RequestStatus.COMPLETED
                req.completed_at = now
            self.save_request(req)
        logger.info("Recipient %s signed request %s", recipient.name, req.id[:8])
        return True

    # ------------------------------------------------------------------
    # Signed documents
    # ------------------------------------------------------------------

    def record_completion(self, record: SignedDocument) -> bool:
        """Write the signed-document record and mark the recipient signed.

        Both happen under the store lock and only if the recipient is
        still pending, so of two concurrent completions exactly one wins.
        If marking the recipient fails the record is removed again.

        Returns:
            True if this call completed the recipient, False if the
            recipient was already signed or expired, or the request was
            cancelled.
        """
        with self._lock:
            req, recipient = self._find_recipient(record.recipient_id)
            if recipient.is_consumed or recipient.status != RecipientStatus.PENDING:
                return False
            if req.status == RequestStatus.CANCELLED:
                return False
            path = self.save_signed_document(record)
            try:
                marked = self.mark_recipient_signed(record.recipient_id)
            except Exception:
                path.unlink(missing_ok=True)
                raise
            if not marked:
                path.unlink(missing_ok=True)
            return marked

    def save_signed_document(self, record: SignedDocument) -> Path:
        """Write the signed-document record for a recipient.

        Keyed by recipient, so a retried write replaces instead of adding
        a second record.
        """
        path = self._signed_dir / f"{record.recipient_id}.json"
        with self._lock:
            path.write_text(record.model_dump_json(indent=2), encoding="utf-8")
        logger.info(
            "Recorded signed document %s for request %s",
            record.final_document_path,
            record.signing_request_id[:8],
        )
        return path

    def list_signed_documents(
        self, request_id: Optional[str] = None
    ) -> list[SignedDocument]:
        """Signed-document records, optionally for one request."""
        records = []
        for f in self._signed_dir.glob("*.json"):
            record = SignedDocument.model_validate_json(f.read_text(encoding="utf-8"))
            if request_id is None or record.signing_request_id == request_id:
                records.append(record)
        records.sort(key=lambda r: r.completed_at)
        return records

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def append_audit(self, entry: AuditEntry) -> None:
        """Append an audit entry to the request's JSONL log."""
        log_path = self._audit_dir / f"{entry.request_id}.jsonl"
        with open(log_path, "a", encoding="utf-8") as f:
            f.write(entry.model_dump_json() + "\n")

    def get_audit_trail(self, request_id: str) -> list[AuditEntry]:
        """Load the full audit trail for a request, oldest first."""
        log_path = self._audit_dir / f"{request_id}.jsonl"
        if not log_path.exists():
            return []

        entries = []
        for line in log_path.read_text(encoding="utf-8").strip().splitlines():
            try:
                entries.append(AuditEntry.model_validate_json(line))
            except ValueError:
                logger.warning("Skipping unreadable audit line in %s", log_path.name)
        return sorted(entries, key=lambda e: e.timestamp)
