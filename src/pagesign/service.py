"""Signing workflow: templates, requests, sessions and completion.

:meth:`SigningService.complete` is the one place that persists a signed
document. Its writes are ordered so that the least reversible step comes
last:

1. the final PDF is stored under a fresh name (an orphan is harmless);
2. the SignedDocument record and the recipient's signed/expired state are
   written together by :meth:`~pagesign.store.SigningStore.record_completion`,
   a conditional write that only one caller can win. The record is keyed
   by recipient, so there is never more than one.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from .assembly import AssemblyEngine
from .background import fire_and_forget
from .config import PageSignConfig
from .errors import (
    AlreadySignedError,
    AssemblyError,
    ExpiredLinkError,
    FieldValidationError,
)
from .guard import AccessGuard
from .models import (
    AuditAction,
    AuditEntry,
    CompletionData,
    FieldValues,
    Recipient,
    RecipientStatus,
    RequestStatus,
    SessionContext,
    SignedDocument,
    SigningRequest,
    Template,
    TemplateField,
)
from .notify import LogNotifier, Notifier
from .session import SigningSession
from .store import ObjectStorage, SigningStore

logger = logging.getLogger("pagesign.service")


class SigningService:
    """Coordinates the store, object storage, assembly and notifications.

    Args:
        store: Record store.
        storage: Object storage for original and signed PDFs.
        notifier: Receives request and completion notifications.
        config: Settings; defaults if omitted.
    """

    def __init__(
        self,
        store: SigningStore,
        storage: Optional[ObjectStorage] = None,
        notifier: Optional[Notifier] = None,
        config: Optional[PageSignConfig] = None,
    ) -> None:
        self.config = config or PageSignConfig()
        self.store = store
        self.storage = storage or store.file_storage()
        self.notifier = notifier or LogNotifier()
        self.engine = AssemblyEngine(self.config.assembly)
        self.guard = AccessGuard(store)

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def create_template(self, name: str, pdf_data: bytes) -> Template:
        """Store an original PDF and its template record.

        Raises:
            ValueError: If the bytes are not a readable PDF.
        """
        pages = self.engine.page_count(pdf_data)
        template = Template(name=name, page_count=pages)
        template.file_path = self.storage.put(
            f"templates/{template.template_id}.pdf", pdf_data
        )
        self.store.save_template(template)
        return template

    def template_pdf(self, template: Template) -> bytes:
        if not template.file_path:
            raise FileNotFoundError(f"Template {template.template_id} has no PDF")
        return self.storage.get(template.file_path)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def create_request(
        self,
        template_id: str,
        title: str,
        recipients: Iterable[Recipient],
        message: str = "",
    ) -> SigningRequest:
        """Create a draft signing request for a template.

        Raises:
            FileNotFoundError: If the template doesn't exist.
            ValueError: If there are no recipients.
        """
        self.store.load_template(template_id)
        recipients = list(recipients)
        if not recipients:
            raise ValueError("A signing request needs at least one recipient")
        request = SigningRequest(
            template_id=template_id,
            title=title,
            message=message,
            recipients=recipients,
        )
        self.store.save_request(request)
        self.store.append_audit(
            AuditEntry(
                request_id=request.id,
                action=AuditAction.CREATED,
                details=f"Request created: {title}",
            )
        )
        return request

    async def send_request(self, request_id: str) -> SigningRequest:
        """Mark a request sent and notify each pending recipient.

        Notifications are fire-and-forget.

        Raises:
            ValueError: If the request is completed or cancelled.
        """
        def mark_sent(request: SigningRequest) -> None:
            if request.status in (RequestStatus.COMPLETED, RequestStatus.CANCELLED):
                raise ValueError(f"Cannot send a {request.status.value} request")
            request.status = RequestStatus.SENT

        request = self.store.update_request(request_id, mark_sent)
        for recipient in request.recipients:
            if recipient.status != RecipientStatus.PENDING:
                continue
            fire_and_forget(
                self.notifier.signing_requested,
                request,
                recipient,
                self.config.signing_url(recipient.access_token),
                label="signing request email",
            )
        self.store.append_audit(
            AuditEntry(
                request_id=request.id,
                action=AuditAction.SENT,
                details=f"Sent to {len(request.recipients)} recipient(s)",
            )
        )
        logger.info("Sent request %s", request.id[:8])
        return request

    def cancel_request(self, request_id: str) -> SigningRequest:
        """Cancel a request; its links stop working.

        Raises:
            ValueError: If the request is already completed.
        """
        def mark_cancelled(request: SigningRequest) -> None:
            if request.status == RequestStatus.COMPLETED:
                raise ValueError("Cannot cancel a completed request")
            request.status = RequestStatus.CANCELLED

        request = self.store.update_request(request_id, mark_cancelled)
        self.store.append_audit(
            AuditEntry(request_id=request.id, action=AuditAction.CANCELLED)
        )
        return request

    def request_progress(self, request_id: str) -> tuple[int, int]:
        """``(signed, total)`` recipients of a request."""
        request = self.store.load_request(request_id)
        signed = sum(1 for r in request.recipients if r.status == RecipientStatus.SIGNED)
        return signed, len(request.recipients)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def open_session(self, token: str) -> SigningSession:
        """Run the access guard and start a session at ``welcome``.

        Raises:
            InvalidLinkError: Unknown token.
            ExpiredLinkError: Signed, declined, expired or cancelled.
        """
        context = await self.guard.open(token)
        pdf_data = await asyncio.to_thread(self.template_pdf, context.template)
        return SigningSession(context, self.complete, pdf_data=pdf_data)

    @staticmethod
    def missing_required(
        fields: Iterable[TemplateField], values: FieldValues
    ) -> list[TemplateField]:
        return [f for f in fields if f.required and not values.has(f)]

    async def complete(
        self,
        context: SessionContext,
        fields: list[TemplateField],
        values: FieldValues,
    ) -> SignedDocument:
        """Assemble, store and record a recipient's signed document.

        Re-checks the recipient and the required fields against the
        store rather than trusting the caller.

        Raises:
            FieldValidationError: Required answers are missing.
            AlreadySignedError: The recipient signed in another session.
            ExpiredLinkError: The request was cancelled while the session
                was open.
            AssemblyError: Any step failed; ``stage`` says which.
        """
        request = context.request
        recipient = context.recipient

        current = await asyncio.to_thread(self.store.load_request, request.id)
        if current.status == RequestStatus.CANCELLED:
            raise ExpiredLinkError("cancelled")
        stored_recipient = current.recipient(recipient.id)
        if stored_recipient is None:
            raise AssemblyError("recipient no longer exists", stage="recipient")
        if stored_recipient.is_consumed:
            raise AlreadySignedError(recipient.id)

        missing = self.missing_required(fields, values)
        if missing:
            raise FieldValidationError(missing)

        try:
            pdf_data = await self._stage("fetch", self.template_pdf, context.template)
            final = await self._stage("render", self.engine.render, pdf_data, fields, values)
            now = datetime.now(timezone.utc)
            path = await self._stage(
                "storage", self.storage.put, self.engine.artifact_name(request.title, now), final
            )
            record = SignedDocument(
                signing_request_id=request.id,
                recipient_id=recipient.id,
                final_document_path=path,
                document_hash=self.engine.hash_bytes(final),
                completion_data=CompletionData(
                    recipient_id=recipient.id, field_data=values.field_data()
                ),
                completed_at=now,
            )
            won = await self._stage("record", self.store.record_completion, record)
        except AssemblyError as exc:
            self._audit_failure(request.id, recipient, exc)
            raise
        if not won:
            current = self.store.load_request(request.id)
            if current.status == RequestStatus.CANCELLED:
                raise ExpiredLinkError("cancelled")
            exc = AlreadySignedError(recipient.id)
            self._audit_failure(request.id, recipient, exc)
            raise exc

        updated = self.store.load_request(request.id)
        self._audit_completion(updated, recipient, path)
        fire_and_forget(
            self.notifier.signing_completed, updated, recipient, label="completion email"
        )
        logger.info(
            "Recipient %s signed %r, stored at %s", recipient.name, request.title, path
        )
        return record

    @staticmethod
    async def _stage(stage: str, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except Exception as exc:
            logger.exception("Signing step %r failed", stage)
            raise AssemblyError(str(exc), stage=stage) from exc

    def _audit_completion(self, request: SigningRequest, recipient: Recipient, path: str) -> None:
        # Runs after the record is committed; audit write failures are only logged.
        entries = [
            AuditEntry(
                request_id=request.id,
                action=AuditAction.SIGNED,
                actor=recipient.name,
                details=f"Signed document stored at {path}",
            )
        ]
        if request.status == RequestStatus.COMPLETED:
            entries.append(
                AuditEntry(
                    request_id=request.id,
                    action=AuditAction.COMPLETED,
                    details="All recipients have signed.",
                )
            )
        for entry in entries:
            try:
                self.store.append_audit(entry)
            except OSError as exc:
                logger.warning("Could not record %s audit entry: %s", entry.action.value, exc)

    def _audit_failure(self, request_id: str, recipient: Recipient, exc: AssemblyError) -> None:
        try:
            self.store.append_audit(
                AuditEntry(
                    request_id=request_id,
                    action=AuditAction.ASSEMBLY_FAILED,
                    actor=recipient.name,
                    details=f"{exc.stage or 'unknown'}: {exc}",
                )
            )
        except OSError as audit_exc:
            logger.warning("Could not record assembly failure: %s", audit_exc)
