"""Access guard for token-bound signing links.

Runs before any field data is loaded. A link that is unknown, already
used, expired or cancelled never reaches the ``welcome`` step.
"""

import asyncio
import logging

from .background import fire_and_forget
from .errors import ExpiredLinkError, InvalidLinkError
from .models import (
    AuditAction,
    AuditEntry,
    RecipientStatus,
    RequestStatus,
    SessionContext,
)
from .store import RecordStore

logger = logging.getLogger("pagesign.guard")


class AccessGuard:
    """Validates an access token and loads the session context.

    Args:
        store: Record store holding requests, recipients and fields.
    """

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    async def open(self, token: str, record_view: bool = True) -> SessionContext:
        """Check a signing link and return what the session needs.

        The access-count bump is scheduled but not awaited; if it fails
        the recipient still gets in. Pass ``record_view=False`` to check
        a link without counting it as a visit.

        Raises:
            InvalidLinkError: No recipient holds this token.
            ExpiredLinkError: Recipient already signed, link expired, or
                the request was cancelled.
        """
        request = await asyncio.to_thread(self.store.find_by_token, token) if token else None
        if request is None or not request.recipients:
            logger.info("Rejected unknown signing link")
            raise InvalidLinkError(token)

        recipient = request.recipients[0]
        if recipient.status == RecipientStatus.SIGNED:
            raise ExpiredLinkError("signed")
        if recipient.status == RecipientStatus.DECLINED:
            raise ExpiredLinkError("declined")
        if recipient.expired_at is not None:
            raise ExpiredLinkError("expired")
        if request.status == RequestStatus.CANCELLED:
            raise ExpiredLinkError("cancelled")

        if record_view:
            self._record_view(request, recipient)

        template = await asyncio.to_thread(self.store.load_template, request.template_id)
        fields = await asyncio.to_thread(self.store.list_template_fields, request.template_id)
        logger.info("Recipient %s opened request %s", recipient.name, request.id[:8])
        return SessionContext(
            request=request,
            recipient=recipient,
            template=template,
            fields=fields,
        )

    def _record_view(self, request, recipient) -> None:
        fire_and_forget(self.store.increment_access_count, recipient.id, label="access count")
        fire_and_forget(
            self.store.append_audit,
            AuditEntry(
                request_id=request.id,
                action=AuditAction.VIEWED,
                actor=recipient.name,
                details=f"Opened by {recipient.email}",
            ),
            label="view audit",
        )
