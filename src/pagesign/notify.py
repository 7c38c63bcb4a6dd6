"""Recipient notifications.

A :class:`Notifier` is any object with the two hooks below; a mail
backend plugs in here.
The default :class:`LogNotifier` only logs. Calls are made fire-and-forget
by :class:`pagesign.service.SigningService`.
"""

import logging
from typing import Protocol

from .models import Recipient, SigningRequest

logger = logging.getLogger("pagesign.notify")


class Notifier(Protocol):
    def signing_requested(
        self, request: SigningRequest, recipient: Recipient, signing_url: str
    ) -> None: ...

    def signing_completed(self, request: SigningRequest, recipient: Recipient) -> None: ...


class LogNotifier:
    """Writes notifications to the log instead of sending them."""

    def signing_requested(
        self, request: SigningRequest, recipient: Recipient, signing_url: str
    ) -> None:
        logger.info(
            "Signing request %r for %s <%s>: %s",
            request.title,
            recipient.name,
            recipient.email,
            signing_url,
        )

    def signing_completed(self, request: SigningRequest, recipient: Recipient) -> None:
        logger.info(
            "%s <%s> signed %r", recipient.name, recipient.email, request.title
        )


class RecordingNotifier:
    """Keeps every notification in memory. Handy for tests and dry runs."""

    def __init__(self) -> None:
        self.requested: list[tuple[str, str]] = []
        self.completed: list[tuple[str, str]] = []

    def signing_requested(
        self, request: SigningRequest, recipient: Recipient, signing_url: str
    ) -> None:
        self.requested.append((recipient.email, signing_url))

    def signing_completed(self, request: SigningRequest, recipient: Recipient) -> None:
        self.completed.append((recipient.email, request.title))
