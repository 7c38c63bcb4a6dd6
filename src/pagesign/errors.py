"""Error taxonomy for PageSign.

Link errors are terminal and stop a session before ``welcome``. Field
validation errors are local and recoverable. Assembly errors cover every
failure between fetching the original PDF and the final record write.
"""

from typing import Optional


class PageSignError(Exception):
    """Base class for all PageSign errors."""


class InvalidLinkError(PageSignError, LookupError):
    """The access token does not match any recipient."""

    def __init__(self, token: str = "") -> None:
        super().__init__("The signing link is invalid or has expired.")
        self.token = token


class ExpiredLinkError(PageSignError):
    """The recipient already signed, or the link was expired or cancelled.

    Attributes:
        reason: One of ``signed``, ``expired``, ``declined`` or
            ``cancelled``.
    """

    def __init__(self, reason: str) -> None:
        messages = {
            "signed": "This document has already been signed successfully.",
            "expired": "This signing link has expired and is no longer accessible.",
            "cancelled": "This signing request has been cancelled.",
            "declined": "You declined to sign this document.",
        }
        super().__init__(messages.get(reason, "This signing link is no longer accessible."))
        self.reason = reason


class FieldValidationError(PageSignError, ValueError):
    """Required fields are missing at a gated transition.

    Attributes:
        missing: The fields that still need a value.
    """

    def __init__(self, missing: list) -> None:
        names = ", ".join(f.name for f in missing)
        super().__init__(f"Please fill all required fields: {names}")
        self.missing = missing


class InvalidTransitionError(PageSignError):
    """The requested event is not allowed from the current step."""


class AssemblyInProgressError(PageSignError):
    """A submit arrived while an assembly for the same session is running."""

    def __init__(self) -> None:
        super().__init__("Document is already being signed, please wait...")


class AssemblyError(PageSignError, RuntimeError):
    """Producing or persisting the final document failed.

    Attributes:
        stage: Where it failed: ``fetch``, ``render``, ``storage``,
            ``record`` or ``recipient``.
    """

    def __init__(self, message: str, stage: Optional[str] = None) -> None:
        super().__init__(f"Failed to sign document: {message}")
        self.stage = stage


class AlreadySignedError(AssemblyError):
    """The conditional mark-signed write found the recipient already signed."""

    def __init__(self, recipient_id: str) -> None:
        super().__init__(f"recipient {recipient_id} has already signed", stage="recipient")
        self.recipient_id = recipient_id


class SignatureDecodeError(PageSignError, ValueError):
    """A captured signature image could not be decoded."""


class RegistrySaveError(PageSignError, RuntimeError):
    """Replacing a template's field set failed; local state is stale."""
