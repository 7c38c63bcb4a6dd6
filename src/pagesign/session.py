"""Signing session state machine.

Steps run strictly forward ``welcome → review → form → signature →
confirmation`` with an explicit transition table. Moving on from ``form``
needs every required text, date and checkbox answer; submitting from
``signature`` additionally needs every required signature. Going back
is always allowed and keeps collected values. ``confirmation`` is only
reached after the assembly succeeded, and nothing leaves it.
"""

import logging
from enum import Enum
from typing import Awaitable, Callable, NamedTuple, Optional

from .capture import SignatureCapture, png_data_url
from .errors import (
    AssemblyError,
    AssemblyInProgressError,
    FieldValidationError,
    InvalidTransitionError,
    PageSignError,
)
from .models import (
    FieldType,
    FieldValues,
    SessionContext,
    SignedDocument,
    SigningStep,
    TemplateField,
)

logger = logging.getLogger("pagesign.session")

Completer = Callable[[SessionContext, list[TemplateField], FieldValues], Awaitable[SignedDocument]]

STEPS = list(SigningStep)


class Event(str, Enum):
    NEXT = "next"
    BACK = "back"
    SUBMIT = "submit"


class Transition(NamedTuple):
    source: SigningStep
    event: Event
    guard: Optional[str]
    target: SigningStep


TRANSITIONS: tuple[Transition, ...] = (
    Transition(SigningStep.WELCOME, Event.NEXT, None, SigningStep.REVIEW),
    Transition(SigningStep.REVIEW, Event.NEXT, None, SigningStep.FORM),
    Transition(SigningStep.FORM, Event.NEXT, "form_complete", SigningStep.SIGNATURE),
    Transition(SigningStep.SIGNATURE, Event.SUBMIT, "signatures_complete", SigningStep.CONFIRMATION),
    Transition(SigningStep.REVIEW, Event.BACK, None, SigningStep.WELCOME),
    Transition(SigningStep.FORM, Event.BACK, None, SigningStep.REVIEW),
    Transition(SigningStep.SIGNATURE, Event.BACK, None, SigningStep.FORM),
)


def find_transition(step: SigningStep, event: Event) -> Transition:
    for t in TRANSITIONS:
        if t.source == step and t.event == event:
            return t
    raise InvalidTransitionError(f"Cannot {event.value} from {step.value}")


class SigningSession:
    """One recipient working through one signing request.

    Args:
        context: Output of the access guard.
        completer: Coroutine function that assembles and persists the
            final document; called at most once per successful submit.
        pdf_data: Original document bytes, for review rendering.
    """

    def __init__(
        self,
        context: SessionContext,
        completer: Completer,
        pdf_data: Optional[bytes] = None,
    ) -> None:
        self.context = context
        self.fields: list[TemplateField] = list(context.fields)
        self.pdf_data = pdf_data
        self.values = FieldValues()
        self.step = SigningStep.WELCOME
        self.submitting = False
        self.result: Optional[SignedDocument] = None
        self._completer = completer
        self._captures: dict[str, SignatureCapture] = {}

    # ------------------------------------------------------------------
    # Fields and values
    # ------------------------------------------------------------------

    @property
    def form_fields(self) -> list[TemplateField]:
        return [f for f in self.fields if not f.is_signature]

    @property
    def signature_fields(self) -> list[TemplateField]:
        return [f for f in self.fields if f.is_signature]

    def _field(self, field_id: str) -> TemplateField:
        for f in self.fields:
            if f.id == field_id:
                return f
        raise KeyError(f"Field not found: {field_id}")

    def set_value(self, field_id: str, value) -> None:
        """Record an answer for a text, date or checkbox field.

        Booleans are stored as ``"true"``/``"false"``.
        """
        self._ensure_open()
        field = self._field(field_id)
        if field.is_signature:
            raise ValueError("Use capture_for() to sign a signature field")
        if field.field_type == FieldType.CHECKBOX and isinstance(value, bool):
            value = "true" if value else "false"
        self.values.values[field_id] = str(value)

    def clear_value(self, field_id: str) -> None:
        self._ensure_open()
        self.values.values.pop(field_id, None)

    def capture_for(self, field_id: str, **kwargs) -> SignatureCapture:
        """Drawing surface bound to a signature field (created on first use)."""
        self._ensure_open()
        if field_id not in self._captures:
            self._captures[field_id] = SignatureCapture(self._field(field_id), self.values, **kwargs)
        return self._captures[field_id]

    def set_signature(self, field_id: str, png: bytes) -> str:
        """Use an already drawn PNG image as a signature field's value."""
        self._ensure_open()
        field = self._field(field_id)
        if not field.is_signature:
            raise ValueError(f"Field {field.name!r} is not a signature field")
        url = png_data_url(png)
        self.values.signatures[field_id] = url
        return url

    def missing_required(self, step: Optional[SigningStep] = None) -> list[TemplateField]:
        """Required fields still empty for ``step`` and every step before it."""
        step = step or self.step
        missing = []
        if STEPS.index(step) >= STEPS.index(SigningStep.FORM):
            missing += [f for f in self.form_fields if f.required and not self.values.has(f)]
        if STEPS.index(step) >= STEPS.index(SigningStep.SIGNATURE):
            missing += [f for f in self.signature_fields if f.required and not self.values.has(f)]
        return missing

    @property
    def progress(self) -> float:
        return STEPS.index(self.step) / (len(STEPS) - 1)

    @property
    def can_submit(self) -> bool:
        return (
            self.step == SigningStep.SIGNATURE
            and not self.submitting
            and not self.missing_required(SigningStep.SIGNATURE)
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _ensure_open(self) -> None:
        if self.step == SigningStep.CONFIRMATION:
            raise InvalidTransitionError("The document has already been signed")

    def _check_guard(self, guard: Optional[str]) -> None:
        if guard == "form_complete":
            missing = self.missing_required(SigningStep.FORM)
        elif guard == "signatures_complete":
            missing = self.missing_required(SigningStep.SIGNATURE)
        else:
            return
        if missing:
            raise FieldValidationError(missing)

    def _fire(self, event: Event) -> SigningStep:
        self._ensure_open()
        if self.submitting:
            raise AssemblyInProgressError()
        transition = find_transition(self.step, event)
        self._check_guard(transition.guard)
        return transition.target

    def advance(self) -> SigningStep:
        """Move one step forward.

        Raises:
            FieldValidationError: Required answers are missing.
            InvalidTransitionError: Forward from ``signature`` needs
                :meth:`submit`; nothing moves out of ``confirmation``.
        """
        if self.step == SigningStep.SIGNATURE:
            raise InvalidTransitionError("Submit the document to finish signing")
        self.step = self._fire(Event.NEXT)
        logger.debug("Session %s moved to %s", self.context.recipient.id[:8], self.step.value)
        return self.step

    def back(self) -> SigningStep:
        """Move one step back, keeping every collected value."""
        self.step = self._fire(Event.BACK)
        return self.step

    async def submit(self) -> SignedDocument:
        """Assemble the final document and enter ``confirmation``.

        The session refuses a second submit while one is running; it is
        rejected, not queued. On failure the session stays in
        ``signature`` and can be submitted again.

        Raises:
            AssemblyInProgressError: A submit is already running.
            FieldValidationError: Required answers are missing.
            AssemblyError: Producing or saving the document failed.
        """
        target = self._fire(Event.SUBMIT)
        self.submitting = True
        try:
            result = await self._completer(self.context, list(self.fields), self.values)
        except PageSignError:
            raise
        except Exception as exc:
            logger.exception("Signing failed for recipient %s", self.context.recipient.id[:8])
            raise AssemblyError(str(exc)) from exc
        finally:
            self.submitting = False
        self.result = result
        self.step = target
        logger.info(
            "Recipient %s completed request %s",
            self.context.recipient.name,
            self.context.request.id[:8],
        )
        return result
