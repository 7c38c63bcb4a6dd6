"""Tests for the signing workflow service."""

import pytest

from pagesign.background import fire_and_forget
from pagesign.errors import AlreadySignedError, AssemblyError, ExpiredLinkError, FieldValidationError
from pagesign.models import (
    AuditAction,
    FieldValues,
    Recipient,
    RecipientStatus,
    RequestStatus,
)
from pagesign.service import SigningService

from conftest import by_name, run


class CountingStorage:
    """Object storage that counts writes and can be told to fail."""

    def __init__(self, fail: bool = False):
        self.objects: dict[str, bytes] = {}
        self.puts = 0
        self.fail = fail

    def put(self, path, data):
        self.puts += 1
        if self.fail:
            raise OSError("bucket offline")
        self.objects[path] = data
        return path

    def get(self, path):
        if path not in self.objects:
            raise FileNotFoundError(path)
        return self.objects[path]


def _answers(context, signature_png):
    from pagesign.capture import png_data_url

    f = by_name(context.fields)
    return FieldValues(
        values={f["Name"].id: "Jane Doe", f["Agree"].id: "true"},
        signatures={f["Signature"].id: png_data_url(signature_png)},
    )


class TestTemplatesAndRequests:
    def test_create_template(self, service, sample_pdf):
        tpl = service.create_template("NDA", sample_pdf)
        assert tpl.page_count == 2
        assert service.template_pdf(tpl) == sample_pdf
        assert service.store.load_template(tpl.template_id).file_path == tpl.file_path

    def test_create_template_rejects_garbage(self, service):
        with pytest.raises(ValueError):
            service.create_template("Bad", b"not a pdf")

    def test_request_needs_recipients(self, service, template):
        with pytest.raises(ValueError):
            service.create_request(template.template_id, "NDA", [])

    def test_request_needs_template(self, service):
        with pytest.raises(FileNotFoundError):
            service.create_request("missing", "NDA", [Recipient(name="A", email="a@example.com")])

    def test_send_notifies_each_recipient(self, service, notifier, template):
        req = service.create_request(
            template.template_id,
            "NDA",
            [Recipient(name="A", email="a@example.com"), Recipient(name="B", email="b@example.com")],
        )
        sent = run(service.send_request(req.id))

        assert sent.status == RequestStatus.SENT
        assert sorted(email for email, _ in notifier.requested) == ["a@example.com", "b@example.com"]
        urls = dict(notifier.requested)
        assert urls["a@example.com"] == f"http://127.0.0.1:8400/sign/{req.recipients[0].access_token}"

    def test_cannot_send_cancelled(self, service, signing_request):
        service.cancel_request(signing_request.id)
        with pytest.raises(ValueError):
            run(service.send_request(signing_request.id))

    def test_progress(self, service, signing_request):
        assert service.request_progress(signing_request.id) == (0, 1)


class TestComplete:
    """Assembling and recording a signed document."""

    def test_happy_path(self, tmp_store, notifier, template, signing_request, token, signature_png):
        storage = CountingStorage()
        service = SigningService(tmp_store, storage=storage, notifier=notifier)
        storage.objects[template.file_path] = tmp_store.file_storage().get(template.file_path)

        context = run(service.guard.open(token))
        record = run(service.complete(context, context.fields, _answers(context, signature_png)))

        assert storage.puts == 1
        assert record.final_document_path in storage.objects
        assert record.document_hash == service.engine.hash_bytes(storage.objects[record.final_document_path])
        assert record.completion_data.recipient_id == context.recipient.id

        stored = tmp_store.load_request(signing_request.id)
        assert stored.recipients[0].status == RecipientStatus.SIGNED
        assert stored.recipients[0].expired_at is not None
        assert stored.status == RequestStatus.COMPLETED
        assert len(tmp_store.list_signed_documents(signing_request.id)) == 1
        assert notifier.completed == [("jane@example.com", "Mutual NDA")]

        actions = [e.action for e in tmp_store.get_audit_trail(signing_request.id)]
        assert AuditAction.SIGNED in actions
        assert AuditAction.COMPLETED in actions

    def test_link_dead_after_completion(self, service, token, signature_png):
        context = run(service.guard.open(token))
        run(service.complete(context, context.fields, _answers(context, signature_png)))
        with pytest.raises(ExpiredLinkError):
            run(service.guard.open(token))

    def test_second_completion_rejected(self, service, token, signature_png):
        context = run(service.guard.open(token))
        values = _answers(context, signature_png)
        run(service.complete(context, context.fields, values))
        with pytest.raises(AlreadySignedError):
            run(service.complete(context, context.fields, values))
        assert len(service.store.list_signed_documents(context.request.id)) == 1

    def test_required_fields_rechecked(self, service, token):
        context = run(service.guard.open(token))
        with pytest.raises(FieldValidationError) as info:
            run(service.complete(context, context.fields, FieldValues()))
        assert {f.name for f in info.value.missing} == {"Name", "Signature"}

    def test_storage_failure(self, tmp_store, template, signing_request, token, signature_png):
        storage = CountingStorage(fail=True)
        service = SigningService(tmp_store, storage=storage)
        original = tmp_store.file_storage()
        service.template_pdf = lambda tpl: original.get(tpl.file_path)

        context = run(service.guard.open(token))
        with pytest.raises(AssemblyError) as info:
            run(service.complete(context, context.fields, _answers(context, signature_png)))

        assert info.value.stage == "storage"
        stored = tmp_store.load_request(signing_request.id)
        assert stored.recipients[0].status == RecipientStatus.PENDING
        assert stored.recipients[0].expired_at is None
        assert tmp_store.list_signed_documents(signing_request.id) == []
        actions = [e.action for e in tmp_store.get_audit_trail(signing_request.id)]
        assert AuditAction.ASSEMBLY_FAILED in actions

    def test_missing_original(self, tmp_store, template, token, signature_png):
        service = SigningService(tmp_store, storage=CountingStorage())
        context = run(service.guard.open(token))
        with pytest.raises(AssemblyError) as info:
            run(service.complete(context, context.fields, _answers(context, signature_png)))
        assert info.value.stage == "fetch"

    def test_cancelled_while_open(self, service, signing_request, token, signature_png):
        context = run(service.guard.open(token))
        service.cancel_request(signing_request.id)

        with pytest.raises(ExpiredLinkError) as info:
            run(service.complete(context, context.fields, _answers(context, signature_png)))

        assert info.value.reason == "cancelled"
        stored = service.store.load_request(signing_request.id)
        assert stored.status == RequestStatus.CANCELLED
        assert stored.recipients[0].status == RecipientStatus.PENDING
        assert service.store.list_signed_documents(signing_request.id) == []

    def test_audit_failure_after_commit_keeps_signature(
        self, service, signing_request, token, signature_png, monkeypatch, caplog
    ):
        context = run(service.guard.open(token))

        def failing_audit(entry):
            raise OSError("disk full")

        monkeypatch.setattr(service.store, "append_audit", failing_audit)
        with caplog.at_level("WARNING", logger="pagesign.service"):
            record = run(service.complete(context, context.fields, _answers(context, signature_png)))

        assert record.recipient_id == context.recipient.id
        stored = service.store.load_request(signing_request.id)
        assert stored.recipients[0].status == RecipientStatus.SIGNED
        assert "Could not record signed audit entry" in caplog.text

    def test_partial_request_stays_open(self, service, template, signature_png):
        req = service.create_request(
            template.template_id,
            "NDA",
            [Recipient(name="A", email="a@example.com"), Recipient(name="B", email="b@example.com")],
        )
        context = run(service.guard.open(req.recipients[0].access_token))
        run(service.complete(context, context.fields, _answers(context, signature_png)))

        assert service.request_progress(req.id) == (1, 2)
        assert service.store.load_request(req.id).status != RequestStatus.COMPLETED


class TestBackground:
    def test_failures_are_logged_not_raised(self, caplog):
        def boom():
            raise OSError("mail server down")

        async def go():
            fire_and_forget(boom, label="email")

        with caplog.at_level("WARNING", logger="pagesign.background"):
            run(go())
        assert "Background email failed" in caplog.text
