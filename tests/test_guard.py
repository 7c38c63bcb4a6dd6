"""Tests for the access guard."""

import pytest

from pagesign.errors import ExpiredLinkError, InvalidLinkError
from pagesign.models import AuditAction, RecipientStatus

from conftest import run


class TestAccessGuard:
    """Link checks before a session starts."""

    def test_valid_link(self, service, token, template):
        context = run(service.guard.open(token))
        assert context.recipient.name == "Jane Doe"
        assert context.template.template_id == template.template_id
        assert [f.name for f in context.fields] == ["Name", "Agree", "Date", "Signature"]

    def test_unknown_token(self, service, signing_request):
        with pytest.raises(InvalidLinkError):
            run(service.guard.open("not-a-token"))

    def test_empty_token(self, service, signing_request):
        with pytest.raises(InvalidLinkError):
            run(service.guard.open(""))

    def test_visit_is_counted(self, service, token, signing_request):
        run(service.guard.open(token))
        run(service.guard.open(token))
        stored = service.store.load_request(signing_request.id)
        assert stored.recipients[0].access_count == 2
        actions = [e.action for e in service.store.get_audit_trail(signing_request.id)]
        assert actions.count(AuditAction.VIEWED) == 2

    def test_check_without_counting(self, service, token, signing_request):
        run(service.guard.open(token, record_view=False))
        assert service.store.load_request(signing_request.id).recipients[0].access_count == 0

    def test_signed_link_rejected_regardless_of_visits(self, service, token, signing_request):
        stored = service.store.load_request(signing_request.id)
        stored.recipients[0].status = RecipientStatus.SIGNED
        stored.recipients[0].access_count = 0
        service.store.save_request(stored)

        with pytest.raises(ExpiredLinkError) as info:
            run(service.guard.open(token))
        assert info.value.reason == "signed"

    def test_expired_link_rejected(self, service, token, signing_request):
        from datetime import datetime, timezone

        stored = service.store.load_request(signing_request.id)
        stored.recipients[0].expired_at = datetime.now(timezone.utc)
        service.store.save_request(stored)

        with pytest.raises(ExpiredLinkError) as info:
            run(service.guard.open(token))
        assert info.value.reason == "expired"

    def test_declined_link_rejected(self, service, token, signing_request):
        stored = service.store.load_request(signing_request.id)
        stored.recipients[0].status = RecipientStatus.DECLINED
        service.store.save_request(stored)

        with pytest.raises(ExpiredLinkError) as info:
            run(service.guard.open(token))
        assert info.value.reason == "declined"

    def test_cancelled_request_rejected(self, service, token, signing_request):
        service.cancel_request(signing_request.id)
        with pytest.raises(ExpiredLinkError) as info:
            run(service.guard.open(token))
        assert info.value.reason == "cancelled"

    def test_rejected_link_not_counted(self, service, token, signing_request):
        service.cancel_request(signing_request.id)
        with pytest.raises(ExpiredLinkError):
            run(service.guard.open(token))
        assert service.store.load_request(signing_request.id).recipients[0].access_count == 0

    def test_failed_access_count_does_not_block(self, service, token, monkeypatch, caplog):
        def broken_increment(recipient_id):
            raise OSError("disk full")

        monkeypatch.setattr(service.store, "increment_access_count", broken_increment)
        with caplog.at_level("WARNING", logger="pagesign.background"):
            context = run(service.guard.open(token))

        assert context.recipient.name == "Jane Doe"
        assert "Background access count failed: disk full" in caplog.text
