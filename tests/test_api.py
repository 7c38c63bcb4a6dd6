"""Tests for the PageSign REST API."""

import pytest
from fastapi.testclient import TestClient

from pagesign import api
from pagesign.capture import png_data_url
from pagesign.models import RecipientStatus

from conftest import by_name


@pytest.fixture
def client(service):
    api.configure(service=service)
    with TestClient(api.app) as c:
        yield c


def _new_request(client, template_id):
    resp = client.post(
        "/api/requests",
        json={
            "template_id": template_id,
            "title": "Mutual NDA",
            "recipients": [{"name": "Jane Doe", "email": "jane@example.com"}],
        },
    )
    assert resp.status_code == 201
    return resp.json()


class TestHealth:
    def test_health(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json()["service"] == "pagesign"


class TestTemplates:
    """Template and field endpoints."""

    def test_upload_and_get(self, client, sample_pdf):
        resp = client.post(
            "/api/templates",
            data={"name": "Lease"},
            files={"file": ("lease.pdf", sample_pdf, "application/pdf")},
        )
        assert resp.status_code == 201
        tpl = resp.json()
        assert tpl["page_count"] == 2

        got = client.get(f"/api/templates/{tpl['template_id']}")
        assert got.json()["name"] == "Lease"

    def test_upload_rejects_non_pdf(self, client):
        resp = client.post(
            "/api/templates",
            data={"name": "Bad"},
            files={"file": ("bad.pdf", b"not a pdf", "application/pdf")},
        )
        assert resp.status_code == 400

    def test_missing_template(self, client):
        assert client.get("/api/templates/nope").status_code == 404

    def test_fields_use_wire_names(self, client, template):
        resp = client.get(f"/api/templates/{template.template_id}/fields")
        assert resp.status_code == 200
        first = resp.json()[0]
        assert first["field_name"] == "Name"
        assert first["page_number"] == 1
        assert "x_position" in first

    def test_replace_fields(self, client, template):
        resp = client.put(
            f"/api/templates/{template.template_id}/fields",
            json=[
                {
                    "id": "tmp-1-1",
                    "field_name": "Initials",
                    "field_type": "text",
                    "page_number": 2,
                    "x_position": 10,
                    "y_position": 10,
                    "width": 60,
                    "height": 20,
                }
            ],
        )
        assert resp.status_code == 200
        saved = resp.json()
        assert len(saved) == 1
        assert not saved[0]["id"].startswith("tmp-")

        listed = client.get(f"/api/templates/{template.template_id}/fields").json()
        assert [f["field_name"] for f in listed] == ["Initials"]

    def test_replace_fields_rejects_page_past_end(self, client, template):
        resp = client.put(
            f"/api/templates/{template.template_id}/fields",
            json=[{"field_name": "Late", "page_number": 9}],
        )
        assert resp.status_code == 422

    def test_render_page(self, client, template):
        resp = client.get(f"/api/templates/{template.template_id}/pages/2.png?scale=0.5")
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "image/png"
        assert resp.content.startswith(b"\x89PNG")

    def test_render_missing_page(self, client, template):
        resp = client.get(f"/api/templates/{template.template_id}/pages/7.png")
        assert resp.status_code == 404

    def test_delete(self, client, template):
        assert client.delete(f"/api/templates/{template.template_id}").status_code == 204
        assert client.delete(f"/api/templates/{template.template_id}").status_code == 404


class TestRequests:
    def test_create_send_cancel(self, client, template, notifier):
        req = _new_request(client, template.template_id)
        assert req["status"] == "draft"

        sent = client.post(f"/api/requests/{req['id']}/send")
        assert sent.json()["status"] == "sent"

        cancelled = client.post(f"/api/requests/{req['id']}/cancel")
        assert cancelled.json()["status"] == "cancelled"

        audit = client.get(f"/api/requests/{req['id']}/audit").json()
        assert [e["action"] for e in audit] == ["created", "sent", "cancelled"]

    def test_list_by_status(self, client, template):
        req = _new_request(client, template.template_id)
        client.post(f"/api/requests/{req['id']}/send")
        assert [r["id"] for r in client.get("/api/requests?status=sent").json()] == [req["id"]]
        assert client.get("/api/requests?status=completed").json() == []

    def test_list_unknown_status(self, client):
        assert client.get("/api/requests?status=bogus").status_code == 422

    def test_unknown_template(self, client):
        resp = client.post(
            "/api/requests",
            json={"template_id": "nope", "title": "x", "recipients": [{"name": "A", "email": "a@example.com"}]},
        )
        assert resp.status_code == 404

    def test_progress(self, client, signing_request):
        resp = client.get(f"/api/requests/{signing_request.id}/progress")
        assert resp.json() == {
            "request_id": signing_request.id,
            "status": "draft",
            "signed": 0,
            "total": 1,
        }


class TestSigning:
    """Recipient endpoints."""

    def test_open_link(self, client, token):
        resp = client.get(f"/api/sign/{token}")
        assert resp.status_code == 200
        body = resp.json()
        assert body["recipient"]["recipient_name"] == "Jane Doe"
        assert len(body["fields"]) == 4

    def test_unknown_link(self, client, signing_request):
        assert client.get("/api/sign/bogus").status_code == 404

    def test_review_document(self, client, token, sample_pdf):
        resp = client.get(f"/api/sign/{token}/document")
        assert resp.status_code == 200
        assert resp.content == sample_pdf

    def test_complete_and_download(self, client, service, token, signing_request, signature_png):
        fields = by_name(service.store.list_template_fields(signing_request.template_id))
        resp = client.post(
            f"/api/sign/{token}/complete",
            json={
                "values": {fields["Name"].id: "Jane Doe"},
                "signatures": {fields["Signature"].id: png_data_url(signature_png)},
            },
        )
        assert resp.status_code == 200
        record = resp.json()
        assert record["recipient_id"] == signing_request.recipients[0].id

        stored = service.store.load_request(signing_request.id)
        assert stored.recipients[0].status == RecipientStatus.SIGNED

        assert client.get(f"/api/sign/{token}").status_code == 410

        pdf = client.get(f"/api/signed/{signing_request.id}")
        assert pdf.status_code == 200
        assert pdf.content.startswith(b"%PDF")
        assert pdf.headers["x-document-hash"] == record["document_hash"]

    def test_complete_missing_required(self, client, token):
        resp = client.post(f"/api/sign/{token}/complete", json={"values": {}})
        assert resp.status_code == 422
        assert len(resp.json()["detail"]["missing"]) == 2

    def test_complete_cancelled(self, client, service, token, signing_request):
        service.cancel_request(signing_request.id)
        resp = client.post(f"/api/sign/{token}/complete", json={})
        assert resp.status_code == 410

    def test_no_signed_document_yet(self, client, signing_request):
        assert client.get(f"/api/signed/{signing_request.id}").status_code == 404

    def test_visits_counted(self, service, token, signing_request):
        api.configure(service=service)
        with TestClient(api.app) as c:
            c.get(f"/api/sign/{token}")
            c.get(f"/api/sign/{token}")
        stored = service.store.load_request(signing_request.id)
        assert stored.recipients[0].access_count == 2
