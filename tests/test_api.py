"""
HTTP surface tests: webhook receivers, sync trigger, connections,
retry queue and health.
"""
import json

import pytest
from fastapi.testclient import TestClient

from outreach_sync.api.dependencies import get_orchestrator
from outreach_sync.main import app
from outreach_sync.models.base import get_db
from outreach_sync.models.connection import SyncRetryQueue
from outreach_sync.models.domain import Campaign
from outreach_sync.models.webhook_event import WebhookEvent
from outreach_sync.services import webhook_validation
from outreach_sync.services.sync_orchestrator import SyncOrchestrator
from outreach_sync.services.webhook_validation import sign

from conftest import FakeClock, FakeTransport, RecordingSleep


@pytest.fixture
def transport():
    return FakeTransport({
        "/contacts": (200, {"contacts": {"contacts": [{"contact_user_id": 1, "first_name": "Ana"}]}}),
        "/dialsession": (200, {"dialsessions": {"dialsessions": []}}),
    })


@pytest.fixture
def client(session_factory, transport):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    def override_get_orchestrator():
        return SyncOrchestrator(
            session_factory=session_factory,
            transport=transport,
            sleep=RecordingSleep(),
            clock=FakeClock(),
            time_budget=50,
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_orchestrator] = override_get_orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def campaign(db):
    db.add(Campaign(workspace_id=1, platform="smartlead", external_id="11", name="Founders"))
    db.commit()


def _post_json(client, path, payload, headers=None):
    return client.post(path, content=json.dumps(payload).encode(), headers={"Content-Type": "application/json", **(headers or {})})


class TestWebhookEndpoints:

    def test_unsigned_accepted_when_no_secret(self, client, campaign):
        response = _post_json(client, "/webhooks/smartlead", {"event_type": "EMAIL_SENT", "event_id": "e1", "campaign_id": 11, "email": "ana@acme.io"})

        assert response.status_code == 200
        assert response.json()["status"] == "processed"

    def test_bad_signature_rejected(self, client, campaign, db, monkeypatch):
        monkeypatch.setattr(webhook_validation.settings, "smartlead_webhook_secret", "s3cret")

        response = _post_json(
            client, "/webhooks/smartlead",
            {"event_type": "EMAIL_SENT", "event_id": "e1", "campaign_id": 11, "email": "ana@acme.io"},
            headers={"X-Smartlead-Signature": "deadbeef"},
        )

        assert response.status_code == 401
        assert db.query(WebhookEvent).count() == 0

    def test_missing_signature_rejected(self, client, monkeypatch):
        monkeypatch.setattr(webhook_validation.settings, "replyio_webhook_secret", "s3cret")
        response = _post_json(client, "/webhooks/replyio", {"eventType": "email_sent"})
        assert response.status_code == 401

    def test_valid_signature_accepted(self, client, campaign, monkeypatch):
        monkeypatch.setattr(webhook_validation.settings, "smartlead_webhook_secret", "s3cret")
        body = json.dumps({"event_type": "EMAIL_SENT", "event_id": "e2", "campaign_id": 11, "email": "ana@acme.io"}).encode()

        response = client.post(
            "/webhooks/smartlead",
            content=body,
            headers={"Content-Type": "application/json", "X-Smartlead-Signature": f"sha256={sign(body, 's3cret')}"},
        )

        assert response.status_code == 200

    def test_non_object_body_is_bad_request(self, client):
        assert _post_json(client, "/webhooks/smartlead", [1, 2, 3]).status_code == 400
        assert client.post("/webhooks/smartlead", content=b"{not json").status_code == 400

    def test_duplicate_delivery_is_acknowledged(self, client, campaign, db):
        payload = {"event_type": "EMAIL_SENT", "event_id": "dup", "campaign_id": 11, "email": "ana@acme.io"}
        _post_json(client, "/webhooks/smartlead", payload)
        response = _post_json(client, "/webhooks/smartlead", payload)

        assert response.status_code == 200
        assert response.json()["status"] == "duplicate"
        assert db.query(Campaign).one().total_sent == 1

    def test_unknown_campaign_is_stored_and_acknowledged(self, client, db):
        response = _post_json(client, "/webhooks/smartlead", {"event_type": "EMAIL_SENT", "event_id": "e3", "campaign_id": 77, "email": "ana@acme.io"})

        assert response.status_code == 200
        assert response.json()["status"] == "stored"
        assert db.query(WebhookEvent).one().processed is False

    def test_invalid_payload_is_acknowledged(self, client):
        response = _post_json(client, "/webhooks/smartlead", {"event_id": "e4", "campaign_id": 11})
        assert response.status_code == 200
        assert response.json()["status"] == "invalid"

    def test_reconcile_endpoint(self, client, db):
        _post_json(client, "/webhooks/smartlead", {"event_type": "EMAIL_SENT", "event_id": "e5", "campaign_id": 11, "email": "ana@acme.io"})
        db.add(Campaign(workspace_id=1, platform="smartlead", external_id="11", name="Founders"))
        db.commit()

        response = client.post("/webhooks/reconcile", params={"source_type": "smartlead"})

        assert response.status_code == 200
        assert response.json()["processed"] == 1

    def test_reconcile_unknown_source(self, client):
        assert client.post("/webhooks/reconcile", params={"source_type": "mailchimp"}).status_code == 404


class TestSyncEndpoints:

    def test_trigger_runs_sync(self, client, make_connection):
        make_connection("phoneburner")

        response = client.post("/sync/phoneburner", json={"workspace_id": 1})

        assert response.status_code == 200
        body = response.json()
        assert body["done"] is True
        assert body["contacts_synced"] == 1

    def test_unknown_platform_is_404(self, client):
        assert client.post("/sync/myspace", json={"workspace_id": 1}).status_code == 404

    def test_missing_connection_is_404(self, client):
        assert client.post("/sync/smartlead", json={"workspace_id": 42}).status_code == 404

    def test_status(self, client, make_connection):
        make_connection("phoneburner")
        client.post("/sync/phoneburner", json={"workspace_id": 1})

        response = client.get("/sync/status/1")

        connections = response.json()["connections"]
        assert connections[0]["platform"] == "phoneburner"
        assert connections[0]["sync_status"] == "success"
        assert "api_key" not in connections[0]

    def test_stuck_listing_empty(self, client):
        assert client.get("/sync/stuck").json() == {"count": 0, "stuck": []}

    def test_recover_rejects_unknown_action(self, client):
        assert client.post("/sync/recover", json={"action": "explode"}).status_code == 422


class TestConnectionEndpoints:

    def test_put_creates_then_updates(self, client):
        created = client.put("/connections/5/smartlead", json={"api_key": "k1"})
        updated = client.put("/connections/5/smartlead", json={"api_key": "k2", "api_shape": "v2"})

        assert created.status_code == 200
        assert updated.json()["id"] == created.json()["id"]
        assert updated.json()["api_shape"] == "v2"

    def test_unknown_shape_rejected(self, client):
        assert client.put("/connections/5/smartlead", json={"api_key": "k", "api_shape": "v9"}).status_code == 422

    def test_unknown_platform_rejected(self, client):
        assert client.put("/connections/5/myspace", json={"api_key": "k"}).status_code == 404


class TestRetryQueueEndpoints:

    def test_failed_sync_shows_up_in_queue(self, client, make_connection, transport):
        make_connection("phoneburner")
        transport.routes["/contacts"] = (500, "down")

        result = client.post("/sync/phoneburner", json={"workspace_id": 1}).json()
        listing = client.get("/retry-queue", params={"status": "pending"}).json()

        assert result["retry_enqueued"] is True
        assert listing["count"] == 1
        assert listing["entries"][0]["platform"] == "phoneburner"

    def test_process_with_nothing_due(self, client, db):
        response = client.post("/retry-queue/process")
        assert response.status_code == 200
        assert response.json()["processed"] == 0
        assert db.query(SyncRetryQueue).count() == 0


class TestHealth:

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"

    def test_status_lists_platforms(self, client):
        assert client.get("/status").json()["platforms"] == ["phoneburner", "replyio", "smartlead"]
