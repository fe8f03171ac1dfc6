"""
Tests for the time-boxed, resumable sync orchestrator.

Uses scripted platform responses and a fake clock:
  - Budget yield and resume from the committed checkpoint
  - Idempotent re-runs
  - Per-connection advisory lock (held, stale, reclaimed)
  - Auth vs other failures and retry enqueueing
  - Reset and diagnostic modes
  - Fan-out over parents, date chunking, partial page failures
"""
import asyncio
from datetime import timedelta

import pytest

from outreach_sync.models.connection import ApiConnection, SyncRetryQueue
from outreach_sync.models.domain import Campaign, CallActivity, Company, Contact, DailyMetric, DialSession, EmailActivity, Lead
from outreach_sync.models.webhook_event import WebhookEvent
from outreach_sync.services.sync_context import COMPLETE, SyncRequest
from outreach_sync.services.sync_orchestrator import SyncOrchestrator
from outreach_sync.services.webhook_ingestor import IngestStatus, WebhookIngestor
from outreach_sync.utils.exceptions import ConnectionNotFound, UnknownPlatform
from outreach_sync.utils.helpers import utcnow

from conftest import FakeTransport

EMPTY_SESSIONS = {"dialsessions": {"dialsessions": []}}


def _pb_contacts(total, clock=None, seconds_per_call=0):
    """PhoneBurner v1 /contacts pages over `total` contacts"""
    def route(params):
        if clock is not None:
            clock.advance(seconds_per_call)
        page, size = params["page"], params["page_size"]
        first = (page - 1) * size
        contacts = [
            {
                "contact_user_id": i,
                "first_name": f"Lead{i}",
                "primary_email": {"email_address": f"lead{i}@acme.io"},
                "primary_phone": {"raw_phone": "5550100"},
            }
            for i in range(first + 1, min(first + size, total) + 1)
        ]
        return 200, {"contacts": {"contacts": contacts}}
    return route


def _orchestrator(session_factory, transport, sleep, clock, **kwargs):
    return SyncOrchestrator(
        session_factory=session_factory,
        transport=transport,
        sleep=sleep,
        clock=clock,
        time_budget=kwargs.pop("time_budget", 50),
        **kwargs,
    )


def _run(orchestrator, **request):
    request.setdefault("workspace_id", 1)
    return asyncio.run(orchestrator.run(SyncRequest(**request)))


def _connection(session_factory, connection_id):
    session = session_factory()
    try:
        return session.get(ApiConnection, connection_id)
    finally:
        session.close()


class TestResumableSync:

    def test_budget_yield_then_resume(self, session_factory, make_connection, clock, sleep):
        connection_id = make_connection("phoneburner")
        transport = FakeTransport({
            "/contacts": _pb_contacts(250, clock, seconds_per_call=30),
            "/dialsession": (200, EMPTY_SESSIONS),
        })
        orchestrator = _orchestrator(session_factory, transport, sleep, clock)

        first = _run(orchestrator, platform="phoneburner")

        assert first["success"] is True
        assert first["done"] is False
        assert first["status"] == "syncing"
        assert first["contacts_synced"] == 200
        assert first["step"] == "contacts"

        connection = _connection(session_factory, connection_id)
        assert connection.sync_status == "syncing"
        assert connection.lock_token is None
        assert connection.sync_progress["page"] == 2
        assert connection.sync_progress["totals"]["contacts_synced"] == 200

        second = _run(orchestrator, platform="phoneburner")

        assert second["done"] is True
        assert second["status"] == "success"
        assert second["contacts_synced"] == 50
        assert second["totals"]["contacts_synced"] == 250
        assert second["invocations"] == 2

        session = session_factory()
        assert session.query(Lead).filter(Lead.platform == "phoneburner").count() == 250
        session.close()

        connection = _connection(session_factory, connection_id)
        assert connection.sync_status == "success"
        assert connection.last_sync_at is not None
        assert connection.sync_progress["step"] == COMPLETE

        contact_pages = [c["params"]["page"] for c in transport.calls if c["path"].endswith("/contacts")]
        assert contact_pages == [1, 2, 3]

    def test_date_chunks_never_exceed_max_range(self, session_factory, make_connection, clock, sleep):
        make_connection("phoneburner")
        transport = FakeTransport({
            "/contacts": _pb_contacts(0),
            "/dialsession": (200, EMPTY_SESSIONS),
        })
        orchestrator = _orchestrator(session_factory, transport, sleep, clock)

        result = _run(orchestrator, platform="phoneburner")

        assert result["done"] is True
        ranges = [c["params"] for c in transport.calls if c["path"].endswith("/dialsession")]
        # 180 day lookback, 90 day maximum per call
        assert len(ranges) == 2
        assert ranges[0]["date_end"] == ranges[1]["date_start"]

    def test_fan_out_over_dial_sessions(self, session_factory, make_connection, clock, sleep):
        make_connection("phoneburner")
        started = utcnow() - timedelta(days=1)
        sessions = {"dialsessions": {"dialsessions": [
            {"dialsession_id": 501, "start_when": started.isoformat(), "caller": {"name": "Sam"}},
            {"dialsession_id": 502, "start_when": started.isoformat(), "caller": {"name": "Ari"}},
        ]}}
        transport = FakeTransport({
            "/contacts": _pb_contacts(0),
            "/dialsession/501/calls": (200, {"calls": {"calls": [
                {"call_id": 9001, "contact_user_id": 3, "connected": "1", "duration": "42"},
            ]}}),
            "/dialsession/502/calls": (200, {"calls": {"calls": []}}),
            "/dialsession": [(200, sessions), (200, EMPTY_SESSIONS)],
        })
        orchestrator = _orchestrator(session_factory, transport, sleep, clock)

        result = _run(orchestrator, platform="phoneburner")

        assert result["done"] is True
        assert result["dial_sessions_synced"] == 2
        assert result["calls_synced"] == 1

        session = session_factory()
        call = session.query(CallActivity).one()
        parent = session.get(DialSession, call.dial_session_id)
        assert parent.external_id == "501"
        assert call.caller_name == "Sam"
        assert call.connected is True
        assert call.duration_seconds == 42.0
        session.close()

    def test_fan_out_skips_sessions_older_than_the_window(self, session_factory, make_connection, clock, sleep):
        make_connection("phoneburner")
        session = session_factory()
        for i in range(3):
            session.add(DialSession(
                workspace_id=1,
                platform="phoneburner",
                external_id=f"old{i}",
                started_at=utcnow() - timedelta(days=400),
            ))
        session.add(DialSession(workspace_id=1, platform="phoneburner", external_id="undated"))
        session.commit()
        session.close()

        started = utcnow() - timedelta(days=1)
        sessions = {"dialsessions": {"dialsessions": [
            {"dialsession_id": 601, "start_when": started.isoformat(), "caller": {"name": "Sam"}},
        ]}}
        transport = FakeTransport({
            "/contacts": _pb_contacts(0),
            "/dialsession/601/calls": (200, {"calls": {"calls": []}}),
            "/dialsession/undated/calls": (200, {"calls": {"calls": []}}),
            "/dialsession": [(200, sessions), (200, EMPTY_SESSIONS)],
        })
        orchestrator = _orchestrator(session_factory, transport, sleep, clock)

        result = _run(orchestrator, platform="phoneburner", sync_type="incremental")

        assert result["done"] is True
        call_paths = [c["path"] for c in transport.calls if c["path"].endswith("/calls")]
        assert not any("/old" in path for path in call_paths)
        assert any(path.endswith("/dialsession/601/calls") for path in call_paths)
        assert any(path.endswith("/dialsession/undated/calls") for path in call_paths)

    def test_rerun_is_idempotent(self, session_factory, make_connection, clock, sleep):
        make_connection("phoneburner")
        transport = FakeTransport({
            "/contacts": _pb_contacts(120),
            "/dialsession": (200, EMPTY_SESSIONS),
        })
        orchestrator = _orchestrator(session_factory, transport, sleep, clock)

        assert _run(orchestrator, platform="phoneburner")["done"] is True
        second = _run(orchestrator, platform="phoneburner")

        assert second["done"] is True
        assert second["contacts_synced"] == 120
        session = session_factory()
        assert session.query(Lead).count() == 120
        session.close()


class TestSmartleadSync:

    def _transport(self):
        return FakeTransport({
            "/campaigns": (200, [{"id": 11, "name": "Founders", "status": "ACTIVE", "sent_count": 40, "reply_count": 3}]),
            "/campaigns/11/leads": (200, [
                {"id": 1, "email": "Ana@Acme.io", "first_name": "Ana"},
                {"id": 2, "email": "bo@globex.com", "first_name": "Bo"},
            ]),
            "/campaigns/11/statistics": (200, [
                {"lead_email": "ana@acme.io", "sequence_number": 1, "sent_time": "2024-06-01T10:00:00Z", "open_time": "2024-06-01T11:00:00Z"},
                {"lead_email": "bo@globex.com", "sequence_number": 1, "sent_time": "2024-06-01T10:00:00Z"},
                {"sequence_number": 2, "sent_time": "2024-06-02T10:00:00Z"},
            ]),
        })

    def test_full_sync_with_partial_page_failure(self, session_factory, make_connection, clock, sleep):
        make_connection("smartlead", api_key="sl-key")
        transport = self._transport()
        orchestrator = _orchestrator(session_factory, transport, sleep, clock)

        result = _run(orchestrator, platform="smartlead")

        assert result["done"] is True
        assert result["campaigns_synced"] == 1
        assert result["leads_synced"] == 2
        assert result["activities_synced"] == 2
        assert result["records_failed"] == 1
        assert transport.calls[0]["params"]["api_key"] == "sl-key"

        session = session_factory()
        ana = session.query(EmailActivity).filter(EmailActivity.to_email == "ana@acme.io").one()
        assert ana.sent is True
        assert ana.opened is True
        assert session.query(Contact).count() == 2
        assert {c.domain for c in session.query(Company).all()} == {"acme.io", "globex.com"}
        assert session.query(Lead).filter(Lead.email == "ana@acme.io").one().campaign_id is not None
        session.close()

    def test_campaign_reports_platform_stats(self, session_factory, make_connection, clock, sleep):
        make_connection("smartlead")
        _run(_orchestrator(session_factory, self._transport(), sleep, clock), platform="smartlead")

        session = session_factory()
        campaign = session.query(Campaign).one()
        assert campaign.reported_stats == {"sent_count": 40, "reply_count": 3}
        session.close()

    def test_sync_does_not_clear_webhook_flags(self, session_factory, make_connection, clock, sleep):
        make_connection("smartlead")
        orchestrator = _orchestrator(session_factory, self._transport(), sleep, clock)
        _run(orchestrator, platform="smartlead")

        session = session_factory()
        activity = session.query(EmailActivity).filter(EmailActivity.to_email == "bo@globex.com").one()
        activity.replied = True
        session.commit()
        session.close()

        _run(orchestrator, platform="smartlead")

        session = session_factory()
        activity = session.query(EmailActivity).filter(EmailActivity.to_email == "bo@globex.com").one()
        assert activity.replied is True
        session.close()

    def test_webhook_after_sync_still_moves_aggregates(self, session_factory, make_connection, clock, sleep):
        make_connection("smartlead")
        orchestrator = _orchestrator(session_factory, self._transport(), sleep, clock)
        _run(orchestrator, platform="smartlead")

        session = session_factory()
        sent = {
            "event_type": "EMAIL_SENT",
            "event_id": "e1",
            "campaign_id": 11,
            "email": "ana@acme.io",
            "event_timestamp": "2024-06-01T10:00:00Z",
        }
        result = WebhookIngestor(session, "smartlead").ingest(sent)
        # A second delivery of the same send under a new event id
        WebhookIngestor(session, "smartlead").ingest({**sent, "event_id": "e2"})
        session.close()

        assert result.status == IngestStatus.PROCESSED
        session = session_factory()
        campaign = session.query(Campaign).one()
        assert campaign.total_sent == 1
        daily = session.query(DailyMetric).all()
        assert len(daily) == 1
        assert daily[0].emails_sent == 1
        activity = session.query(EmailActivity).filter(EmailActivity.to_email == "ana@acme.io").one()
        assert activity.sent is True
        assert activity.sent_counted is True
        session.close()

    def test_completed_sync_reconciles_stored_webhooks(self, session_factory, make_connection, clock, sleep):
        make_connection("smartlead")
        session = session_factory()
        early = WebhookIngestor(session, "smartlead").ingest({
            "event_type": "EMAIL_REPLY",
            "event_id": "evt-early",
            "campaign_id": 11,
            "email": "ana@acme.io",
            "reply_text": "Sounds good",
            "category_name": "Interested",
        })
        session.close()
        assert early.status == IngestStatus.STORED

        orchestrator = _orchestrator(session_factory, self._transport(), sleep, clock)
        result = _run(orchestrator, platform="smartlead")

        assert result["webhooks_reconciled"]["processed"] == 1
        session = session_factory()
        assert session.query(WebhookEvent).one().processed is True
        campaign = session.query(Campaign).one()
        assert campaign.total_replied == 1
        assert campaign.positive_replies == 1
        session.close()

    def test_unknown_shape_fails_the_sync(self, session_factory, make_connection, clock, sleep):
        make_connection("smartlead", api_shape="v2")
        orchestrator = _orchestrator(session_factory, self._transport(), sleep, clock)

        result = _run(orchestrator, platform="smartlead")

        assert result["success"] is False
        assert result["error_kind"] == "shape"
        assert "does not match shape v2" in result["message"]
        assert result["retry_enqueued"] is False
        session = session_factory()
        assert session.query(SyncRetryQueue).count() == 0
        session.close()


class TestLocking:

    def test_held_lock_reports_already_syncing(self, session_factory, make_connection, clock, sleep):
        connection_id = make_connection(
            "phoneburner", sync_status="syncing", heartbeat_at=utcnow(), lock_token="someone-else",
        )
        transport = FakeTransport({})
        orchestrator = _orchestrator(session_factory, transport, sleep, clock)

        result = _run(orchestrator, platform="phoneburner")

        assert result == {
            "success": True,
            "done": False,
            "status": "already_syncing",
            "message": "A sync is already running for this connection",
        }
        assert transport.calls == []
        assert _connection(session_factory, connection_id).lock_token == "someone-else"

    def test_stale_lock_is_reclaimed(self, session_factory, make_connection, clock, sleep):
        make_connection(
            "phoneburner",
            sync_status="syncing",
            heartbeat_at=utcnow() - timedelta(minutes=10),
            lock_token="crashed",
        )
        transport = FakeTransport({"/contacts": _pb_contacts(3), "/dialsession": (200, EMPTY_SESSIONS)})
        orchestrator = _orchestrator(session_factory, transport, sleep, clock)

        result = _run(orchestrator, platform="phoneburner")

        assert result["done"] is True
        assert result["contacts_synced"] == 3

    def test_lock_lost_mid_sync_stops_writes(self, session_factory, make_connection, clock, sleep):
        connection_id = make_connection("phoneburner")

        def steal_lock(params):
            session = session_factory()
            connection = session.get(ApiConnection, connection_id)
            connection.lock_token = "thief"
            session.commit()
            session.close()
            return _pb_contacts(5)(params)

        transport = FakeTransport({"/contacts": steal_lock})
        orchestrator = _orchestrator(session_factory, transport, sleep, clock)

        result = _run(orchestrator, platform="phoneburner")

        assert result["status"] == "lock_lost"
        session = session_factory()
        # The page's upserts rolled back with the failed checkpoint write
        assert session.query(Lead).count() == 0
        assert session.get(ApiConnection, connection_id).lock_token == "thief"
        session.close()


class TestFailures:

    def test_auth_failure_is_not_retried(self, session_factory, make_connection, clock, sleep):
        connection_id = make_connection("replyio")
        transport = FakeTransport({"/v1/campaigns": (401, "invalid api key")})
        orchestrator = _orchestrator(session_factory, transport, sleep, clock)

        result = _run(orchestrator, platform="replyio")

        assert result["success"] is False
        assert result["error_kind"] == "auth"
        assert result["retry_enqueued"] is False
        assert len(transport.calls) == 1

        connection = _connection(session_factory, connection_id)
        assert connection.sync_status == "error"
        assert connection.lock_token is None
        assert "401" in connection.last_error

        session = session_factory()
        assert session.query(SyncRetryQueue).count() == 0
        session.close()

    def test_api_failure_enqueues_one_retry(self, session_factory, make_connection, clock, sleep):
        make_connection("replyio")
        transport = FakeTransport({"/v1/campaigns": (500, "upstream down")})
        orchestrator = _orchestrator(session_factory, transport, sleep, clock)

        first = _run(orchestrator, platform="replyio")
        second = _run(orchestrator, platform="replyio")

        assert first["retry_enqueued"] is True
        assert second["retry_enqueued"] is False
        session = session_factory()
        entry = session.query(SyncRetryQueue).one()
        assert entry.status == "pending"
        assert entry.error_kind == "orchestration"
        session.close()

    def test_retry_invocation_does_not_enqueue(self, session_factory, make_connection, clock, sleep):
        make_connection("replyio")
        transport = FakeTransport({"/v1/campaigns": (500, "upstream down")})
        orchestrator = _orchestrator(session_factory, transport, sleep, clock)

        result = _run(orchestrator, platform="replyio", is_retry=True)

        assert result["retry_enqueued"] is False

    def test_archived_sequence_404_is_empty(self, session_factory, make_connection, clock, sleep):
        make_connection("replyio")
        transport = FakeTransport({
            "/v1/campaigns": (200, [{"id": 71, "name": "Archived"}, {"id": 72, "name": "Live"}]),
            "/v1/campaigns/72/people": (200, {"people": [{"id": 5, "email": "kim@initech.com"}]}),
        })
        orchestrator = _orchestrator(session_factory, transport, sleep, clock)

        result = _run(orchestrator, platform="replyio")

        assert result["done"] is True
        assert result["campaigns_synced"] == 2
        assert result["leads_synced"] == 1

    def test_unknown_platform(self, session_factory, clock, sleep):
        orchestrator = _orchestrator(session_factory, FakeTransport(), sleep, clock)
        with pytest.raises(UnknownPlatform):
            _run(orchestrator, platform="myspace")

    def test_missing_connection(self, session_factory, clock, sleep):
        orchestrator = _orchestrator(session_factory, FakeTransport(), sleep, clock)
        with pytest.raises(ConnectionNotFound):
            _run(orchestrator, platform="smartlead")


class TestResetAndDiagnostic:

    def test_reset_deletes_platform_rows_and_restarts(self, session_factory, make_connection, clock, sleep):
        make_connection("phoneburner")
        session = session_factory()
        session.add(Lead(workspace_id=1, platform="phoneburner", external_id="gone"))
        session.add(Lead(workspace_id=1, platform="smartlead", external_id="kept"))
        session.add(Lead(workspace_id=2, platform="phoneburner", external_id="other-workspace"))
        session.commit()
        session.close()

        transport = FakeTransport({"/contacts": _pb_contacts(2), "/dialsession": (200, EMPTY_SESSIONS)})
        orchestrator = _orchestrator(session_factory, transport, sleep, clock)

        result = _run(orchestrator, platform="phoneburner", reset=True)

        assert result["done"] is True
        session = session_factory()
        external_ids = sorted(lead.external_id for lead in session.query(Lead).all())
        assert external_ids == ["1", "2", "kept", "other-workspace"]
        session.close()

    def test_diagnostic_reports_shapes_without_writing(self, session_factory, make_connection, clock, sleep):
        connection_id = make_connection("phoneburner")
        transport = FakeTransport({"/contacts": _pb_contacts(3), "/dialsession": (200, EMPTY_SESSIONS)})
        orchestrator = _orchestrator(session_factory, transport, sleep, clock)

        result = _run(orchestrator, platform="phoneburner", diagnostic=True)

        assert result["status"] == "diagnostic"
        steps = {s["step"]: s for s in result["diagnostic"]["steps"]}
        assert steps["contacts"]["matching_shapes"] == ["v1"]
        assert steps["dial_sessions"]["ok"] is True
        assert steps["session_calls"]["skipped"] is True

        connection = _connection(session_factory, connection_id)
        assert connection.sync_progress is None
        assert connection.sync_status == "idle"
        session = session_factory()
        assert session.query(Lead).count() == 0
        session.close()
