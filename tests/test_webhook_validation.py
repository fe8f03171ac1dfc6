"""
Tests for webhook signature checks and payload normalisation.
"""
import pytest
from pydantic import ValidationError

from outreach_sync.services.reply_classifier import map_category
from outreach_sync.services.webhook_schemas import CLICKED, FINISHED, REPLIED, parse_event
from outreach_sync.services.webhook_validation import sign, verify_signature

BODY = b'{"event_type": "EMAIL_SENT"}'


class TestSignature:

    def test_no_secret_passes_with_warning(self):
        check = verify_signature(BODY, None, None)
        assert check.valid is True
        assert check.warning

    def test_matching_signature(self):
        assert verify_signature(BODY, sign(BODY, "s3cret"), "s3cret").valid is True

    def test_prefixed_and_uppercase_signature(self):
        signature = "sha256=" + sign(BODY, "s3cret").upper()
        assert verify_signature(BODY, signature, "s3cret").valid is True

    def test_tampered_body(self):
        check = verify_signature(BODY + b" ", sign(BODY, "s3cret"), "s3cret")
        assert check.valid is False
        assert check.error == "signature mismatch"

    def test_missing_signature(self):
        assert verify_signature(BODY, "", "s3cret").valid is False


class TestPayloads:

    def test_smartlead_click(self):
        event = parse_event("smartlead", {
            "event_type": "EMAIL_LINK_CLICK",
            "campaign_id": 11,
            "email": " Ana@Acme.io ",
            "sequence_number": 2,
            "link_url": "https://acme.io",
            "event_timestamp": "2024-06-03T14:25:00+02:00",
        })
        assert event.kind == CLICKED
        assert event.correlation_id == "11"
        assert event.email == "ana@acme.io"
        assert event.step_number == 2
        assert event.occurred_at.hour == 12

    def test_replyio_prefers_sequence_id(self):
        event = parse_event("replyio", {"eventType": "email_replied", "sequenceId": 5, "campaignId": 9, "email": "kim@initech.com"})
        assert event.kind == REPLIED
        assert event.correlation_id == "5"

    def test_replyio_finished(self):
        event = parse_event("replyio", {"eventType": "contact_finished", "campaignId": 9, "email": "kim@initech.com"})
        assert event.kind == FINISHED
        assert event.correlation_id == "9"

    def test_unknown_type_has_no_kind(self):
        event = parse_event("smartlead", {"event_type": "SOMETHING_NEW", "campaign_id": 1})
        assert event.kind is None
        assert event.raw_type == "SOMETHING_NEW"

    def test_bad_email_is_rejected(self):
        with pytest.raises(ValidationError):
            parse_event("smartlead", {"event_type": "EMAIL_SENT", "email": "nobody"})


class TestCategoryMapping:

    def test_known_categories(self):
        assert map_category("Interested") == ("interested", "positive")
        assert map_category("Out of Office") == ("out_of_office", "neutral")

    def test_keyword_fallback(self):
        assert map_category("Not interested right now") == ("not_interested", "negative")
        assert map_category("Booked a demo") == ("meeting_request", "positive")

    def test_empty(self):
        assert map_category(None) == (None, None)
