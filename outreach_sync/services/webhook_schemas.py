"""
Webhook payload schemas

Platform payloads are validated with pydantic and normalised to a
CanonicalEvent, which is all the ingestor's handlers ever see.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from outreach_sync.utils.helpers import parse_datetime, utcnow

# Canonical event kinds
SENT = "sent"
OPENED = "opened"
CLICKED = "clicked"
REPLIED = "replied"
BOUNCED = "bounced"
FINISHED = "finished"
UNSUBSCRIBED = "unsubscribed"
CATEGORY_UPDATED = "category_updated"

SMARTLEAD_EVENT_TYPES = {
    "EMAIL_SENT": SENT,
    "email_sent": SENT,
    "EMAIL_OPEN": OPENED,
    "email_opened": OPENED,
    "EMAIL_LINK_CLICK": CLICKED,
    "email_clicked": CLICKED,
    "EMAIL_REPLY": REPLIED,
    "email_replied": REPLIED,
    "EMAIL_BOUNCE": BOUNCED,
    "email_bounced": BOUNCED,
    "LEAD_UNSUBSCRIBED": UNSUBSCRIBED,
    "lead_unsubscribed": UNSUBSCRIBED,
    "LEAD_CATEGORY_UPDATED": CATEGORY_UPDATED,
    "lead_category_changed": CATEGORY_UPDATED,
}

REPLYIO_EVENT_TYPES = {
    "email_sent": SENT,
    "email_opened": OPENED,
    "email_clicked": CLICKED,
    "email_replied": REPLIED,
    "email_bounced": BOUNCED,
    "contact_finished": FINISHED,
    "contact_unsubscribed": UNSUBSCRIBED,
}

# Where each platform puts its external event id
EVENT_ID_FIELDS = {
    "smartlead": "event_id",
    "replyio": "eventId",
}


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def _check_email(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return None
    value = value.strip().lower()
    local, _, domain = value.partition("@")
    if not local or "." not in domain:
        raise ValueError("must be a valid email address")
    return value


@dataclass
class CanonicalEvent:
    source_type: str
    kind: Optional[str]  # None for event types we don't handle
    raw_type: str
    correlation_id: Optional[str]
    email: Optional[str]
    occurred_at: datetime
    step_number: int = 1
    link_url: Optional[str] = None
    reply_text: Optional[str] = None
    bounce_type: Optional[str] = None
    bounce_reason: Optional[str] = None
    category_name: Optional[str] = None


class SmartleadWebhookPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    event_type: str
    campaign_id: Optional[int] = None
    lead_id: Optional[int] = None
    email: Optional[str] = None
    event_timestamp: Optional[str] = None
    sequence_number: Optional[int] = None
    variant_id: Optional[str] = None
    link_url: Optional[str] = None
    reply_text: Optional[str] = None
    bounce_type: Optional[str] = None
    bounce_reason: Optional[str] = None
    category_id: Optional[int] = None
    category_name: Optional[str] = None
    event_id: Optional[str] = None

    @field_validator("event_id", "variant_id", mode="before")
    @classmethod
    def coerce_ids(cls, value):
        return _optional_str(value)

    @field_validator("email")
    @classmethod
    def check_email(cls, value):
        return _check_email(value)

    def to_canonical(self) -> CanonicalEvent:
        return CanonicalEvent(
            source_type="smartlead",
            kind=SMARTLEAD_EVENT_TYPES.get(self.event_type),
            raw_type=self.event_type,
            correlation_id=str(self.campaign_id) if self.campaign_id is not None else None,
            email=self.email,
            occurred_at=parse_datetime(self.event_timestamp) or utcnow(),
            step_number=self.sequence_number or 1,
            link_url=self.link_url,
            reply_text=self.reply_text[:10000] if self.reply_text else None,
            bounce_type=self.bounce_type,
            bounce_reason=self.bounce_reason[:1000] if self.bounce_reason else None,
            category_name=self.category_name,
        )


class ReplyioWebhookPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    eventType: str
    sequenceId: Optional[int] = None
    campaignId: Optional[int] = None
    personId: Optional[int] = None
    email: Optional[str] = None
    personEmail: Optional[str] = None
    timestamp: Optional[str] = None
    stepNumber: Optional[int] = None
    replyText: Optional[str] = None
    bounceType: Optional[str] = None
    bounceReason: Optional[str] = None
    clickedUrl: Optional[str] = None
    finishReason: Optional[str] = None
    status: Optional[str] = None
    eventId: Optional[str] = None

    @field_validator("eventId", mode="before")
    @classmethod
    def coerce_ids(cls, value):
        return _optional_str(value)

    @field_validator("email", "personEmail")
    @classmethod
    def check_email(cls, value):
        return _check_email(value)

    def to_canonical(self) -> CanonicalEvent:
        correlation = self.sequenceId if self.sequenceId is not None else self.campaignId
        return CanonicalEvent(
            source_type="replyio",
            kind=REPLYIO_EVENT_TYPES.get(self.eventType),
            raw_type=self.eventType,
            correlation_id=str(correlation) if correlation is not None else None,
            email=self.email or self.personEmail,
            occurred_at=parse_datetime(self.timestamp) or utcnow(),
            step_number=self.stepNumber or 1,
            link_url=self.clickedUrl,
            reply_text=self.replyText[:10000] if self.replyText else None,
            bounce_type=self.bounceType,
            bounce_reason=self.bounceReason[:1000] if self.bounceReason else None,
        )


PAYLOAD_MODELS = {
    "smartlead": SmartleadWebhookPayload,
    "replyio": ReplyioWebhookPayload,
}


def parse_event(source_type: str, payload: Dict[str, Any]) -> CanonicalEvent:
    """Validate a stored payload; raises pydantic.ValidationError"""
    return PAYLOAD_MODELS[source_type].model_validate(payload).to_canonical()


def raw_event_type(source_type: str, payload: Dict[str, Any]) -> Optional[str]:
    value = payload.get("event_type" if source_type == "smartlead" else "eventType")
    return str(value) if value is not None else None
