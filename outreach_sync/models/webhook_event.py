"""
Raw inbound webhook events

Append-only. Stored before any interpretation so nothing is lost when the
handler throws; only the processing columns are ever updated.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Boolean, Text, UniqueConstraint, Index
from outreach_sync.utils.helpers import utcnow

from outreach_sync.models.base import Base


class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    __table_args__ = (
        UniqueConstraint("source_type", "event_id", name="uq_webhook_events_source_event"),
        Index("ix_webhook_events_unprocessed", "processed", "received_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    source_type = Column(String, nullable=False, index=True)  # smartlead, replyio
    event_type = Column(String, nullable=True)  # as sent by the platform
    event_id = Column(String, nullable=False)  # external id, or payload hash when absent
    payload = Column(JSON, nullable=False)

    # Resolution (filled once the correlation id maps to a campaign)
    workspace_id = Column(Integer, nullable=True, index=True)
    campaign_id = Column(Integer, nullable=True)

    # Processing
    processed = Column(Boolean, default=False, nullable=False)
    processed_at = Column(DateTime, nullable=True)
    is_valid = Column(Boolean, default=True, nullable=False)  # false once payload validation fails
    processing_error = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0)

    received_at = Column(DateTime, default=utcnow, index=True)
