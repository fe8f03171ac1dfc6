"""
Domain fact tables populated by syncs and webhooks

Every table has a natural composite key that is the only conflict target
for upserts. Rows are never deleted by the sync path, only by an explicit
connection reset.
"""
from sqlalchemy import (
    Column, Integer, String, Float, DateTime, Date, JSON, Boolean, Text,
    ForeignKey, UniqueConstraint,
)

from outreach_sync.models.base import Base
from outreach_sync.utils.helpers import utcnow


class Campaign(Base):
    """Email campaign / sequence on an outreach platform"""
    __tablename__ = "campaigns"
    __table_args__ = (
        UniqueConstraint("workspace_id", "platform", "external_id", name="uq_campaigns_natural_key"),
    )

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, nullable=False, index=True)
    platform = Column(String, nullable=False, index=True)
    external_id = Column(String, nullable=False, index=True)  # webhook correlation id

    name = Column(String)
    status = Column(String, nullable=True)
    external_created_at = Column(DateTime, nullable=True)

    # Rolling totals, moved by webhook transitions
    total_sent = Column(Integer, default=0)
    total_opened = Column(Integer, default=0)
    total_clicked = Column(Integer, default=0)
    total_replied = Column(Integer, default=0)
    total_bounced = Column(Integer, default=0)
    total_unsubscribed = Column(Integer, default=0)
    positive_replies = Column(Integer, default=0)

    # Platform-reported stats (overwritten on every sync)
    reported_stats = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Lead(Base):
    """A person as known to one platform (campaign lead, sequence person, dialer contact)"""
    __tablename__ = "leads"
    __table_args__ = (
        UniqueConstraint("workspace_id", "platform", "external_id", name="uq_leads_natural_key"),
    )

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, nullable=False, index=True)
    platform = Column(String, nullable=False, index=True)
    external_id = Column(String, nullable=False)

    campaign_id = Column(Integer, ForeignKey("campaigns.id", ondelete="SET NULL"), nullable=True, index=True)
    email = Column(String, nullable=True, index=True)
    email_domain = Column(String, nullable=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    company_name = Column(String, nullable=True)
    title = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    status = Column(String, nullable=True)
    external_updated_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Company(Base):
    __tablename__ = "companies"
    __table_args__ = (
        UniqueConstraint("workspace_id", "domain", name="uq_companies_workspace_domain"),
    )

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, nullable=False, index=True)
    domain = Column(String, nullable=False)
    name = Column(String)
    source = Column(String, default="webhook")  # webhook, sync

    created_at = Column(DateTime, default=utcnow)


class Contact(Base):
    """Workspace-wide person record, keyed by email"""
    __tablename__ = "contacts"
    __table_args__ = (
        UniqueConstraint("workspace_id", "email", name="uq_contacts_workspace_email"),
    )

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, nullable=False, index=True)
    email = Column(String, nullable=False)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="SET NULL"), nullable=True, index=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    unsubscribed = Column(Boolean, default=False)
    source = Column(String, default="webhook")

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class EmailActivity(Base):
    """
    Per (campaign, contact, step) email lifecycle

    Boolean flags only ever move false -> true, raised by either the sync or
    a webhook. Aggregates follow the <flag>_counted markers instead, which
    only the webhook path sets, so an event is counted once whoever saw it
    first and replays can't double count.
    """
    __tablename__ = "email_activities"
    __table_args__ = (
        UniqueConstraint("workspace_id", "campaign_id", "contact_id", "step_number", name="uq_email_activities_natural_key"),
    )

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, nullable=False, index=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True)
    contact_id = Column(Integer, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False, index=True)
    step_number = Column(Integer, nullable=False, default=1)
    company_id = Column(Integer, nullable=True)
    to_email = Column(String, nullable=True)

    # Lifecycle flags
    sent = Column(Boolean, default=False)
    sent_at = Column(DateTime, nullable=True)
    opened = Column(Boolean, default=False)
    first_opened_at = Column(DateTime, nullable=True)
    open_count = Column(Integer, default=0)
    clicked = Column(Boolean, default=False)
    first_clicked_at = Column(DateTime, nullable=True)
    click_count = Column(Integer, default=0)
    clicked_url = Column(Text, nullable=True)
    replied = Column(Boolean, default=False)
    replied_at = Column(DateTime, nullable=True)
    reply_text = Column(Text, nullable=True)
    reply_category = Column(String, nullable=True)
    reply_sentiment = Column(String, nullable=True)  # positive, negative, neutral
    bounced = Column(Boolean, default=False)
    bounced_at = Column(DateTime, nullable=True)
    bounce_type = Column(String, nullable=True)
    bounce_reason = Column(Text, nullable=True)
    unsubscribed = Column(Boolean, default=False)
    unsubscribed_at = Column(DateTime, nullable=True)
    sequence_finished = Column(Boolean, default=False)
    finished_at = Column(DateTime, nullable=True)

    # Set once the matching webhook has moved the aggregates
    sent_counted = Column(Boolean, default=False)
    opened_counted = Column(Boolean, default=False)
    clicked_counted = Column(Boolean, default=False)
    replied_counted = Column(Boolean, default=False)
    bounced_counted = Column(Boolean, default=False)
    unsubscribed_counted = Column(Boolean, default=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class DialSession(Base):
    """Power-dialer session"""
    __tablename__ = "dial_sessions"
    __table_args__ = (
        UniqueConstraint("workspace_id", "platform", "external_id", name="uq_dial_sessions_natural_key"),
    )

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, nullable=False, index=True)
    platform = Column(String, nullable=False, index=True)
    external_id = Column(String, nullable=False)

    caller_name = Column(String, nullable=True)
    started_at = Column(DateTime, nullable=True, index=True)
    ended_at = Column(DateTime, nullable=True)
    call_count = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class CallActivity(Base):
    """Single dial within a session"""
    __tablename__ = "call_activities"
    __table_args__ = (
        UniqueConstraint("workspace_id", "platform", "external_event_id", name="uq_call_activities_natural_key"),
    )

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, nullable=False, index=True)
    platform = Column(String, nullable=False, index=True)
    external_event_id = Column(String, nullable=False)

    dial_session_id = Column(Integer, ForeignKey("dial_sessions.id", ondelete="CASCADE"), nullable=True, index=True)
    lead_external_id = Column(String, nullable=True)
    to_phone = Column(String, nullable=True)
    caller_name = Column(String, nullable=True)
    disposition = Column(String, nullable=True)
    connected = Column(Boolean, nullable=True)
    duration_seconds = Column(Float, nullable=True)
    called_at = Column(DateTime, nullable=True, index=True)
    recording_url = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class HourlyMetric(Base):
    """Per campaign per hour counters (send-time analysis)"""
    __tablename__ = "hourly_metrics"
    __table_args__ = (
        UniqueConstraint("workspace_id", "campaign_id", "metric_date", "hour_of_day", name="uq_hourly_metrics_natural_key"),
    )

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, nullable=False, index=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True)
    metric_date = Column(Date, nullable=False)
    hour_of_day = Column(Integer, nullable=False)  # 0-23 UTC
    day_of_week = Column(Integer, nullable=False)  # 0 = Monday

    emails_sent = Column(Integer, default=0)
    emails_opened = Column(Integer, default=0)
    emails_clicked = Column(Integer, default=0)
    emails_replied = Column(Integer, default=0)
    emails_bounced = Column(Integer, default=0)
    emails_unsubscribed = Column(Integer, default=0)
    positive_replies = Column(Integer, default=0)


class DailyMetric(Base):
    __tablename__ = "daily_metrics"
    __table_args__ = (
        UniqueConstraint("workspace_id", "campaign_id", "metric_date", name="uq_daily_metrics_natural_key"),
    )

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, nullable=False, index=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True)
    metric_date = Column(Date, nullable=False)

    emails_sent = Column(Integer, default=0)
    emails_opened = Column(Integer, default=0)
    emails_clicked = Column(Integer, default=0)
    emails_replied = Column(Integer, default=0)
    emails_bounced = Column(Integer, default=0)
    emails_unsubscribed = Column(Integer, default=0)
    positive_replies = Column(Integer, default=0)
