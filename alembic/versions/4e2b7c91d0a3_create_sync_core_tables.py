"""create_sync_core_tables

Revision ID: 4e2b7c91d0a3
Revises:
Create Date: 2026-10-19

Connections, retry queue, raw webhook events and the outreach fact tables,
each with the natural key its upserts conflict on.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4e2b7c91d0a3'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime()),
        sa.Column('updated_at', sa.DateTime()),
    ]


def _metric_columns():
    return [
        sa.Column('emails_sent', sa.Integer(), default=0),
        sa.Column('emails_opened', sa.Integer(), default=0),
        sa.Column('emails_clicked', sa.Integer(), default=0),
        sa.Column('emails_replied', sa.Integer(), default=0),
        sa.Column('emails_bounced', sa.Integer(), default=0),
        sa.Column('emails_unsubscribed', sa.Integer(), default=0),
        sa.Column('positive_replies', sa.Integer(), default=0),
    ]


def upgrade() -> None:
    """Create every table the sync core writes."""
    op.create_table(
        'api_connections',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('workspace_id', sa.Integer(), nullable=False, index=True),
        sa.Column('platform', sa.String(), nullable=False, index=True),

        # Credentials
        sa.Column('api_key', sa.Text(), nullable=False),
        sa.Column('api_shape', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), index=True),

        # Sync state / advisory lock
        sa.Column('sync_status', sa.String(), index=True),
        sa.Column('sync_progress', sa.JSON(), nullable=True),
        sa.Column('heartbeat_at', sa.DateTime(), nullable=True),
        sa.Column('lock_token', sa.String(), nullable=True),
        sa.Column('last_sync_at', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('workspace_id', 'platform', name='uq_api_connections_workspace_platform'),
    )

    op.create_table(
        'sync_retry_queue',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('connection_id', sa.Integer(), sa.ForeignKey('api_connections.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('workspace_id', sa.Integer(), nullable=False, index=True),
        sa.Column('platform', sa.String(), nullable=False),
        sa.Column('sync_type', sa.String()),
        sa.Column('status', sa.String(), index=True),
        sa.Column('retry_count', sa.Integer(), default=0),
        sa.Column('max_retries', sa.Integer(), default=5),
        sa.Column('next_retry_at', sa.DateTime(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('error_kind', sa.String(), nullable=True),
        sa.Column('processing_started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_sync_retry_queue_due', 'sync_retry_queue', ['status', 'next_retry_at'])

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('source_type', sa.String(), nullable=False, index=True),
        sa.Column('event_type', sa.String(), nullable=True),
        sa.Column('event_id', sa.String(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('workspace_id', sa.Integer(), nullable=True, index=True),
        sa.Column('campaign_id', sa.Integer(), nullable=True),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('is_valid', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('processing_error', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), default=0),
        sa.Column('received_at', sa.DateTime(), index=True),
        sa.UniqueConstraint('source_type', 'event_id', name='uq_webhook_events_source_event'),
    )
    op.create_index('ix_webhook_events_unprocessed', 'webhook_events', ['processed', 'received_at'])

    op.create_table(
        'campaigns',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('workspace_id', sa.Integer(), nullable=False, index=True),
        sa.Column('platform', sa.String(), nullable=False, index=True),
        sa.Column('external_id', sa.String(), nullable=False, index=True),
        sa.Column('name', sa.String()),
        sa.Column('status', sa.String(), nullable=True),
        sa.Column('external_created_at', sa.DateTime(), nullable=True),

        # Rolling totals
        sa.Column('total_sent', sa.Integer(), default=0),
        sa.Column('total_opened', sa.Integer(), default=0),
        sa.Column('total_clicked', sa.Integer(), default=0),
        sa.Column('total_replied', sa.Integer(), default=0),
        sa.Column('total_bounced', sa.Integer(), default=0),
        sa.Column('total_unsubscribed', sa.Integer(), default=0),
        sa.Column('positive_replies', sa.Integer(), default=0),
        sa.Column('reported_stats', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('workspace_id', 'platform', 'external_id', name='uq_campaigns_natural_key'),
    )

    op.create_table(
        'leads',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('workspace_id', sa.Integer(), nullable=False, index=True),
        sa.Column('platform', sa.String(), nullable=False, index=True),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('campaign_id', sa.Integer(), sa.ForeignKey('campaigns.id', ondelete='SET NULL'), nullable=True, index=True),
        sa.Column('email', sa.String(), nullable=True, index=True),
        sa.Column('email_domain', sa.String(), nullable=True),
        sa.Column('first_name', sa.String(), nullable=True),
        sa.Column('last_name', sa.String(), nullable=True),
        sa.Column('company_name', sa.String(), nullable=True),
        sa.Column('title', sa.String(), nullable=True),
        sa.Column('phone', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=True),
        sa.Column('external_updated_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('workspace_id', 'platform', 'external_id', name='uq_leads_natural_key'),
    )

    op.create_table(
        'companies',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('workspace_id', sa.Integer(), nullable=False, index=True),
        sa.Column('domain', sa.String(), nullable=False),
        sa.Column('name', sa.String()),
        sa.Column('source', sa.String()),
        sa.Column('created_at', sa.DateTime()),
        sa.UniqueConstraint('workspace_id', 'domain', name='uq_companies_workspace_domain'),
    )

    op.create_table(
        'contacts',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('workspace_id', sa.Integer(), nullable=False, index=True),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id', ondelete='SET NULL'), nullable=True, index=True),
        sa.Column('first_name', sa.String(), nullable=True),
        sa.Column('last_name', sa.String(), nullable=True),
        sa.Column('unsubscribed', sa.Boolean(), default=False),
        sa.Column('source', sa.String()),
        *_timestamps(),
        sa.UniqueConstraint('workspace_id', 'email', name='uq_contacts_workspace_email'),
    )

    op.create_table(
        'email_activities',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('workspace_id', sa.Integer(), nullable=False, index=True),
        sa.Column('campaign_id', sa.Integer(), sa.ForeignKey('campaigns.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('contact_id', sa.Integer(), sa.ForeignKey('contacts.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('step_number', sa.Integer(), nullable=False),
        sa.Column('company_id', sa.Integer(), nullable=True),
        sa.Column('to_email', sa.String(), nullable=True),

        # Lifecycle flags
        sa.Column('sent', sa.Boolean(), default=False),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('opened', sa.Boolean(), default=False),
        sa.Column('first_opened_at', sa.DateTime(), nullable=True),
        sa.Column('open_count', sa.Integer(), default=0),
        sa.Column('clicked', sa.Boolean(), default=False),
        sa.Column('first_clicked_at', sa.DateTime(), nullable=True),
        sa.Column('click_count', sa.Integer(), default=0),
        sa.Column('clicked_url', sa.Text(), nullable=True),
        sa.Column('replied', sa.Boolean(), default=False),
        sa.Column('replied_at', sa.DateTime(), nullable=True),
        sa.Column('reply_text', sa.Text(), nullable=True),
        sa.Column('reply_category', sa.String(), nullable=True),
        sa.Column('reply_sentiment', sa.String(), nullable=True),
        sa.Column('bounced', sa.Boolean(), default=False),
        sa.Column('bounced_at', sa.DateTime(), nullable=True),
        sa.Column('bounce_type', sa.String(), nullable=True),
        sa.Column('bounce_reason', sa.Text(), nullable=True),
        sa.Column('unsubscribed', sa.Boolean(), default=False),
        sa.Column('unsubscribed_at', sa.DateTime(), nullable=True),
        sa.Column('sequence_finished', sa.Boolean(), default=False),
        sa.Column('finished_at', sa.DateTime(), nullable=True),

        # Set once the matching webhook has moved the aggregates
        sa.Column('sent_counted', sa.Boolean(), default=False),
        sa.Column('opened_counted', sa.Boolean(), default=False),
        sa.Column('clicked_counted', sa.Boolean(), default=False),
        sa.Column('replied_counted', sa.Boolean(), default=False),
        sa.Column('bounced_counted', sa.Boolean(), default=False),
        sa.Column('unsubscribed_counted', sa.Boolean(), default=False),
        *_timestamps(),
        sa.UniqueConstraint('workspace_id', 'campaign_id', 'contact_id', 'step_number', name='uq_email_activities_natural_key'),
    )

    op.create_table(
        'dial_sessions',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('workspace_id', sa.Integer(), nullable=False, index=True),
        sa.Column('platform', sa.String(), nullable=False, index=True),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('caller_name', sa.String(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True, index=True),
        sa.Column('ended_at', sa.DateTime(), nullable=True),
        sa.Column('call_count', sa.Integer(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('workspace_id', 'platform', 'external_id', name='uq_dial_sessions_natural_key'),
    )

    op.create_table(
        'call_activities',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('workspace_id', sa.Integer(), nullable=False, index=True),
        sa.Column('platform', sa.String(), nullable=False, index=True),
        sa.Column('external_event_id', sa.String(), nullable=False),
        sa.Column('dial_session_id', sa.Integer(), sa.ForeignKey('dial_sessions.id', ondelete='CASCADE'), nullable=True, index=True),
        sa.Column('lead_external_id', sa.String(), nullable=True),
        sa.Column('to_phone', sa.String(), nullable=True),
        sa.Column('caller_name', sa.String(), nullable=True),
        sa.Column('disposition', sa.String(), nullable=True),
        sa.Column('connected', sa.Boolean(), nullable=True),
        sa.Column('duration_seconds', sa.Float(), nullable=True),
        sa.Column('called_at', sa.DateTime(), nullable=True, index=True),
        sa.Column('recording_url', sa.Text(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('workspace_id', 'platform', 'external_event_id', name='uq_call_activities_natural_key'),
    )

    op.create_table(
        'hourly_metrics',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('workspace_id', sa.Integer(), nullable=False, index=True),
        sa.Column('campaign_id', sa.Integer(), sa.ForeignKey('campaigns.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('metric_date', sa.Date(), nullable=False),
        sa.Column('hour_of_day', sa.Integer(), nullable=False),
        sa.Column('day_of_week', sa.Integer(), nullable=False),
        *_metric_columns(),
        sa.UniqueConstraint('workspace_id', 'campaign_id', 'metric_date', 'hour_of_day', name='uq_hourly_metrics_natural_key'),
    )

    op.create_table(
        'daily_metrics',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('workspace_id', sa.Integer(), nullable=False, index=True),
        sa.Column('campaign_id', sa.Integer(), sa.ForeignKey('campaigns.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('metric_date', sa.Date(), nullable=False),
        *_metric_columns(),
        sa.UniqueConstraint('workspace_id', 'campaign_id', 'metric_date', name='uq_daily_metrics_natural_key'),
    )


def downgrade() -> None:
    """Drop the sync core tables, children first."""
    op.drop_table('daily_metrics')
    op.drop_table('hourly_metrics')
    op.drop_table('call_activities')
    op.drop_table('dial_sessions')
    op.drop_table('email_activities')
    op.drop_table('contacts')
    op.drop_table('companies')
    op.drop_table('leads')
    op.drop_table('campaigns')
    op.drop_index('ix_webhook_events_unprocessed', table_name='webhook_events')
    op.drop_table('webhook_events')
    op.drop_index('ix_sync_retry_queue_due', table_name='sync_retry_queue')
    op.drop_table('sync_retry_queue')
    op.drop_table('api_connections')
