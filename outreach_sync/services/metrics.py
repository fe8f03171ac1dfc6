"""
Rolling campaign aggregates

All increments are single-statement atomic updates (UPDATE col = col + n,
or INSERT ... ON CONFLICT DO UPDATE for the bucketed tables), so concurrent
webhooks never lose a count. Callers only increment when they claim a
flag's counted marker on an activity.
"""
from datetime import datetime

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from outreach_sync.models.domain import Campaign, DailyMetric, HourlyMetric
from outreach_sync.services.upsert import dialect_insert

CAMPAIGN_COLUMNS = {
    "total_sent", "total_opened", "total_clicked", "total_replied",
    "total_bounced", "total_unsubscribed", "positive_replies",
}

BUCKET_COLUMNS = {
    "emails_sent", "emails_opened", "emails_clicked", "emails_replied",
    "emails_bounced", "emails_unsubscribed", "positive_replies",
}


def increment_campaign_metric(db: Session, campaign_id: int, column: str, amount: int = 1):
    if column not in CAMPAIGN_COLUMNS:
        raise ValueError(f"Unknown campaign metric: {column}")
    col = getattr(Campaign, column)
    db.execute(
        update(Campaign)
        .where(Campaign.id == campaign_id)
        .values({column: func.coalesce(col, 0) + amount})
        .execution_options(synchronize_session=False)
    )


def _increment_bucket(db: Session, model, keys: dict, column: str, amount: int):
    if column not in BUCKET_COLUMNS:
        raise ValueError(f"Unknown metric column: {column}")
    stmt = dialect_insert(db, model).values(**keys, **{column: amount})
    col = getattr(model, column)
    stmt = stmt.on_conflict_do_update(
        index_elements=list(_natural_key(model)),
        set_={column: func.coalesce(col, 0) + amount},
    )
    db.execute(stmt)


def _natural_key(model):
    if model is HourlyMetric:
        return ("workspace_id", "campaign_id", "metric_date", "hour_of_day")
    return ("workspace_id", "campaign_id", "metric_date")


def record_hourly_metric(db: Session, workspace_id: int, campaign_id: int, occurred_at: datetime, column: str, amount: int = 1):
    _increment_bucket(
        db,
        HourlyMetric,
        {
            "workspace_id": workspace_id,
            "campaign_id": campaign_id,
            "metric_date": occurred_at.date(),
            "hour_of_day": occurred_at.hour,
            "day_of_week": occurred_at.weekday(),
        },
        column,
        amount,
    )


def record_daily_metric(db: Session, workspace_id: int, campaign_id: int, occurred_at: datetime, column: str, amount: int = 1):
    _increment_bucket(
        db,
        DailyMetric,
        {
            "workspace_id": workspace_id,
            "campaign_id": campaign_id,
            "metric_date": occurred_at.date(),
        },
        column,
        amount,
    )


def record_event_metrics(db: Session, workspace_id: int, campaign_id: int, occurred_at: datetime, campaign_column: str, bucket_column: str):
    """Campaign total plus hourly and daily buckets for one transition"""
    increment_campaign_metric(db, campaign_id, campaign_column)
    record_hourly_metric(db, workspace_id, campaign_id, occurred_at, bucket_column)
    record_daily_metric(db, workspace_id, campaign_id, occurred_at, bucket_column)


def record_positive_reply(db: Session, workspace_id: int, campaign_id: int, occurred_at: datetime):
    increment_campaign_metric(db, campaign_id, "positive_replies")
    record_daily_metric(db, workspace_id, campaign_id, occurred_at, "positive_replies")
    record_hourly_metric(db, workspace_id, campaign_id, occurred_at, "positive_replies")
