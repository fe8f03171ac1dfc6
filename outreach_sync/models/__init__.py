"""
Database models
"""
from outreach_sync.models.base import Base, SessionLocal, engine, get_db, init_db
from outreach_sync.models.connection import ApiConnection, SyncRetryQueue
from outreach_sync.models.webhook_event import WebhookEvent
from outreach_sync.models.domain import (
    Campaign, Lead, Company, Contact, EmailActivity,
    DialSession, CallActivity, HourlyMetric, DailyMetric,
)

__all__ = [
    "Base",
    "SessionLocal",
    "engine",
    "get_db",
    "init_db",
    "ApiConnection",
    "SyncRetryQueue",
    "WebhookEvent",
    "Campaign",
    "Lead",
    "Company",
    "Contact",
    "EmailActivity",
    "DialSession",
    "CallActivity",
    "HourlyMetric",
    "DailyMetric",
]
