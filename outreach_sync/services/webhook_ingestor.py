"""
Webhook Event Ingestor

ingest -> persist -> validate -> resolve -> dispatch, each stage returning
an explicit outcome. The raw event is committed before anything else looks
at it, so a failing handler leaves a row that a later replay (redelivery or
reconciliation) can pick up. The handler's writes, the aggregate updates and
the processed flag commit together; a replay after a failure starts from a
clean slate.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy import func, or_, update
from sqlalchemy.orm import Session

from outreach_sync.config import get_settings
from outreach_sync.models.domain import Campaign, Contact, EmailActivity
from outreach_sync.models.webhook_event import WebhookEvent
from outreach_sync.services import metrics
from outreach_sync.services.contacts import get_or_create_contact
from outreach_sync.services.reply_classifier import map_category
from outreach_sync.services.upsert import insert_if_missing
from outreach_sync.services.webhook_schemas import (
    BOUNCED, CATEGORY_UPDATED, CLICKED, EVENT_ID_FIELDS, FINISHED, OPENED,
    REPLIED, SENT, UNSUBSCRIBED, CanonicalEvent, parse_event, raw_event_type,
)
from outreach_sync.utils.helpers import hash_data, truncate, utcnow
from outreach_sync.utils.logger import log

settings = get_settings()


class IngestStatus(str, Enum):
    PROCESSED = "processed"
    STORED = "stored"  # unresolved correlation id, kept for reconciliation
    DUPLICATE = "duplicate"
    INVALID = "invalid"
    IGNORED = "ignored"  # valid but nothing to apply (unknown type, no email)
    FAILED = "failed"  # handler threw; raw event kept unprocessed


@dataclass
class IngestResult:
    status: IngestStatus
    event_row_id: Optional[int] = None
    event_kind: Optional[str] = None
    message: Optional[str] = None
    # Reply activities that still need a category from the classifier
    classify_activity_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "event_id": self.event_row_id,
            "event_kind": self.event_kind,
            "message": self.message,
        }


def _plus_one(column):
    return func.coalesce(column, 0) + 1


def external_event_id(source_type: str, payload: Dict[str, Any]) -> str:
    """Platform event id, or a stable hash of the payload when it has none"""
    value = payload.get(EVENT_ID_FIELDS[source_type])
    if value not in (None, ""):
        return str(value)
    return f"sha256:{hash_data(payload)}"


class WebhookIngestor:
    """Applies one source's webhook events using the caller's session"""

    def __init__(self, db: Session, source_type: str, now: Callable[[], datetime] = utcnow):
        if source_type not in EVENT_ID_FIELDS:
            raise ValueError(f"Unknown webhook source: {source_type}")
        self.db = db
        self.source_type = source_type
        self.now = now

    def ingest(self, payload: Dict[str, Any]) -> IngestResult:
        """
        Store and apply one inbound event.

        Only a failure to store the raw event raises; everything after that
        is reported through the returned IngestResult.
        """
        event_row, created = self._persist(payload)
        if not created and event_row.processed:
            log.info(f"{self.source_type} webhook {event_row.event_id} already processed")
            return IngestResult(IngestStatus.DUPLICATE, event_row.id, message="already processed")
        if not created:
            log.info(f"{self.source_type} webhook {event_row.event_id} redelivered, replaying")
        return self.process(event_row)

    def _persist(self, payload: Dict[str, Any]):
        event_id = external_event_id(self.source_type, payload)
        created = insert_if_missing(
            self.db,
            WebhookEvent,
            {
                "source_type": self.source_type,
                "event_type": raw_event_type(self.source_type, payload),
                "event_id": event_id,
                "payload": payload,
                "processed": False,
                "received_at": self.now(),
            },
            ["source_type", "event_id"],
        )
        self.db.commit()
        event_row = self.db.query(WebhookEvent).filter(
            WebhookEvent.source_type == self.source_type,
            WebhookEvent.event_id == event_id,
        ).one()
        return event_row, created

    def process(self, event_row: WebhookEvent) -> IngestResult:
        """Validate, resolve and apply a stored event that is not yet processed"""
        try:
            event = parse_event(self.source_type, event_row.payload)
        except ValidationError as e:
            event_row.is_valid = False
            event_row.processing_error = truncate(f"invalid payload: {e}", 2000)
            self.db.commit()
            log.warning(f"{self.source_type} webhook {event_row.id} failed validation: {e.error_count()} errors")
            return IngestResult(IngestStatus.INVALID, event_row.id, message="invalid payload")

        if event.kind is None:
            self._mark_processed(event_row, note=f"unhandled event type {event.raw_type}")
            self.db.commit()
            log.info(f"{self.source_type} webhook {event_row.id}: unhandled type {event.raw_type}")
            return IngestResult(IngestStatus.IGNORED, event_row.id, message=f"unhandled event type {event.raw_type}")

        campaign = self._resolve(event)
        if campaign is None:
            self.db.commit()
            log.info(f"{self.source_type} webhook {event_row.id}: campaign {event.correlation_id} not found, stored for later")
            return IngestResult(IngestStatus.STORED, event_row.id, event.kind, message="campaign not found, stored for later processing")

        event_row_id = event_row.id
        try:
            result = self._dispatch(event_row, event, campaign)
            if not self._mark_processed(event_row, campaign=campaign, note=result.message if result.status == IngestStatus.IGNORED else None):
                # Another delivery of the same event got there first
                self.db.rollback()
                return IngestResult(IngestStatus.DUPLICATE, event_row_id, event.kind, message="processed concurrently")
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            self._record_failure(event_row_id, e)
            log.error(f"{self.source_type} webhook {event_row_id} ({event.kind}) failed: {type(e).__name__}: {e}")
            return IngestResult(IngestStatus.FAILED, event_row_id, event.kind, message=f"{type(e).__name__}: {e}")

        log.info(f"Processed {self.source_type} {event.kind} for campaign {campaign.id}")
        return result

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _resolve(self, event: CanonicalEvent) -> Optional[Campaign]:
        if not event.correlation_id:
            return None
        return self.db.query(Campaign).filter(
            Campaign.platform == self.source_type,
            Campaign.external_id == event.correlation_id,
        ).order_by(Campaign.id).first()

    def _mark_processed(self, event_row: WebhookEvent, campaign: Optional[Campaign] = None, note: Optional[str] = None) -> bool:
        values = {"processed": True, "processed_at": self.now(), "processing_error": note}
        if campaign is not None:
            values.update(workspace_id=campaign.workspace_id, campaign_id=campaign.id)
        result = self.db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == event_row.id, WebhookEvent.processed.is_(False))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _record_failure(self, event_row_id: int, error: Exception):
        self.db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == event_row_id)
            .values(
                processing_error=truncate(f"{type(error).__name__}: {error}", 2000),
                retry_count=_plus_one(WebhookEvent.retry_count),
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

    def _dispatch(self, event_row: WebhookEvent, event: CanonicalEvent, campaign: Campaign) -> IngestResult:
        if not event.email:
            return IngestResult(IngestStatus.IGNORED, event_row.id, event.kind, message="event has no email")

        contact = get_or_create_contact(self.db, campaign.workspace_id, event.email)
        activity_id = self._ensure_activity(campaign, contact, event)
        handler = HANDLERS[event.kind]
        result = IngestResult(IngestStatus.PROCESSED, event_row.id, event.kind)
        handler(self, campaign, contact, activity_id, event, result)
        return result

    def _ensure_activity(self, campaign: Campaign, contact: Contact, event: CanonicalEvent) -> int:
        key = {
            "workspace_id": campaign.workspace_id,
            "campaign_id": campaign.id,
            "contact_id": contact.id,
            "step_number": event.step_number,
        }
        insert_if_missing(
            self.db,
            EmailActivity,
            {**key, "company_id": contact.company_id, "to_email": contact.email},
            list(key),
        )
        return self.db.query(EmailActivity.id).filter_by(**key).scalar()

    def _raise_flag(self, activity_id: int, flag: str, **values) -> bool:
        """Set a lifecycle flag and its first-seen values, unless already set"""
        column = getattr(EmailActivity, flag)
        result = self.db.execute(
            update(EmailActivity)
            .where(EmailActivity.id == activity_id, or_(column.is_(None), column.is_(False)))
            .values({flag: True, "updated_at": self.now(), **values})
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _transition(self, activity_id: int, flag: str, **values) -> bool:
        """
        Raise a lifecycle flag and claim its aggregate count.

        The flag may already be set by a sync; counting goes by the
        <flag>_counted marker, so True only for the first webhook that
        applies this flag to the activity.
        """
        self._raise_flag(activity_id, flag, **values)
        marker = f"{flag}_counted"
        column = getattr(EmailActivity, marker)
        result = self.db.execute(
            update(EmailActivity)
            .where(EmailActivity.id == activity_id, or_(column.is_(None), column.is_(False)))
            .values({marker: True})
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _update_activity(self, activity_id: int, **values):
        self.db.execute(
            update(EmailActivity)
            .where(EmailActivity.id == activity_id)
            .values(updated_at=self.now(), **values)
            .execution_options(synchronize_session=False)
        )

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _handle_sent(self, campaign, contact, activity_id, event, result):
        if self._transition(activity_id, "sent", sent_at=event.occurred_at):
            metrics.record_event_metrics(self.db, campaign.workspace_id, campaign.id, event.occurred_at, "total_sent", "emails_sent")

    def _handle_opened(self, campaign, contact, activity_id, event, result):
        self._update_activity(activity_id, open_count=_plus_one(EmailActivity.open_count))
        if self._transition(activity_id, "opened", first_opened_at=event.occurred_at):
            metrics.record_event_metrics(self.db, campaign.workspace_id, campaign.id, event.occurred_at, "total_opened", "emails_opened")

    def _handle_clicked(self, campaign, contact, activity_id, event, result):
        values = {"click_count": _plus_one(EmailActivity.click_count)}
        if event.link_url:
            values["clicked_url"] = event.link_url
        self._update_activity(activity_id, **values)
        if self._transition(activity_id, "clicked", first_clicked_at=event.occurred_at):
            metrics.record_event_metrics(self.db, campaign.workspace_id, campaign.id, event.occurred_at, "total_clicked", "emails_clicked")

    def _handle_replied(self, campaign, contact, activity_id, event, result):
        category, sentiment = map_category(event.category_name)
        values = {"replied_at": event.occurred_at, "reply_text": event.reply_text}
        if category:
            values.update(reply_category=category, reply_sentiment=sentiment)
        if self._transition(activity_id, "replied", **values):
            # A sync may have raised the flag first without the reply body
            details = {k: v for k, v in values.items() if k != "replied_at" and v is not None}
            if details:
                self._update_activity(activity_id, **details)
            metrics.record_event_metrics(self.db, campaign.workspace_id, campaign.id, event.occurred_at, "total_replied", "emails_replied")
            if sentiment == "positive":
                metrics.record_positive_reply(self.db, campaign.workspace_id, campaign.id, event.occurred_at)
        if not category:
            result.classify_activity_ids.append(activity_id)

    def _handle_bounced(self, campaign, contact, activity_id, event, result):
        if self._transition(activity_id, "bounced", bounced_at=event.occurred_at, bounce_type=event.bounce_type, bounce_reason=event.bounce_reason):
            metrics.record_event_metrics(self.db, campaign.workspace_id, campaign.id, event.occurred_at, "total_bounced", "emails_bounced")

    def _handle_unsubscribed(self, campaign, contact, activity_id, event, result):
        self.db.execute(
            update(Contact)
            .where(Contact.id == contact.id)
            .values(unsubscribed=True, updated_at=self.now())
            .execution_options(synchronize_session=False)
        )
        if self._transition(activity_id, "unsubscribed", unsubscribed_at=event.occurred_at):
            metrics.record_event_metrics(self.db, campaign.workspace_id, campaign.id, event.occurred_at, "total_unsubscribed", "emails_unsubscribed")

    def _handle_finished(self, campaign, contact, activity_id, event, result):
        self._raise_flag(activity_id, "sequence_finished", finished_at=event.occurred_at)

    def _handle_category_updated(self, campaign, contact, activity_id, event, result):
        category, sentiment = map_category(event.category_name)
        if not category:
            result.status = IngestStatus.IGNORED
            result.message = "category update without a category name"
            return

        # The category belongs to the latest reply from this contact in the campaign
        replied = self.db.query(EmailActivity.id).filter(
            EmailActivity.campaign_id == campaign.id,
            EmailActivity.contact_id == contact.id,
            EmailActivity.replied.is_(True),
        ).order_by(EmailActivity.step_number.desc()).first()
        target_id = replied.id if replied else activity_id

        became_positive = False
        if sentiment == "positive":
            became_positive = self.db.execute(
                update(EmailActivity)
                .where(
                    EmailActivity.id == target_id,
                    or_(EmailActivity.reply_sentiment.is_(None), EmailActivity.reply_sentiment != "positive"),
                )
                .values(reply_category=category, reply_sentiment=sentiment, updated_at=self.now())
                .execution_options(synchronize_session=False)
            ).rowcount == 1
        self._update_activity(target_id, reply_category=category, reply_sentiment=sentiment)
        if became_positive:
            metrics.record_positive_reply(self.db, campaign.workspace_id, campaign.id, event.occurred_at)


HANDLERS = {
    SENT: WebhookIngestor._handle_sent,
    OPENED: WebhookIngestor._handle_opened,
    CLICKED: WebhookIngestor._handle_clicked,
    REPLIED: WebhookIngestor._handle_replied,
    BOUNCED: WebhookIngestor._handle_bounced,
    UNSUBSCRIBED: WebhookIngestor._handle_unsubscribed,
    FINISHED: WebhookIngestor._handle_finished,
    CATEGORY_UPDATED: WebhookIngestor._handle_category_updated,
}


def reconcile_unprocessed(db: Session, source_type: Optional[str] = None, limit: Optional[int] = None) -> Dict[str, int]:
    """
    Replay stored events that were never applied, oldest first.

    Picks up events whose campaign was unknown when they arrived and
    events whose handler failed.
    """
    limit = limit or settings.webhook_reconcile_batch_size
    query = db.query(WebhookEvent.id, WebhookEvent.source_type).filter(
        WebhookEvent.processed.is_(False),
        WebhookEvent.is_valid.is_(True),
    )
    if source_type:
        query = query.filter(WebhookEvent.source_type == source_type)
    pending = query.order_by(WebhookEvent.received_at, WebhookEvent.id).limit(limit).all()
    db.commit()

    summary = {"examined": len(pending), "processed": 0, "unresolved": 0, "failed": 0, "other": 0}
    for event_id, event_source in pending:
        event_row = db.get(WebhookEvent, event_id)
        if event_row is None or event_row.processed:
            continue
        result = WebhookIngestor(db, event_source).process(event_row)
        if result.status in (IngestStatus.PROCESSED, IngestStatus.IGNORED):
            summary["processed"] += 1
        elif result.status == IngestStatus.STORED:
            summary["unresolved"] += 1
        elif result.status == IngestStatus.FAILED:
            summary["failed"] += 1
        else:
            summary["other"] += 1

    if pending:
        log.info(f"Webhook reconciliation{f' ({source_type})' if source_type else ''}: {summary}")
    return summary
