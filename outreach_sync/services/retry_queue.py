"""
Sync retry queue

Failed sync series are enqueued once and retried with exponential backoff
(base^retry_count * unit minutes) until they succeed or exhaust
max_retries. Entries are processed strictly one after another so a batch
never stampedes an upstream API that is already throttling us.
"""
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from outreach_sync.config import get_settings
from outreach_sync.models.base import SessionLocal
from outreach_sync.models.connection import SyncRetryQueue
from outreach_sync.services.sync_context import SyncRequest
from outreach_sync.utils.helpers import truncate, utcnow
from outreach_sync.utils.logger import log
from outreach_sync.utils.retry import queue_backoff

settings = get_settings()

OPEN_STATUSES = ("pending", "processing")

# Failures another attempt cannot fix without an operator (credentials, API shape)
PERMANENT_ERROR_KINDS = ("auth", "shape")


def compute_backoff(retry_count: int) -> timedelta:
    return queue_backoff(
        retry_count,
        base=settings.retry_backoff_base,
        unit_minutes=settings.retry_backoff_unit_minutes,
    )


def enqueue_retry(
    db: Session,
    connection_id: int,
    workspace_id: int,
    platform: str,
    error: str,
    error_kind: str = "orchestration",
    sync_type: str = "full",
    now=None,
) -> Optional[SyncRetryQueue]:
    """
    Enqueue a retry for a failed sync series.

    Returns None when the connection already has an open entry; one series
    gets one entry. The caller commits.
    """
    existing = db.query(SyncRetryQueue).filter(
        SyncRetryQueue.connection_id == connection_id,
        SyncRetryQueue.status.in_(OPEN_STATUSES),
    ).first()
    if existing:
        log.info(f"Retry already queued for connection {connection_id} (entry {existing.id})")
        return None

    now = now or utcnow()
    entry = SyncRetryQueue(
        connection_id=connection_id,
        workspace_id=workspace_id,
        platform=platform,
        sync_type=sync_type,
        status="pending",
        retry_count=0,
        max_retries=settings.retry_queue_max_retries,
        next_retry_at=now + compute_backoff(0),
        last_error=truncate(error),
        error_kind=error_kind,
    )
    db.add(entry)
    db.flush()
    log.info(f"Enqueued sync retry for {platform} connection {connection_id}, due {entry.next_retry_at}")
    return entry


def cancel_pending(db: Session, connection_id: int) -> int:
    """Cancel pending retries for a connection (on reset). The caller commits."""
    return db.query(SyncRetryQueue).filter(
        SyncRetryQueue.connection_id == connection_id,
        SyncRetryQueue.status == "pending",
    ).update({"status": "cancelled", "updated_at": utcnow()}, synchronize_session=False)


class RetryQueueProcessor:
    """
    Runs due retry entries through the standard sync entry point.

    run_sync receives a SyncRequest flagged is_retry and returns the sync
    result dict.
    """

    def __init__(
        self,
        run_sync: Callable[[SyncRequest], Awaitable[Dict[str, Any]]],
        session_factory=SessionLocal,
        now: Callable = utcnow,
    ):
        self.run_sync = run_sync
        self.session_factory = session_factory
        self.now = now

    async def process_due(self, batch_size: Optional[int] = None) -> Dict[str, Any]:
        batch_size = batch_size or settings.retry_queue_batch_size
        summary = {"processed": 0, "succeeded": 0, "failed": 0, "rescheduled": 0, "errors": []}

        db = self.session_factory()
        try:
            reclaimed = self._reclaim_stuck(db)
            if reclaimed:
                log.warning(f"Returned {reclaimed} stuck retry entries to pending")

            due = db.query(SyncRetryQueue).filter(
                SyncRetryQueue.status == "pending",
                SyncRetryQueue.next_retry_at <= self.now(),
            ).order_by(SyncRetryQueue.next_retry_at).limit(batch_size).all()

            if not due:
                log.info("No due sync retries")
                return summary

            for entry in due:
                if not self._claim(db, entry.id):
                    continue
                summary["processed"] += 1
                outcome = await self._process_entry(db, entry.id)
                if outcome["status"] == "completed":
                    summary["succeeded"] += 1
                elif outcome["status"] == "failed":
                    summary["failed"] += 1
                else:
                    summary["rescheduled"] += 1
                if outcome.get("error"):
                    summary["errors"].append({"entry_id": entry.id, "platform": entry.platform, "error": outcome["error"]})
        finally:
            db.close()

        log.info(
            f"Retry queue: {summary['processed']} processed, {summary['succeeded']} succeeded, "
            f"{summary['failed']} failed, {summary['rescheduled']} rescheduled"
        )
        return summary

    def _reclaim_stuck(self, db: Session) -> int:
        cutoff = self.now() - timedelta(minutes=settings.retry_processing_timeout_minutes)
        count = db.query(SyncRetryQueue).filter(
            SyncRetryQueue.status == "processing",
            SyncRetryQueue.processing_started_at < cutoff,
        ).update({"status": "pending", "processing_started_at": None}, synchronize_session=False)
        db.commit()
        return count

    def _claim(self, db: Session, entry_id: int) -> bool:
        """pending -> processing, only if nobody else got there first"""
        result = db.execute(
            update(SyncRetryQueue)
            .where(SyncRetryQueue.id == entry_id, SyncRetryQueue.status == "pending")
            .values(status="processing", processing_started_at=self.now(), updated_at=self.now())
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount == 1

    async def _process_entry(self, db: Session, entry_id: int) -> Dict[str, Any]:
        entry = db.get(SyncRetryQueue, entry_id)
        db.refresh(entry)
        log.info(f"Retrying {entry.platform} sync for workspace {entry.workspace_id} (attempt {entry.retry_count + 1}/{entry.max_retries})")

        request = SyncRequest(
            workspace_id=entry.workspace_id,
            platform=entry.platform,
            sync_type=entry.sync_type or "full",
            is_retry=True,
        )
        # No transaction may stay open while the sync runs on its own session
        db.commit()

        try:
            result = await self.run_sync(request)
        except Exception as e:
            log.error(f"Retry entry {entry.id} raised: {e}")
            result = {"success": False, "status": "error", "error_kind": "orchestration", "message": f"{type(e).__name__}: {e}"}

        entry = db.get(SyncRetryQueue, entry_id)
        now = self.now()
        if result.get("status") == "already_syncing":
            # Someone else is running this connection; check back later without burning an attempt
            entry.status = "pending"
            entry.next_retry_at = now + compute_backoff(0)
            entry.processing_started_at = None
            db.commit()
            return {"status": "pending"}

        if result.get("success"):
            entry.status = "completed"
            entry.completed_at = now
            entry.processing_started_at = None
            db.commit()
            log.info(f"Retry entry {entry.id} completed (done={result.get('done')})")
            return {"status": "completed"}

        error = result.get("message") or result.get("error") or "sync failed"
        entry.retry_count = (entry.retry_count or 0) + 1
        entry.last_error = truncate(error)
        entry.error_kind = result.get("error_kind")
        entry.processing_started_at = None

        if result.get("error_kind") in PERMANENT_ERROR_KINDS or entry.retry_count >= entry.max_retries:
            entry.status = "failed"
            entry.completed_at = now
            log.error(f"Retry entry {entry.id} failed permanently after {entry.retry_count} attempts: {error}")
        else:
            entry.status = "pending"
            entry.next_retry_at = now + compute_backoff(entry.retry_count)
            log.warning(f"Retry entry {entry.id} rescheduled for {entry.next_retry_at}: {error}")
        db.commit()
        return {"status": entry.status, "error": error}


def list_entries(db: Session, status: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
    query = db.query(SyncRetryQueue)
    if status:
        query = query.filter(SyncRetryQueue.status == status)
    entries = query.order_by(SyncRetryQueue.next_retry_at.desc()).limit(limit).all()
    return [
        {
            "id": e.id,
            "connection_id": e.connection_id,
            "workspace_id": e.workspace_id,
            "platform": e.platform,
            "status": e.status,
            "retry_count": e.retry_count,
            "max_retries": e.max_retries,
            "next_retry_at": e.next_retry_at.isoformat() if e.next_retry_at else None,
            "last_error": e.last_error,
            "error_kind": e.error_kind,
        }
        for e in entries
    ]
