"""
Retry queue endpoints
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from outreach_sync.api.dependencies import get_orchestrator
from outreach_sync.models.base import get_db
from outreach_sync.services.retry_queue import RetryQueueProcessor, list_entries
from outreach_sync.services.sync_orchestrator import SyncOrchestrator

router = APIRouter(prefix="/retry-queue", tags=["retry-queue"])


@router.post("/process")
async def process_retry_queue(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Process due retry entries (also runs on the scheduler)"""
    processor = RetryQueueProcessor(orchestrator.run, session_factory=orchestrator.session_factory)
    return await processor.process_due()


@router.get("")
def get_retry_queue(
    status: Optional[str] = Query(None, description="pending, processing, completed, failed, cancelled"),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    entries = list_entries(db, status=status, limit=limit)
    return {"count": len(entries), "entries": entries}
