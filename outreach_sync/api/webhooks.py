"""
Webhook receivers

Respond 2xx once the raw event is stored, whatever happens to it after;
5xx only when it could not be stored or its handler failed, so the
platform redelivers.
"""
import json
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from outreach_sync.models.base import get_db
from outreach_sync.services.reply_classifier import request_classification
from outreach_sync.services.webhook_ingestor import IngestStatus, WebhookIngestor, reconcile_unprocessed
from outreach_sync.services.webhook_validation import SIGNATURE_HEADERS, verify_signature, webhook_secret
from outreach_sync.utils.logger import log

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def _receive(source_type: str, request: Request, background_tasks: BackgroundTasks, db: Session):
    body = await request.body()

    check = verify_signature(body, request.headers.get(SIGNATURE_HEADERS[source_type]), webhook_secret(source_type))
    if not check.valid:
        log.error(f"{source_type} webhook rejected: {check.error}")
        raise HTTPException(status_code=401, detail="Unauthorized")
    if check.warning:
        log.warning(f"{source_type} webhook: {check.warning}")

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Body must be JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")

    try:
        result = WebhookIngestor(db, source_type).ingest(payload)
    except SQLAlchemyError as e:
        db.rollback()
        log.error(f"{source_type} webhook could not be stored: {e}")
        raise HTTPException(status_code=500, detail="Event could not be stored")

    if result.status == IngestStatus.FAILED:
        return JSONResponse(status_code=500, content=result.to_dict())

    if result.classify_activity_ids:
        background_tasks.add_task(request_classification, result.classify_activity_ids)
    return result.to_dict()


@router.post("/smartlead")
async def smartlead_webhook(request: Request, background_tasks: BackgroundTasks, db: Session = Depends(get_db)):
    """Smartlead webhook receiver"""
    return await _receive("smartlead", request, background_tasks, db)


@router.post("/replyio")
async def replyio_webhook(request: Request, background_tasks: BackgroundTasks, db: Session = Depends(get_db)):
    """Reply.io webhook receiver"""
    return await _receive("replyio", request, background_tasks, db)


@router.post("/reconcile")
def reconcile_webhooks(
    source_type: Optional[str] = Query(None, description="smartlead or replyio; all sources when omitted"),
    limit: Optional[int] = Query(None, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    """Replay stored events that were never applied"""
    if source_type is not None and source_type not in SIGNATURE_HEADERS:
        raise HTTPException(status_code=404, detail=f"Unknown webhook source: {source_type}")
    return reconcile_unprocessed(db, source_type=source_type, limit=limit)
