"""
Sync trigger, status and recovery endpoints
"""
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from outreach_sync.api.dependencies import get_orchestrator
from outreach_sync.models.base import get_db
from outreach_sync.services.connections import workspace_status
from outreach_sync.services.sync_context import SyncRequest
from outreach_sync.services.sync_orchestrator import SyncOrchestrator
from outreach_sync.services.sync_recovery import SyncRecovery
from outreach_sync.utils.exceptions import ConnectionNotFound, UnknownPlatform
from outreach_sync.utils.logger import log

router = APIRouter(prefix="/sync", tags=["sync"])


class SyncTriggerRequest(BaseModel):
    workspace_id: int
    sync_type: Literal["full", "incremental"] = "full"
    reset: bool = False
    diagnostic: bool = False


class RecoverRequest(BaseModel):
    action: Literal["auto", "resume", "reset"] = "auto"
    platform: Optional[str] = None
    workspace_id: Optional[int] = None


@router.get("/status/{workspace_id}")
def get_sync_status(workspace_id: int, db: Session = Depends(get_db)):
    """Sync status and checkpoint for every connection in a workspace"""
    return {"workspace_id": workspace_id, "connections": workspace_status(db, workspace_id)}


@router.get("/stuck")
def get_stuck_syncs(
    platform: Optional[str] = Query(None),
    workspace_id: Optional[int] = Query(None),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Connections marked syncing with no sign of life past the stale threshold"""
    stuck = SyncRecovery(orchestrator, session_factory=orchestrator.session_factory).detect(platform, workspace_id)
    return {"count": len(stuck), "stuck": stuck}


@router.post("/recover")
async def recover_stuck_syncs(body: RecoverRequest, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Resume or reset stuck syncs"""
    recovery = SyncRecovery(orchestrator, session_factory=orchestrator.session_factory)
    return await recovery.recover(body.action, platform=body.platform, workspace_id=body.workspace_id)


@router.post("/{platform}")
async def trigger_sync(platform: str, body: SyncTriggerRequest, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """
    Run one time-boxed sync invocation.

    Callers keep calling while the response says done=false.
    """
    request = SyncRequest(
        workspace_id=body.workspace_id,
        platform=platform,
        sync_type=body.sync_type,
        reset=body.reset,
        diagnostic=body.diagnostic,
    )
    try:
        return await orchestrator.run(request)
    except (UnknownPlatform, ConnectionNotFound) as e:
        log.warning(f"Sync trigger rejected: {e}")
        raise HTTPException(status_code=404, detail=str(e))
