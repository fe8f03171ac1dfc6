"""
Stuck sync detection and recovery

A connection is stuck when it says 'syncing' but nothing has touched it
for longer than the stale-lock threshold: either a live heartbeat went
stale (crashed invocation) or a time-boxed invocation yielded and nobody
called again.
"""
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from outreach_sync.config import get_settings
from outreach_sync.models.base import SessionLocal
from outreach_sync.models.connection import ApiConnection
from outreach_sync.services.sync_context import SyncCheckpoint, SyncRequest
from outreach_sync.services.sync_orchestrator import SyncOrchestrator
from outreach_sync.utils.helpers import parse_datetime, utcnow
from outreach_sync.utils.logger import log

settings = get_settings()

ACTIONS = ("auto", "resume", "reset")


def last_activity(connection: ApiConnection) -> Optional[datetime]:
    """Most recent sign of life: the live heartbeat, else the checkpoint's last one"""
    if connection.heartbeat_at is not None:
        return connection.heartbeat_at
    checkpoint = SyncCheckpoint.from_dict(connection.sync_progress)
    return parse_datetime(checkpoint.heartbeat) or connection.updated_at


def find_stuck(db: Session, now: datetime, stale_after: timedelta, platform: Optional[str] = None, workspace_id: Optional[int] = None) -> List[Dict[str, Any]]:
    query = db.query(ApiConnection).filter(ApiConnection.sync_status == "syncing")
    if platform:
        query = query.filter(ApiConnection.platform == platform)
    if workspace_id is not None:
        query = query.filter(ApiConnection.workspace_id == workspace_id)

    stuck = []
    for connection in query.order_by(ApiConnection.id).all():
        seen = last_activity(connection)
        if seen is not None and now - seen <= stale_after:
            continue
        checkpoint = SyncCheckpoint.from_dict(connection.sync_progress)
        stuck.append({
            "connection_id": connection.id,
            "workspace_id": connection.workspace_id,
            "platform": connection.platform,
            "step": checkpoint.step,
            "page": checkpoint.page,
            "last_activity": seen.isoformat() if seen else None,
            "stuck_minutes": round((now - seen).total_seconds() / 60, 1) if seen else None,
        })
    return stuck


class SyncRecovery:
    """Resume or reset stuck syncs"""

    def __init__(self, orchestrator: SyncOrchestrator, session_factory=SessionLocal, now: Callable[[], datetime] = utcnow):
        self.orchestrator = orchestrator
        self.session_factory = session_factory
        self.now = now

    def detect(self, platform: Optional[str] = None, workspace_id: Optional[int] = None) -> List[Dict[str, Any]]:
        db = self.session_factory()
        try:
            return find_stuck(db, self.now(), self.orchestrator.stale_after, platform, workspace_id)
        finally:
            db.close()

    async def recover(self, action: str = "auto", platform: Optional[str] = None, workspace_id: Optional[int] = None) -> Dict[str, Any]:
        if action not in ACTIONS:
            raise ValueError(f"Unknown recovery action: {action}")

        stuck = self.detect(platform, workspace_id)
        results = []
        for item in stuck:
            chosen = action
            if action == "auto":
                too_long = item["stuck_minutes"] is None or item["stuck_minutes"] > settings.recovery_reset_after_minutes
                chosen = "reset" if too_long else "resume"

            if chosen == "resume":
                outcome = await self._resume(item)
                if action == "auto" and not outcome.get("success"):
                    self._reset(item["connection_id"], f"auto-reset after failed resume: {outcome.get('message')}")
                    chosen = "reset"
            else:
                self._reset(item["connection_id"], f"stuck for {item['stuck_minutes']} minutes at {item['step']}")
                outcome = {"success": True}

            results.append({**item, "action": chosen, "result": outcome})

        if stuck:
            log.warning(f"Sync recovery ({action}): {[(r['platform'], r['workspace_id'], r['action']) for r in results]}")
        return {"stuck": len(stuck), "results": results}

    async def _resume(self, item: Dict[str, Any]) -> Dict[str, Any]:
        log.info(f"Resuming stuck {item['platform']} sync for workspace {item['workspace_id']} at {item['step']}")
        result = await self.orchestrator.run(SyncRequest(workspace_id=item["workspace_id"], platform=item["platform"]))
        return {key: result.get(key) for key in ("success", "done", "status", "message", "step")}

    def _reset(self, connection_id: int, reason: str):
        """Release the lock and mark the connection failed; the checkpoint is kept"""
        db = self.session_factory()
        try:
            connection = db.get(ApiConnection, connection_id)
            checkpoint = SyncCheckpoint.from_dict(connection.sync_progress)
            checkpoint.error_kind = "stuck"
            checkpoint.message = reason
            db.execute(
                update(ApiConnection)
                .where(ApiConnection.id == connection_id, ApiConnection.sync_status == "syncing")
                .values(
                    sync_status="error",
                    last_error=reason,
                    sync_progress=checkpoint.to_dict(),
                    heartbeat_at=None,
                    lock_token=None,
                    updated_at=self.now(),
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
            log.warning(f"Reset stuck connection {connection_id}: {reason}")
        finally:
            db.close()
