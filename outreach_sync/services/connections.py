"""
Connection setup and status
"""
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from outreach_sync.connectors import get_connector
from outreach_sync.models.connection import ApiConnection
from outreach_sync.utils.logger import log


def upsert_connection(
    db: Session,
    workspace_id: int,
    platform: str,
    api_key: str,
    api_shape: Optional[str] = None,
    is_active: bool = True,
) -> ApiConnection:
    """
    Create or update the (workspace, platform) connection.

    Raises UnknownPlatform / UnknownShape for values no connector supports.
    """
    connector = get_connector(platform)
    if api_shape is not None:
        connector.shape_for(api_shape)

    connection = db.query(ApiConnection).filter(
        ApiConnection.workspace_id == workspace_id,
        ApiConnection.platform == platform,
    ).first()
    if connection is None:
        connection = ApiConnection(workspace_id=workspace_id, platform=platform, sync_status="idle")
        db.add(connection)
        log.info(f"Created {platform} connection for workspace {workspace_id}")

    connection.api_key = api_key
    connection.api_shape = api_shape
    connection.is_active = is_active
    db.commit()
    db.refresh(connection)
    return connection


def connection_status(connection: ApiConnection) -> Dict[str, Any]:
    return {
        "id": connection.id,
        "workspace_id": connection.workspace_id,
        "platform": connection.platform,
        "api_shape": connection.api_shape,
        "is_active": connection.is_active,
        "sync_status": connection.sync_status,
        "sync_progress": connection.sync_progress,
        "last_sync_at": connection.last_sync_at.isoformat() if connection.last_sync_at else None,
        "last_error": connection.last_error,
    }


def workspace_status(db: Session, workspace_id: int) -> List[Dict[str, Any]]:
    connections = db.query(ApiConnection).filter(
        ApiConnection.workspace_id == workspace_id
    ).order_by(ApiConnection.platform).all()
    return [connection_status(c) for c in connections]
