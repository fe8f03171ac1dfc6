"""
Connection setup endpoint
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from outreach_sync.models.base import get_db
from outreach_sync.services.connections import connection_status, upsert_connection
from outreach_sync.utils.exceptions import UnknownPlatform, UnknownShape

router = APIRouter(prefix="/connections", tags=["connections"])


class ConnectionRequest(BaseModel):
    api_key: str
    api_shape: Optional[str] = None
    is_active: bool = True


@router.put("/{workspace_id}/{platform}")
def put_connection(workspace_id: int, platform: str, body: ConnectionRequest, db: Session = Depends(get_db)):
    """Create or update a workspace's platform credentials"""
    try:
        connection = upsert_connection(
            db,
            workspace_id=workspace_id,
            platform=platform,
            api_key=body.api_key,
            api_shape=body.api_shape,
            is_active=body.is_active,
        )
    except UnknownPlatform as e:
        raise HTTPException(status_code=404, detail=str(e))
    except UnknownShape as e:
        raise HTTPException(status_code=422, detail=str(e))
    return connection_status(connection)
