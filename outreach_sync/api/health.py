"""
Health check and status endpoints
"""
from fastapi import APIRouter

from outreach_sync import __version__
from outreach_sync.config import get_settings
from outreach_sync.connectors import CONNECTORS
from outreach_sync.utils.helpers import utcnow

settings = get_settings()

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "version": __version__
    }


@router.get("/status")
async def get_status():
    """Get system status"""
    return {
        "app_name": settings.app_name,
        "version": __version__,
        "environment": settings.environment,
        "platforms": sorted(CONNECTORS),
        "sync": {
            "time_budget_seconds": settings.sync_time_budget_seconds,
            "lookback_days": settings.sync_lookback_days,
            "max_page_size": settings.max_page_size,
        },
        "features": {
            "scheduler": settings.enable_scheduler,
            "smartlead_webhook_signing": bool(settings.smartlead_webhook_secret),
            "replyio_webhook_signing": bool(settings.replyio_webhook_secret),
            "reply_classifier": bool(settings.classifier_url),
        },
        "timestamp": utcnow().isoformat()
    }
