"""
Outreach Sync Core
Main FastAPI application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from outreach_sync.config import get_settings
from outreach_sync.utils.logger import log
from outreach_sync import __version__

# Import routers
from outreach_sync.api import health, sync, webhooks, retry_queue, connections

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    # Startup
    log.info(f"Starting {settings.app_name} v{__version__}")
    log.info(f"Environment: {settings.environment}")

    try:
        from outreach_sync.models.base import init_db
        init_db()
        log.info("Database initialized")
    except Exception as e:
        log.error(f"Database initialization error: {str(e)}")

    if settings.enable_scheduler:
        try:
            from outreach_sync.scheduler import start_scheduler
            start_scheduler()
        except Exception as e:
            log.error(f"Scheduler startup error: {str(e)}")

    yield

    # Shutdown
    if settings.enable_scheduler:
        from outreach_sync.scheduler import stop_scheduler
        stop_scheduler()
    log.info("Shutting down application")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=__version__,
    description="""
    Outreach data sync core

    Pulls campaigns, leads and engagement from outreach platforms into one
    normalized store, and applies their webhooks as they arrive:
    - Smartlead (email)
    - Reply.io (email)
    - PhoneBurner (calling)

    Syncs are time-boxed and resumable: keep calling POST /sync/{platform}
    while the response says done=false.
    """,
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(sync.router)
app.include_router(webhooks.router)
app.include_router(retry_queue.router)
app.include_router(connections.router)


@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "app": settings.app_name,
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
        "status": "/status",
        "endpoints": {
            "trigger_sync": "POST /sync/{platform}",
            "sync_status": "GET /sync/status/{workspace_id}",
            "stuck_syncs": "GET /sync/stuck",
            "recover_syncs": "POST /sync/recover",
            "smartlead_webhook": "POST /webhooks/smartlead",
            "replyio_webhook": "POST /webhooks/replyio",
            "reconcile_webhooks": "POST /webhooks/reconcile",
            "process_retry_queue": "POST /retry-queue/process",
            "retry_queue": "GET /retry-queue",
            "put_connection": "PUT /connections/{workspace_id}/{platform}",
        }
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "outreach_sync.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1
    )
