"""
Scheduler for background sync maintenance

Uses APScheduler to drain the retry queue, replay unprocessed webhooks,
recover stuck syncs and run the periodic incremental sync of every
active connection.
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from outreach_sync.config import get_settings
from outreach_sync.models.base import SessionLocal
from outreach_sync.models.connection import ApiConnection
from outreach_sync.services.retry_queue import RetryQueueProcessor
from outreach_sync.services.sync_context import SyncRequest
from outreach_sync.services.sync_orchestrator import SyncOrchestrator
from outreach_sync.services.sync_recovery import SyncRecovery
from outreach_sync.services.webhook_ingestor import reconcile_unprocessed
from outreach_sync.utils.logger import log

settings = get_settings()
scheduler = AsyncIOScheduler()


async def process_retry_queue():
    """Run due retry entries (every few minutes)"""
    try:
        orchestrator = SyncOrchestrator()
        await RetryQueueProcessor(orchestrator.run, session_factory=orchestrator.session_factory).process_due()
    except Exception as e:
        log.error(f"Retry queue job error: {str(e)}")


async def reconcile_webhooks():
    """Replay stored webhook events that were never applied"""
    db = SessionLocal()
    try:
        summary = reconcile_unprocessed(db)
        if summary["examined"]:
            log.info(f"Webhook reconcile: {summary}")
    except Exception as e:
        log.error(f"Webhook reconcile job error: {str(e)}")
    finally:
        db.close()


async def recover_stuck_syncs():
    """Resume or reset syncs nobody has touched past the stale threshold"""
    try:
        summary = await SyncRecovery(SyncOrchestrator()).recover("auto")
        if summary["stuck"]:
            log.info(f"Sync recovery: {summary}")
    except Exception as e:
        log.error(f"Sync recovery job error: {str(e)}")


async def sync_all_connections():
    """Incremental sync of every active connection, driven to completion or the invocation cap"""
    db = SessionLocal()
    try:
        targets = [
            (connection.workspace_id, connection.platform)
            for connection in db.query(ApiConnection).filter(ApiConnection.is_active.is_(True)).order_by(ApiConnection.id)
        ]
    finally:
        db.close()

    orchestrator = SyncOrchestrator()
    for workspace_id, platform in targets:
        try:
            result = await orchestrator.run_until_done(
                SyncRequest(workspace_id=workspace_id, platform=platform, sync_type="incremental"),
                max_invocations=settings.scheduled_sync_max_invocations,
            )
            log.info(f"Scheduled {platform} sync for workspace {workspace_id}: {result.get('status')}")
        except Exception as e:
            log.error(f"Scheduled {platform} sync for workspace {workspace_id} failed: {str(e)}")


def setup_scheduler():
    """
    Configure the scheduler.

    Job Frequencies:
    - Retry queue:        every retry_queue_interval_minutes (5)
    - Webhook reconcile:  every webhook_reconcile_interval_minutes (15)
    - Stuck sync recovery: every sync_recovery_interval_minutes (10)
    - Connection syncs:   every scheduled_sync_interval_hours (6)
    """
    scheduler.add_job(
        process_retry_queue,
        trigger=IntervalTrigger(minutes=settings.retry_queue_interval_minutes),
        id='retry_queue',
        name='Sync Retry Queue',
        replace_existing=True,
        max_instances=1
    )
    scheduler.add_job(
        reconcile_webhooks,
        trigger=IntervalTrigger(minutes=settings.webhook_reconcile_interval_minutes),
        id='webhook_reconcile',
        name='Webhook Reconcile',
        replace_existing=True,
        max_instances=1
    )
    scheduler.add_job(
        recover_stuck_syncs,
        trigger=IntervalTrigger(minutes=settings.sync_recovery_interval_minutes),
        id='sync_recovery',
        name='Stuck Sync Recovery',
        replace_existing=True,
        max_instances=1
    )
    scheduler.add_job(
        sync_all_connections,
        trigger=IntervalTrigger(hours=settings.scheduled_sync_interval_hours),
        id='connection_sync',
        name='Connection Sync',
        replace_existing=True,
        max_instances=1
    )
    log.info(f"Scheduler configured with {len(scheduler.get_jobs())} jobs")


def start_scheduler():
    """Start the scheduler"""
    setup_scheduler()
    scheduler.start()
    log.info("Scheduler started")


def stop_scheduler():
    """Stop the scheduler"""
    if scheduler.running:
        scheduler.shutdown()
        log.info("Scheduler stopped")
