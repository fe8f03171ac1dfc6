"""
Sync Orchestrator

Drives a connector's steps page by page under a wall-clock budget. After
every page the upserts and the advanced checkpoint commit together, so an
invocation that is cut off (budget, crash, host timeout) resumes at the
first page that did not commit. Callers loop while the result says
done=false.

Mutual exclusion per connection is an advisory lock on the connection row:
sync_status='syncing' plus a fresh heartbeat and a lock token. Every write
the orchestrator makes to the row is conditional on that token.
"""
import time
import uuid
from datetime import timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from outreach_sync.config import get_settings
from outreach_sync.connectors import get_connector
from outreach_sync.connectors.base import BaseConnector, ResponseShape, SyncStep
from outreach_sync.connectors.client import RateLimitedClient, Transport
from outreach_sync.models.base import SessionLocal
from outreach_sync.models.connection import ApiConnection
from outreach_sync.services.retry_queue import PERMANENT_ERROR_KINDS, cancel_pending, enqueue_retry
from outreach_sync.services.sync_context import COMPLETE, SyncCheckpoint, SyncContext, SyncRequest
from outreach_sync.services.upsert import BatchOutcome, upsert_batch
from outreach_sync.services.webhook_ingestor import reconcile_unprocessed
from outreach_sync.utils.date_ranges import chunk_date_range, sync_window
from outreach_sync.utils.exceptions import AuthenticationError, ConnectionNotFound, SyncLockLost, UnknownShape
from outreach_sync.utils.helpers import truncate, utcnow
from outreach_sync.utils.logger import log, sync_log_context

settings = get_settings()


class SyncOrchestrator:
    """
    Entry point for every sync invocation (API trigger, scheduler, retry queue).

    Collaborators are injectable for tests: session_factory, an HTTP
    transport and sleep for the API client, a monotonic clock for the
    budget and a wall clock for persisted timestamps.
    """

    def __init__(
        self,
        session_factory=SessionLocal,
        transport: Optional[Transport] = None,
        sleep: Optional[Callable] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable = utcnow,
        time_budget: Optional[float] = None,
        reconcile_webhooks: bool = True,
    ):
        self.session_factory = session_factory
        self.transport = transport
        self.sleep = sleep
        self.clock = clock
        self.now = now
        self.time_budget = time_budget or settings.sync_time_budget_seconds
        self.reconcile_webhooks = reconcile_webhooks

    @property
    def stale_after(self) -> timedelta:
        return timedelta(seconds=self.time_budget * settings.sync_stale_lock_multiplier)

    async def run(self, request: SyncRequest) -> Dict[str, Any]:
        """
        Run one time-boxed invocation.

        Raises:
            UnknownPlatform: no connector for request.platform
            ConnectionNotFound: no active connection for the workspace
        """
        with sync_log_context(request.platform, request.workspace_id):
            return await self._run(request)

    async def _run(self, request: SyncRequest) -> Dict[str, Any]:
        connector = get_connector(request.platform)
        db = self.session_factory()
        try:
            connection = self._load_connection(db, request)

            if request.diagnostic:
                return await self._diagnose(db, connector, connection)

            token = self._acquire_lock(db, connection.id)
            if token is None:
                log.info(f"{request.platform} sync already running for workspace {request.workspace_id}")
                return {
                    "success": True,
                    "done": False,
                    "status": "already_syncing",
                    "message": "A sync is already running for this connection",
                }
            db.refresh(connection)

            if request.reset:
                self._reset(db, connector, connection, token)

            ctx, checkpoint = self._begin(connector, connection, request, token)
            try:
                result = await self._run_steps(db, connector, ctx, checkpoint)
            except AuthenticationError as e:
                db.rollback()
                return self._fail(db, ctx, checkpoint, e, "auth")
            except UnknownShape as e:
                db.rollback()
                return self._fail(db, ctx, checkpoint, e, "shape")
            except SyncLockLost as e:
                db.rollback()
                log.warning(f"{ctx.platform} sync for workspace {ctx.workspace_id} lost its lock: {e}")
                return {
                    "success": False,
                    "done": False,
                    "status": "lock_lost",
                    "message": str(e),
                    "step": checkpoint.step,
                }
            except Exception as e:
                db.rollback()
                return self._fail(db, ctx, checkpoint, e, "orchestration")

            if result["done"] and self.reconcile_webhooks and connector.kind == "email":
                result["webhooks_reconciled"] = reconcile_unprocessed(db, source_type=connector.platform)
            return result
        finally:
            db.close()

    async def run_until_done(self, request: SyncRequest, max_invocations: Optional[int] = None) -> Dict[str, Any]:
        """Invoke repeatedly until the sync finishes, fails or hits the invocation cap"""
        max_invocations = max_invocations or settings.scheduled_sync_max_invocations
        result: Dict[str, Any] = {}
        for _ in range(max_invocations):
            result = await self.run(request)
            if result.get("done") or result.get("status") in ("already_syncing", "lock_lost"):
                break
            request = SyncRequest(
                workspace_id=request.workspace_id,
                platform=request.platform,
                sync_type=request.sync_type,
                is_retry=request.is_retry,
            )
        return result

    # ------------------------------------------------------------------
    # Lock and checkpoint
    # ------------------------------------------------------------------

    def _load_connection(self, db: Session, request: SyncRequest) -> ApiConnection:
        connection = db.query(ApiConnection).filter(
            ApiConnection.workspace_id == request.workspace_id,
            ApiConnection.platform == request.platform,
            ApiConnection.is_active.is_(True),
        ).first()
        if connection is None:
            raise ConnectionNotFound(
                f"No active {request.platform} connection for workspace {request.workspace_id}"
            )
        return connection

    def _acquire_lock(self, db: Session, connection_id: int) -> Optional[str]:
        """Single-row conditional UPDATE; returns the new lock token or None"""
        now = self.now()
        token = uuid.uuid4().hex
        result = db.execute(
            update(ApiConnection)
            .where(
                ApiConnection.id == connection_id,
                or_(
                    ApiConnection.sync_status.is_(None),
                    ApiConnection.sync_status != "syncing",
                    ApiConnection.heartbeat_at.is_(None),
                    ApiConnection.heartbeat_at < now - self.stale_after,
                ),
            )
            .values(sync_status="syncing", heartbeat_at=now, lock_token=token, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return token if result.rowcount == 1 else None

    def _write_connection(self, db: Session, ctx: SyncContext, **values):
        """Update the connection row only while we still hold its lock"""
        result = db.execute(
            update(ApiConnection)
            .where(ApiConnection.id == ctx.connection_id, ApiConnection.lock_token == ctx.lock_token)
            .values(updated_at=self.now(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise SyncLockLost(f"connection {ctx.connection_id} was reclaimed by another invocation")

    def _save_checkpoint(self, db: Session, ctx: SyncContext, checkpoint: SyncCheckpoint):
        now = self.now()
        checkpoint.heartbeat = now.isoformat()
        self._write_connection(db, ctx, sync_progress=checkpoint.to_dict(), heartbeat_at=now)

    def _commit_checkpoint(self, db: Session, ctx: SyncContext, checkpoint: SyncCheckpoint, working: SyncCheckpoint):
        """Persist the working copy with the page's upserts, then adopt it"""
        self._save_checkpoint(db, ctx, working)
        db.commit()
        checkpoint.adopt(working)

    def _reset(self, db: Session, connector: BaseConnector, connection: ApiConnection, token: str):
        deleted = connector.reset_data(db, connection.workspace_id)
        cancelled = cancel_pending(db, connection.id)
        db.execute(
            update(ApiConnection)
            .where(ApiConnection.id == connection.id, ApiConnection.lock_token == token)
            .values(sync_progress=None, last_error=None)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        log.warning(
            f"Reset {connector.platform} data for workspace {connection.workspace_id}: "
            f"deleted {deleted}, cancelled {cancelled} pending retries"
        )

    def _begin(self, connector: BaseConnector, connection: ApiConnection, request: SyncRequest, token: str):
        now = self.now()
        checkpoint = SyncCheckpoint.from_dict(connection.sync_progress)

        if request.reset or not checkpoint.is_resumable:
            start, end = sync_window(
                now,
                settings.sync_lookback_days,
                last_sync_at=connection.last_sync_at,
                incremental=request.sync_type == "incremental",
                overlap_days=settings.sync_incremental_overlap_days,
            )
            checkpoint = SyncCheckpoint(
                step=connector.steps[0].name,
                window_start=start.isoformat(),
                window_end=end.isoformat(),
                sync_type=request.sync_type,
                started_at=now.isoformat(),
            )
            log.info(f"Starting {request.sync_type} {connector.platform} sync for workspace {connection.workspace_id} ({start:%Y-%m-%d} to {end:%Y-%m-%d})")
        else:
            log.info(
                f"Resuming {connector.platform} sync for workspace {connection.workspace_id} "
                f"at {checkpoint.step} page {checkpoint.page} (invocation {checkpoint.invocations + 1})"
            )

        checkpoint.invocations += 1
        checkpoint.error_kind = None
        checkpoint.message = None
        window_start, window_end = checkpoint.window

        ctx = SyncContext(
            connection_id=connection.id,
            workspace_id=connection.workspace_id,
            platform=connector.platform,
            api_key=connection.api_key,
            api_shape=connection.api_shape,
            sync_type=checkpoint.sync_type,
            is_retry=request.is_retry,
            window_start=window_start,
            window_end=window_end,
            time_budget=self.time_budget,
            clock=self.clock,
            started=self.clock(),
            lock_token=token,
            min_headroom=settings.min_page_headroom_seconds,
        )
        return ctx, checkpoint

    # ------------------------------------------------------------------
    # Step loop
    # ------------------------------------------------------------------

    async def _run_steps(self, db: Session, connector: BaseConnector, ctx: SyncContext, checkpoint: SyncCheckpoint) -> Dict[str, Any]:
        shape = connector.shape_for(ctx.api_shape)
        counts = {step.counter: 0 for step in connector.steps}
        invocation = BatchOutcome()

        async with connector.build_client(ctx, self.transport, self.sleep) as client:
            while checkpoint.step != COMPLETE:
                if not ctx.can_fetch():
                    self._save_checkpoint(db, ctx, checkpoint)
                    self._write_connection(db, ctx, heartbeat_at=None, lock_token=None)
                    db.commit()
                    log.info(
                        f"{ctx.platform} time budget reached after {ctx.elapsed():.1f}s at "
                        f"{checkpoint.step} page {checkpoint.page}; call again to continue"
                    )
                    return self._result(
                        checkpoint, counts, invocation,
                        done=False,
                        status="syncing",
                        message="Time budget reached. Call again to continue.",
                    )

                step = connector.steps[checkpoint.step_index]
                outcome = await self._process_page(db, connector, shape, client, ctx, step, checkpoint)
                if outcome is not None:
                    counts[step.counter] += outcome.upserted
                    invocation.merge(outcome)

        checkpoint.heartbeat = self.now().isoformat()
        self._write_connection(
            db, ctx,
            sync_status="success",
            sync_progress=checkpoint.to_dict(),
            last_sync_at=self.now(),
            last_error=None,
            heartbeat_at=None,
            lock_token=None,
        )
        db.commit()
        log.info(
            f"{ctx.platform} sync complete for workspace {ctx.workspace_id}: "
            f"{checkpoint.totals} ({checkpoint.records_failed} failed, {checkpoint.invocations} invocations, "
            f"client {client.stats.to_dict()})"
        )
        return self._result(checkpoint, counts, invocation, done=True, status="success", message="Sync complete")

    async def _process_page(
        self,
        db: Session,
        connector: BaseConnector,
        shape: ResponseShape,
        client: RateLimitedClient,
        ctx: SyncContext,
        step: SyncStep,
        checkpoint: SyncCheckpoint,
    ) -> Optional[BatchOutcome]:
        """
        Fetch, map and upsert one page, then advance and persist the checkpoint.

        Returns None when the step had nothing left to fetch.
        """
        step_names = [s.name for s in connector.steps]
        # Mutate a working copy; the caller's checkpoint only ever reflects committed state
        working = checkpoint.copy()
        params = connector.page_params(step, working.page)
        parent = None

        if step.kind == "fan_out":
            parent = connector.parent_query(db, ctx, step).offset(working.parent_offset).first()
            if parent is None:
                working.advance_step(step_names)
                self._commit_checkpoint(db, ctx, checkpoint, working)
                return None
            db.expunge(parent)
        elif step.kind == "chunked":
            chunks = chunk_date_range(ctx.window_start, ctx.window_end, step.max_range_days)
            if working.chunk_index >= len(chunks):
                working.advance_step(step_names)
                self._commit_checkpoint(db, ctx, checkpoint, working)
                return None
            chunk_start, chunk_end = chunks[working.chunk_index]
            params.update(connector.range_params(chunk_start, chunk_end))

        endpoint = connector.endpoint_for(step, parent)
        # Don't hold a read transaction open across the HTTP call
        db.commit()
        response = await client.request(endpoint, params=params, allow_404=step.allow_404)

        try:
            records = shape.extract(step.name, response)
        except (KeyError, TypeError, AttributeError) as e:
            raise UnknownShape(
                f"{ctx.platform} {step.name} response does not match shape {shape.version}: {type(e).__name__}: {e}"
            )

        results = [shape.map(step.name, record, ctx, parent) for record in records]
        outcome = upsert_batch(
            db,
            step.model,
            results,
            step.conflict_keys,
            prepare=lambda row: connector.prepare_row(db, ctx, step, row),
        )

        if step.paging != "single" and len(records) >= connector.page_size(step):
            working.next_page()
        elif step.kind == "fan_out":
            working.next_parent()
        elif step.kind == "chunked":
            working.next_chunk()
        else:
            working.advance_step(step_names)

        working.add_count(step.counter, outcome.upserted)
        working.records_failed += outcome.failed
        working.add_errors(outcome.errors, cap=settings.max_progress_errors)
        self._commit_checkpoint(db, ctx, checkpoint, working)

        log.info(
            f"{ctx.platform} {step.name}: {len(records)} fetched, {outcome.upserted} upserted, "
            f"{outcome.failed} failed ({ctx.elapsed():.1f}s elapsed)"
        )
        return outcome

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def _fail(self, db: Session, ctx: SyncContext, checkpoint: SyncCheckpoint, error: Exception, kind: str) -> Dict[str, Any]:
        message = f"{type(error).__name__}: {error}"
        log.error(f"{ctx.platform} sync failed for workspace {ctx.workspace_id} ({kind}): {message}")

        checkpoint.error_kind = kind
        checkpoint.message = truncate(message)
        checkpoint.add_errors([truncate(message, 200)], cap=settings.max_progress_errors)
        try:
            self._write_connection(
                db, ctx,
                sync_status="error",
                sync_progress=checkpoint.to_dict(),
                last_error=truncate(message),
                heartbeat_at=None,
                lock_token=None,
            )
        except SyncLockLost:
            db.rollback()
            log.warning(f"{ctx.platform} connection {ctx.connection_id} reclaimed before the failure was recorded")
            return {"success": False, "done": False, "status": "lock_lost", "message": message, "error_kind": kind}

        retry_enqueued = False
        if kind not in PERMANENT_ERROR_KINDS and not ctx.is_retry:
            retry_enqueued = enqueue_retry(
                db,
                connection_id=ctx.connection_id,
                workspace_id=ctx.workspace_id,
                platform=ctx.platform,
                error=message,
                error_kind=kind,
                sync_type=ctx.sync_type,
                now=self.now(),
            ) is not None
        db.commit()

        return {
            "success": False,
            "done": True,
            "status": "error",
            "error_kind": kind,
            "message": message,
            "step": checkpoint.step,
            "totals": dict(checkpoint.totals),
            "records_failed": checkpoint.records_failed,
            "retry_enqueued": retry_enqueued,
        }

    @staticmethod
    def _result(checkpoint: SyncCheckpoint, counts: Dict[str, int], invocation: BatchOutcome, done: bool, status: str, message: str) -> Dict[str, Any]:
        return {
            "success": True,
            "done": done,
            "status": status,
            "message": message,
            "step": checkpoint.step,
            **counts,
            "totals": dict(checkpoint.totals),
            "records_failed": invocation.failed,
            "errors": invocation.errors[-settings.max_progress_errors:],
            "invocations": checkpoint.invocations,
        }

    async def _diagnose(self, db: Session, connector: BaseConnector, connection: ApiConnection) -> Dict[str, Any]:
        start, end = sync_window(self.now(), settings.sync_lookback_days)
        ctx = SyncContext(
            connection_id=connection.id,
            workspace_id=connection.workspace_id,
            platform=connector.platform,
            api_key=connection.api_key,
            api_shape=connection.api_shape,
            sync_type="full",
            is_retry=False,
            window_start=start,
            window_end=end,
            time_budget=self.time_budget,
            clock=self.clock,
            started=self.clock(),
            lock_token="",
        )
        db.commit()
        async with connector.build_client(ctx, self.transport, self.sleep) as client:
            report = await connector.diagnose(db, ctx, client)
        return {"success": True, "done": True, "status": "diagnostic", "message": "Diagnostic complete", "diagnostic": report}
