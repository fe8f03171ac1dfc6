"""
Platform connections and the sync retry queue

A connection row is both the credential holder and the advisory lock for
its (workspace, platform) pair. sync_progress holds the resumable checkpoint.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Boolean, Text, ForeignKey, UniqueConstraint, Index
from outreach_sync.utils.helpers import utcnow

from outreach_sync.models.base import Base


class ApiConnection(Base):
    """One connection per workspace per platform"""
    __tablename__ = "api_connections"
    __table_args__ = (
        UniqueConstraint("workspace_id", "platform", name="uq_api_connections_workspace_platform"),
    )

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, nullable=False, index=True)
    platform = Column(String, nullable=False, index=True)  # smartlead, replyio, phoneburner

    # Credentials
    api_key = Column(Text, nullable=False)
    api_shape = Column(String, nullable=True)  # pinned response adapter version (v1, v2)
    is_active = Column(Boolean, default=True, index=True)

    # Sync state
    sync_status = Column(String, default="idle", index=True)  # idle, syncing, success, error
    sync_progress = Column(JSON, nullable=True)  # checkpoint, see SyncCheckpoint
    heartbeat_at = Column(DateTime, nullable=True)
    lock_token = Column(String, nullable=True)
    last_sync_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class SyncRetryQueue(Base):
    """
    One entry per failed sync series

    pending -> processing -> completed | failed | pending (rescheduled)
    pending -> cancelled (connection reset)
    """
    __tablename__ = "sync_retry_queue"
    __table_args__ = (
        Index("ix_sync_retry_queue_due", "status", "next_retry_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    connection_id = Column(Integer, ForeignKey("api_connections.id", ondelete="CASCADE"), nullable=False, index=True)
    workspace_id = Column(Integer, nullable=False, index=True)
    platform = Column(String, nullable=False)
    sync_type = Column(String, default="full")

    status = Column(String, default="pending", index=True)  # pending, processing, completed, failed, cancelled
    retry_count = Column(Integer, default=0)
    max_retries = Column(Integer, default=5)
    next_retry_at = Column(DateTime, nullable=False)
    last_error = Column(Text, nullable=True)
    error_kind = Column(String, nullable=True)  # auth, api, orchestration
    processing_started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
