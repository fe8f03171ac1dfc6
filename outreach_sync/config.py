"""
Configuration management for the outreach sync service
"""
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "Outreach Sync Core"
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"
    log_dir: str = "logs"
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_workers: int = 1

    # Database
    database_url: str = "sqlite:///./outreach_sync.db"

    # Sync orchestration
    sync_time_budget_seconds: float = 50.0
    sync_lookback_days: int = 180
    sync_incremental_overlap_days: int = 1
    sync_stale_lock_multiplier: float = 2.0  # heartbeat older than budget * multiplier = crashed run
    min_page_headroom_seconds: float = 5.0  # don't start a page fetch with less budget left
    max_page_size: int = 100
    max_progress_errors: int = 20

    # Rate-limited API client
    request_max_retries: int = 3
    request_timeout_seconds: float = 30.0
    smartlead_base_url: str = "https://server.smartlead.ai/api/v1"
    smartlead_request_delay_seconds: float = 0.45
    smartlead_rate_limit_backoff_seconds: float = 2.0
    replyio_base_url: str = "https://api.reply.io"
    replyio_request_delay_seconds: float = 2.0
    replyio_rate_limit_backoff_seconds: float = 10.0
    phoneburner_base_url: str = "https://www.phoneburner.com/rest/1"
    phoneburner_request_delay_seconds: float = 0.5
    phoneburner_rate_limit_backoff_seconds: float = 2.0
    phoneburner_max_range_days: int = 90

    # Retry queue
    retry_queue_batch_size: int = 5
    retry_queue_max_retries: int = 5
    retry_backoff_base: int = 3
    retry_backoff_unit_minutes: int = 10  # 10min, 30min, 90min, 270min...
    retry_processing_timeout_minutes: int = 30

    # Webhooks
    smartlead_webhook_secret: Optional[str] = None
    replyio_webhook_secret: Optional[str] = None
    webhook_reconcile_batch_size: int = 200

    # Downstream reply classifier (fire-and-forget)
    classifier_url: Optional[str] = None
    classifier_token: Optional[str] = None
    classifier_batch_size: int = 10

    # Recovery
    recovery_reset_after_minutes: int = 30

    # Scheduler
    enable_scheduler: bool = True
    retry_queue_interval_minutes: int = 5
    webhook_reconcile_interval_minutes: int = 15
    sync_recovery_interval_minutes: int = 10
    scheduled_sync_interval_hours: int = 6
    scheduled_sync_max_invocations: int = 20

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
