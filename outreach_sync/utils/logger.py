"""
Logging configuration

Lines logged inside sync_log_context() carry the platform and workspace, both in
the console prefix and in a dedicated sync activity file.
"""
from loguru import logger
import sys
from outreach_sync.config import get_settings

settings = get_settings()

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<magenta>{extra[sync]}</magenta><cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def _is_sync_record(record) -> bool:
    return "platform" in record["extra"]


def setup_logger():
    """Configure sinks for console, daily app log, sync activity and errors"""
    logger.remove()
    logger.configure(extra={"sync": ""})

    logger.add(
        sys.stdout,
        colorize=True,
        format=CONSOLE_FORMAT,
        level=settings.log_level
    )

    logger.add(
        f"{settings.log_dir}/outreach_sync_{{time:YYYY-MM-DD}}.log",
        rotation="00:00",
        retention="30 days",
        compression="zip",
        level="INFO"
    )

    # Only records emitted under sync_log_context()
    logger.add(
        f"{settings.log_dir}/sync_activity_{{time:YYYY-MM-DD}}.log",
        rotation="00:00",
        retention="14 days",
        level="INFO",
        filter=_is_sync_record,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {extra[platform]} ws={extra[workspace_id]} | {message}",
    )

    logger.add(
        f"{settings.log_dir}/errors_{{time:YYYY-MM-DD}}.log",
        rotation="00:00",
        retention="90 days",
        level="ERROR"
    )

    return logger


def sync_log_context(platform: str, workspace_id: int):
    """Tag every log line in the block with the connection being synced"""
    return logger.contextualize(
        platform=platform,
        workspace_id=workspace_id,
        sync=f"[{platform}:{workspace_id}] ",
    )


log = setup_logger()
