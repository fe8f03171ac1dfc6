"""
Shared FastAPI dependencies
"""
from outreach_sync.services.sync_orchestrator import SyncOrchestrator


def get_orchestrator() -> SyncOrchestrator:
    return SyncOrchestrator()
