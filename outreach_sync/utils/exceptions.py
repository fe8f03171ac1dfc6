"""
Domain exceptions

API errors are raised by the rate-limited client, sync errors by the
orchestrator. The API layer maps them to HTTP responses.
"""
from typing import Optional


class ApiError(Exception):
    """Upstream platform request failed after the client's retries"""

    def __init__(self, message: str, status_code: Optional[int] = None, endpoint: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint


class AuthenticationError(ApiError):
    """HTTP 401 - credentials are invalid for the rest of the sync"""


class RateLimitError(ApiError):
    """HTTP 429 persisted past the retry ceiling"""


class NotFoundError(ApiError):
    """HTTP 404 on an endpoint that does not tolerate it"""


class SyncError(Exception):
    """Base class for orchestration errors"""


class ConnectionNotFound(SyncError):
    pass


class UnknownPlatform(SyncError):
    pass


class SyncLockLost(SyncError):
    """Another invocation reclaimed this connection's advisory lock"""


class UnknownShape(SyncError):
    """Connection is pinned to a response shape the connector doesn't know"""
