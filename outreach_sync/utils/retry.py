"""
Backoff calculations shared by the API client and the sync retry queue.

The client backs off in seconds within one request; the retry queue backs
off in minutes across sync invocations.
"""
import random
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional


@dataclass
class RetryStats:
    """Tracks retry statistics for a single client."""
    attempts: int = 0
    retries: int = 0
    rate_limited: int = 0
    total_delay_seconds: float = 0.0
    last_error: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    def record_attempt(self):
        self.attempts += 1

    def record_retry(self, error: str, delay: float = 0.0, rate_limited: bool = False):
        """Record a failed attempt that will be retried."""
        self.retries += 1
        self.total_delay_seconds += delay
        self.last_error = error
        self.errors.append(error)
        if rate_limited:
            self.rate_limited += 1

    def to_dict(self) -> dict:
        """Convert to dictionary for logging/storage."""
        return {
            "attempts": self.attempts,
            "retries": self.retries,
            "rate_limited": self.rate_limited,
            "total_delay_seconds": round(self.total_delay_seconds, 2),
            "last_error": self.last_error,
            "errors": self.errors[-5:]  # Cap at 5 errors
        }


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True
) -> float:
    """
    Calculate delay for exponential backoff.

    Args:
        attempt: Current attempt number (1-indexed)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap
        exponential_base: Base for exponential calculation
        jitter: Add randomness to prevent thundering herd

    Returns:
        Delay in seconds
    """
    delay = base_delay * (exponential_base ** (attempt - 1))
    delay = min(delay, max_delay)

    # Add jitter (0-25% of delay)
    if jitter:
        delay += delay * random.uniform(0, 0.25)

    return delay


def rate_limit_wait(attempt: int, base_seconds: float) -> float:
    """Wait after an HTTP 429 on the given 0-indexed attempt: (attempt + 1) * base"""
    return (attempt + 1) * base_seconds


def queue_backoff(retry_count: int, base: int = 3, unit_minutes: int = 10) -> timedelta:
    """
    Delay before the next retry-queue attempt: base^retry_count * unit.

    retry_count 0 is the delay for a freshly enqueued entry.
    """
    return timedelta(minutes=unit_minutes * (base ** retry_count))
