"""
Date window helpers for APIs with a maximum per-call date range
"""
from datetime import datetime, timedelta
from typing import List, Tuple


def chunk_date_range(start: datetime, end: datetime, max_days: int) -> List[Tuple[datetime, datetime]]:
    """
    Split [start, end) into consecutive half-open sub-ranges of at most max_days.

    Each chunk starts exactly where the previous one ended, and the last chunk
    ends at `end`, so the chunks tile the window with no gap and no overlap.

    Example:
        >>> chunk_date_range(datetime(2024, 1, 1), datetime(2024, 6, 29), 90)
        [(datetime(2024, 1, 1), datetime(2024, 3, 31)), (datetime(2024, 3, 31), datetime(2024, 6, 29))]
    """
    if max_days <= 0:
        raise ValueError("max_days must be positive")
    if end <= start:
        return []

    step = timedelta(days=max_days)
    chunks = []
    cursor = start
    while cursor < end:
        chunk_end = min(cursor + step, end)
        chunks.append((cursor, chunk_end))
        cursor = chunk_end
    return chunks


def sync_window(
    now: datetime,
    lookback_days: int,
    last_sync_at=None,
    incremental: bool = False,
    overlap_days: int = 1,
) -> Tuple[datetime, datetime]:
    """
    Window a sync series covers.

    Full syncs cover the whole lookback. Incremental syncs start one overlap
    before the last successful sync, never earlier than the lookback.
    """
    lookback_start = now - timedelta(days=lookback_days)
    if not incremental or last_sync_at is None:
        return lookback_start, now
    return max(lookback_start, last_sync_at - timedelta(days=overlap_days)), now
