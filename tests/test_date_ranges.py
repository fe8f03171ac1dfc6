"""
Tests for sync window and date-range chunking.
"""
from datetime import datetime, timedelta

import pytest

from outreach_sync.utils.date_ranges import chunk_date_range, sync_window


class TestChunkDateRange:

    def test_chunks_tile_the_window(self):
        start = datetime(2024, 1, 1)
        end = datetime(2024, 6, 29)
        chunks = chunk_date_range(start, end, 90)

        assert chunks[0][0] == start
        assert chunks[-1][1] == end
        for (_, prev_end), (next_start, _) in zip(chunks, chunks[1:]):
            assert prev_end == next_start
        assert all(e - s <= timedelta(days=90) for s, e in chunks)

    def test_exact_multiple(self):
        start = datetime(2024, 1, 1)
        chunks = chunk_date_range(start, start + timedelta(days=180), 90)
        assert len(chunks) == 2

    def test_short_window_is_one_chunk(self):
        start = datetime(2024, 1, 1)
        end = start + timedelta(days=3)
        assert chunk_date_range(start, end, 90) == [(start, end)]

    def test_empty_window(self):
        start = datetime(2024, 1, 1)
        assert chunk_date_range(start, start, 90) == []
        assert chunk_date_range(start, start - timedelta(days=1), 90) == []

    def test_non_positive_max_days(self):
        with pytest.raises(ValueError):
            chunk_date_range(datetime(2024, 1, 1), datetime(2024, 2, 1), 0)


class TestSyncWindow:

    def test_full_sync_uses_lookback(self):
        now = datetime(2024, 7, 1, 12)
        start, end = sync_window(now, 180, last_sync_at=now - timedelta(days=2))
        assert start == now - timedelta(days=180)
        assert end == now

    def test_incremental_starts_one_overlap_before_last_sync(self):
        now = datetime(2024, 7, 1, 12)
        last = now - timedelta(days=2)
        start, _ = sync_window(now, 180, last_sync_at=last, incremental=True, overlap_days=1)
        assert start == last - timedelta(days=1)

    def test_incremental_never_earlier_than_lookback(self):
        now = datetime(2024, 7, 1, 12)
        start, _ = sync_window(now, 30, last_sync_at=now - timedelta(days=400), incremental=True)
        assert start == now - timedelta(days=30)

    def test_incremental_without_previous_sync_is_full(self):
        now = datetime(2024, 7, 1, 12)
        start, _ = sync_window(now, 180, incremental=True)
        assert start == now - timedelta(days=180)
