"""
Unit tests for the bounded content deduplicator.
"""

from datetime import datetime, timedelta, timezone

import pytest

from services.consensus_engine.deduplicator import ContentDeduplicator


BASE_TIME = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class TestContentDeduplicator:
    """Test ContentDeduplicator memory and eviction."""

    def test_unseen_then_seen(self):
        dedup = ContentDeduplicator(capacity=10)

        assert dedup.seen("a", BASE_TIME) is False
        dedup.remember("a", BASE_TIME)
        assert dedup.seen("a", BASE_TIME) is True
        assert "a" in dedup
        assert len(dedup) == 1

    def test_capacity_evicts_least_recent(self):
        dedup = ContentDeduplicator(capacity=2)

        dedup.remember("a", BASE_TIME)
        dedup.remember("b", BASE_TIME)
        dedup.remember("c", BASE_TIME)

        assert len(dedup) == 2
        assert "a" not in dedup
        assert dedup.seen("b", BASE_TIME)
        assert dedup.seen("c", BASE_TIME)
        assert dedup.get_stats()["evictions"] == 1

    def test_seen_refreshes_recency(self):
        dedup = ContentDeduplicator(capacity=2)

        dedup.remember("a", BASE_TIME)
        dedup.remember("b", BASE_TIME)
        assert dedup.seen("a", BASE_TIME)
        dedup.remember("c", BASE_TIME)

        assert "a" in dedup
        assert "b" not in dedup

    def test_ttl_expires_hash_on_lookup(self):
        dedup = ContentDeduplicator(capacity=10, ttl_seconds=60)
        dedup.remember("a", BASE_TIME)

        assert dedup.seen("a", BASE_TIME + timedelta(seconds=60))
        assert dedup.seen("a", BASE_TIME + timedelta(seconds=121)) is False
        assert "a" not in dedup
        assert dedup.get_stats()["expirations"] == 1

    def test_purge_expired(self):
        dedup = ContentDeduplicator(capacity=10, ttl_seconds=60)
        dedup.remember("old", BASE_TIME)
        dedup.remember("new", BASE_TIME + timedelta(seconds=50))

        removed = dedup.purge_expired(BASE_TIME + timedelta(seconds=90))

        assert removed == 1
        assert "old" not in dedup
        assert "new" in dedup

    def test_purge_without_ttl_is_noop(self):
        dedup = ContentDeduplicator(capacity=10)
        dedup.remember("a", BASE_TIME)

        assert dedup.purge_expired(BASE_TIME + timedelta(days=30)) == 0
        assert "a" in dedup

    def test_memory_is_bounded(self):
        dedup = ContentDeduplicator(capacity=100)

        for i in range(1000):
            dedup.remember(f"hash-{i}", BASE_TIME)

        assert len(dedup) == 100
        assert "hash-999" in dedup
        assert "hash-0" not in dedup

    def test_clear(self):
        dedup = ContentDeduplicator(capacity=10)
        dedup.remember("a", BASE_TIME)
        dedup.clear()

        assert len(dedup) == 0

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            ContentDeduplicator(capacity=0)

    def test_stats(self):
        dedup = ContentDeduplicator(capacity=5, ttl_seconds=30)
        stats = dedup.get_stats()

        assert stats["size"] == 0
        assert stats["capacity"] == 5
        assert stats["ttl_seconds"] == 30.0
