"""
Content Deduplicator

Bounded memory of content hashes already processed. Eviction is
least-recently-seen first once capacity is reached, with an optional TTL so
hashes also age out in quiet periods.
"""

from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import structlog


class ContentDeduplicator:
    """
    Fixed-capacity LRU set of content hashes with optional expiry.

    Memory is bounded by ``capacity`` independent of uptime. Within any
    redelivery span shorter than the eviction horizon every hash is processed
    at most once.
    """

    def __init__(self, capacity: int = 10000, ttl_seconds: Optional[int] = None) -> None:
        """
        Initialize the deduplicator.

        Args:
            capacity: Maximum number of hashes remembered
            ttl_seconds: Optional lifetime of a remembered hash in seconds
        """
        if capacity < 1:
            raise ValueError("Capacity must be at least 1")

        self.capacity = capacity
        self.ttl = timedelta(seconds=ttl_seconds) if ttl_seconds else None

        # hash -> time it was last remembered or seen
        self._hashes: "OrderedDict[str, datetime]" = OrderedDict()
        self._evictions = 0
        self._expirations = 0

        self.logger = structlog.get_logger(__name__)

    def seen(self, content_hash: str, now: Optional[datetime] = None) -> bool:
        """
        Check whether a hash has already been processed.

        A hit refreshes the hash's recency so frequently redelivered items stay
        remembered.

        Args:
            content_hash: Digest of the item
            now: Evaluation time (defaults to current UTC time)

        Returns:
            True if the hash is remembered and not expired
        """
        stored_at = self._hashes.get(content_hash)
        if stored_at is None:
            return False

        now = now or datetime.now(timezone.utc)
        if self.ttl is not None and now - stored_at > self.ttl:
            del self._hashes[content_hash]
            self._expirations += 1
            return False

        self._hashes.move_to_end(content_hash)
        return True

    def remember(self, content_hash: str, now: Optional[datetime] = None) -> None:
        """
        Record a hash as processed, evicting the oldest entry when full.

        Args:
            content_hash: Digest of the item
            now: Time of processing (defaults to current UTC time)
        """
        self._hashes[content_hash] = now or datetime.now(timezone.utc)
        self._hashes.move_to_end(content_hash)

        while len(self._hashes) > self.capacity:
            evicted, _ = self._hashes.popitem(last=False)
            self._evictions += 1
            self.logger.debug("Evicted content hash", content_hash=evicted)

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """
        Drop hashes older than the TTL.

        Args:
            now: Evaluation time (defaults to current UTC time)

        Returns:
            Number of hashes removed
        """
        if self.ttl is None:
            return 0

        cutoff = (now or datetime.now(timezone.utc)) - self.ttl
        expired = [key for key, stored_at in self._hashes.items() if stored_at < cutoff]
        for key in expired:
            del self._hashes[key]

        self._expirations += len(expired)
        return len(expired)

    def clear(self) -> None:
        """Forget all hashes."""
        self._hashes.clear()

    def __len__(self) -> int:
        return len(self._hashes)

    def __contains__(self, content_hash: object) -> bool:
        return content_hash in self._hashes

    def get_stats(self) -> Dict[str, Any]:
        """
        Get deduplicator statistics.

        Returns:
            Dictionary with deduplicator statistics
        """
        return {
            "size": len(self._hashes),
            "capacity": self.capacity,
            "ttl_seconds": self.ttl.total_seconds() if self.ttl else None,
            "evictions": self._evictions,
            "expirations": self._expirations,
        }
