"""
Topic Window Store

Per-topic sliding windows of recent observations. Every entry expires on
its own timestamp, so a bucket always describes "the last N seconds"
relative to the evaluation time.

The store is not synchronized; ConsensusEngine serializes access to it.
"""

import logging
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, List, Optional, Set, Tuple

from shared.models import NormalizedItem, WindowEntry

logger = logging.getLogger(__name__)


@dataclass
class TopicBucket:
    """Ordered window entries for a single topic."""

    topic: str
    entries: Deque[WindowEntry] = field(default_factory=deque)
    created_at: Optional[datetime] = None

    def purge(self, now: datetime, window: timedelta) -> int:
        """
        Drop entries older than the window.

        An entry is kept while ``now - entry.timestamp <= window``.

        Returns:
            Number of entries removed
        """
        before = len(self.entries)
        if before == 0:
            return 0
        self.entries = deque(e for e in self.entries if now - e.timestamp <= window)
        return before - len(self.entries)

    def append(self, entry: WindowEntry, max_samples: int) -> None:
        """Append an entry and release the sample that falls out of the cap."""
        self.entries.append(entry)

        # Entries are appended in time order, so the (max_samples + 1)-th
        # newest is the only one that can newly exceed the cap.
        index = len(self.entries) - max_samples - 1
        if index >= 0 and self.entries[index].sample is not None:
            self.entries[index] = replace(self.entries[index], sample=None)

    def distinct_accounts(self) -> Set[str]:
        return {entry.account for entry in self.entries}

    def samples(self, limit: int) -> Tuple[WindowEntry, ...]:
        """Entries still carrying a sample, newest first, bounded by ``limit``."""
        result: List[WindowEntry] = []
        for entry in reversed(self.entries):
            if entry.sample is None:
                continue
            result.append(entry)
            if len(result) >= limit:
                break
        return tuple(result)

    def is_empty(self) -> bool:
        return not self.entries

    def oldest(self) -> Optional[datetime]:
        return min((e.timestamp for e in self.entries), default=None)

    def newest(self) -> Optional[datetime]:
        return max((e.timestamp for e in self.entries), default=None)


class WindowStore:
    """
    Sliding-window store keyed by lowercase topic.

    Buckets are created lazily on the first hit for a topic and removed once
    they are empty after a purge.
    """

    def __init__(self, window_seconds: int, max_samples_per_topic: int = 5):
        """
        Initialize the window store.

        Args:
            window_seconds: Length of the sliding window in seconds
            max_samples_per_topic: Samples retained per topic for alert messages
        """
        if window_seconds <= 0:
            raise ValueError("Window seconds must be greater than 0")
        if max_samples_per_topic < 1:
            raise ValueError("Max samples per topic must be at least 1")

        self.window_seconds = window_seconds
        self.window = timedelta(seconds=window_seconds)
        self.max_samples_per_topic = max_samples_per_topic
        self._buckets: Dict[str, TopicBucket] = {}

    def insert(
        self,
        topic: str,
        account: str,
        sample: Optional[NormalizedItem],
        now: datetime
    ) -> int:
        """
        Record an observation of a topic and return its distinct-account count.

        Expired entries are purged first, then the new entry is appended, and
        the cardinality is computed over every retained entry (not just the
        capped samples).

        Args:
            topic: Lowercase topic token
            account: Originating account
            sample: Item that produced the observation
            now: Evaluation time, also used as the entry timestamp

        Returns:
            Number of distinct accounts currently in the topic's window
        """
        bucket = self._buckets.get(topic)
        if bucket is None:
            bucket = TopicBucket(topic=topic, created_at=now)
            self._buckets[topic] = bucket
        else:
            removed = bucket.purge(now, self.window)
            if removed:
                logger.debug(f"Purged {removed} expired entries from '{topic}'")

        bucket.append(
            WindowEntry(account=account, timestamp=now, sample=sample),
            self.max_samples_per_topic,
        )
        return len(bucket.distinct_accounts())

    def get_bucket(self, topic: str) -> Optional[TopicBucket]:
        return self._buckets.get(topic)

    def distinct_accounts(self, topic: str, now: datetime) -> Set[str]:
        """Distinct accounts for a topic over the window ending at ``now``."""
        bucket = self._buckets.get(topic)
        if bucket is None:
            return set()
        bucket.purge(now, self.window)
        return bucket.distinct_accounts()

    def samples(self, topic: str) -> Tuple[WindowEntry, ...]:
        bucket = self._buckets.get(topic)
        if bucket is None:
            return ()
        return bucket.samples(self.max_samples_per_topic)

    def purge_all(self, now: datetime) -> Tuple[int, int]:
        """
        Purge expired entries from every bucket and drop empty buckets.

        Args:
            now: Evaluation time

        Returns:
            Tuple of (entries removed, buckets removed)
        """
        entries_removed = 0
        empty_topics = []

        for topic, bucket in self._buckets.items():
            entries_removed += bucket.purge(now, self.window)
            if bucket.is_empty():
                empty_topics.append(topic)

        for topic in empty_topics:
            del self._buckets[topic]

        if entries_removed or empty_topics:
            logger.info(
                f"Window purge removed {entries_removed} entries "
                f"and {len(empty_topics)} empty topics"
            )

        return entries_removed, len(empty_topics)

    def remove(self, topic: str) -> bool:
        """Drop a topic's bucket entirely."""
        return self._buckets.pop(topic, None) is not None

    def topics(self) -> List[str]:
        return sorted(self._buckets)

    def __len__(self) -> int:
        return len(self._buckets)

    def describe(self, topic: str, now: datetime, preview_length: int = 120) -> Dict[str, Any]:
        """
        Diagnostic view of one bucket (read-only, no purge).

        Entries already past the window are excluded from the reported counts.
        """
        bucket = self._buckets.get(topic)
        if bucket is None:
            return {}

        live = [e for e in bucket.entries if now - e.timestamp <= self.window]
        oldest = min((e.timestamp for e in live), default=None)
        newest = max((e.timestamp for e in live), default=None)

        return {
            "topic": topic,
            "distinct_accounts": len({e.account for e in live}),
            "accounts": sorted({e.account for e in live}),
            "entries": len(live),
            "oldest_age_seconds": (now - oldest).total_seconds() if oldest else None,
            "newest_age_seconds": (now - newest).total_seconds() if newest else None,
            "samples": [
                {
                    "account": entry.account,
                    "age_seconds": (now - entry.timestamp).total_seconds(),
                    "source": entry.sample.source,
                    "preview": entry.sample.preview(preview_length),
                    "url": entry.sample.url,
                }
                for entry in bucket.samples(self.max_samples_per_topic)
                if now - entry.timestamp <= self.window
            ],
        }
