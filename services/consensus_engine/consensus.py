"""
Consensus Evaluation

Quorum detection across distinct accounts, rate limited per topic by a
cooldown guard. Firing never clears the topic's bucket; the cooldown alone
keeps an ongoing topic from re-alerting on every insert.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import structlog

from shared.models import ConsensusEvent
from .window_store import TopicBucket


class CooldownGuard:
    """
    Minimum interval between two consensus firings for the same topic.

    This is a rate limiter only; it plays no part in counting distinct accounts.
    """

    def __init__(self, cooldown_seconds: int) -> None:
        """
        Initialize the cooldown guard.

        Args:
            cooldown_seconds: Minimum seconds between firings of one topic
        """
        if cooldown_seconds < 0:
            raise ValueError("Cooldown seconds must be non-negative")

        self.cooldown = timedelta(seconds=cooldown_seconds)
        self._last_alert_at: Dict[str, datetime] = {}

    def permit(self, topic: str, now: datetime) -> bool:
        """
        Check whether a topic may fire now, recording the firing if so.

        Args:
            topic: Topic token
            now: Evaluation time

        Returns:
            True if the cooldown has elapsed (or the topic never fired)
        """
        last = self._last_alert_at.get(topic)
        if last is not None and now - last < self.cooldown:
            return False

        self._last_alert_at[topic] = now
        return True

    def last_alert_at(self, topic: str) -> Optional[datetime]:
        return self._last_alert_at.get(topic)

    def reset(self, topic: str) -> None:
        self._last_alert_at.pop(topic, None)

    def purge_expired(self, now: datetime) -> int:
        """
        Forget topics whose cooldown has fully elapsed.

        Returns:
            Number of cooldown records removed
        """
        expired = [
            topic for topic, last in self._last_alert_at.items()
            if now - last >= self.cooldown
        ]
        for topic in expired:
            del self._last_alert_at[topic]
        return len(expired)

    def __len__(self) -> int:
        return len(self._last_alert_at)


class ConsensusEvaluator:
    """Decides when a topic has been corroborated by enough distinct accounts."""

    def __init__(
        self,
        min_unique_accounts: int,
        cooldown_guard: CooldownGuard,
        window_seconds: int,
        max_samples: int = 5
    ) -> None:
        """
        Initialize the evaluator.

        Args:
            min_unique_accounts: Distinct accounts required for quorum
            cooldown_guard: Guard rate limiting firings per topic
            window_seconds: Window length reported on events
            max_samples: Maximum samples attached to an event
        """
        if min_unique_accounts < 1:
            raise ValueError("Minimum unique accounts must be at least 1")

        self.min_unique_accounts = min_unique_accounts
        self.cooldown_guard = cooldown_guard
        self.window_seconds = window_seconds
        self.max_samples = max_samples

        self.logger = structlog.get_logger(__name__)

        self._quorum_hits = 0
        self._cooldown_suppressed = 0
        self._events_fired = 0

    def evaluate(
        self,
        topic: str,
        distinct_accounts: int,
        now: datetime,
        bucket: TopicBucket
    ) -> Optional[ConsensusEvent]:
        """
        Fire a consensus event if quorum holds and the cooldown permits it.

        Args:
            topic: Topic token
            distinct_accounts: Distinct-account count after the latest insert
            now: Evaluation time
            bucket: The topic's bucket (post-purge), used for the snapshot

        Returns:
            Immutable ConsensusEvent, or None if nothing fires
        """
        if distinct_accounts < self.min_unique_accounts:
            return None

        self._quorum_hits += 1
        log = self.logger.bind(topic=topic, distinct_accounts=distinct_accounts)

        if not self.cooldown_guard.permit(topic, now):
            self._cooldown_suppressed += 1
            log.debug("Quorum held but topic is cooling down")
            return None

        event = ConsensusEvent(
            topic=topic,
            distinct_accounts=frozenset(bucket.distinct_accounts()),
            samples=bucket.samples(self.max_samples),
            fired_at=now,
            window_seconds=self.window_seconds,
        )
        self._events_fired += 1

        log.info(
            "Consensus reached",
            required=self.min_unique_accounts,
            samples=len(event.samples)
        )
        return event

    def get_stats(self) -> Dict[str, Any]:
        """
        Get evaluator statistics.

        Returns:
            Dictionary with evaluator statistics
        """
        return {
            "min_unique_accounts": self.min_unique_accounts,
            "cooldown_seconds": self.cooldown_guard.cooldown.total_seconds(),
            "quorum_hits": self._quorum_hits,
            "cooldown_suppressed": self._cooldown_suppressed,
            "events_fired": self._events_fired,
            "topics_cooling_down": len(self.cooldown_guard),
        }
