"""
Consensus Engine

Owns all correlation state (deduplicator, window store, cooldown guard) and
runs the ingestion pipeline:

    normalize -> dedup -> extract topics -> window insert -> quorum/cooldown

The whole sequence runs under one lock and performs no I/O. Scoring and
dispatch happen afterwards, outside the lock, on the immutable events the
locked section produced.
"""

import asyncio
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from prometheus_client import Counter, Gauge, Histogram
import structlog

from shared.models import ConsensusEvent, IngestResult, RawItem
from .config import EngineConfig
from .consensus import ConsensusEvaluator, CooldownGuard
from .deduplicator import ContentDeduplicator
from .dispatch import AlertDispatcher, DispatchError, LoggingDispatcher
from .keyword_extractor import KeywordExtractor, normalize_topic
from .normalizer import ItemNormalizer, content_hash
from .scoring import ScorerGate, SeverityScorer
from .window_store import WindowStore


# Prometheus metrics
ITEMS_RECEIVED = Counter('consensus_items_received_total', 'Total raw records received')
ITEMS_DROPPED = Counter(
    'consensus_items_dropped_total', 'Records dropped before the window store', ['reason']
)
EVENTS_FIRED = Counter('consensus_events_fired_total', 'Total consensus events fired')
DISPATCH_FAILURES = Counter('consensus_dispatch_failures_total', 'Total failed event dispatches')
SCORER_FAILURES = Counter('consensus_scorer_failures_total', 'Total scorer errors and timeouts')
INGEST_TIME = Histogram('consensus_ingest_seconds', 'Time spent correlating one batch')
ACTIVE_TOPICS = Gauge('consensus_active_topics', 'Topics with a live window bucket')


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ConsensusEngine:
    """
    Cross-source consensus filter.

    A topic fires when at least ``min_unique_accounts`` distinct accounts
    mention it within ``window_seconds``, and no earlier firing of the same
    topic is younger than ``cooldown_seconds``.
    """

    def __init__(
        self,
        config: EngineConfig,
        scorer: Optional[SeverityScorer] = None,
        dispatcher: Optional[AlertDispatcher] = None,
        clock: Callable[[], datetime] = utc_now
    ) -> None:
        """
        Initialize the engine.

        Args:
            config: Validated engine configuration
            scorer: Optional severity scorer consulted before dispatch
            dispatcher: Alert channel (defaults to the structured log)
            clock: Source of the current time
        """
        self.config = config
        self.clock = clock

        self.normalizer = ItemNormalizer()
        self.deduplicator = ContentDeduplicator(
            capacity=config.dedup_capacity,
            ttl_seconds=config.dedup_ttl_seconds,
        )
        self.extractor = KeywordExtractor(config.topic_vocabulary)
        self.window_store = WindowStore(
            window_seconds=config.window_seconds,
            max_samples_per_topic=config.max_samples_per_topic,
        )
        self.cooldown_guard = CooldownGuard(config.cooldown_seconds)
        self.evaluator = ConsensusEvaluator(
            min_unique_accounts=config.min_unique_accounts,
            cooldown_guard=self.cooldown_guard,
            window_seconds=config.window_seconds,
            max_samples=config.max_samples_per_topic,
        )
        self.scorer_gate = ScorerGate(
            scorer,
            fail_open=config.fail_open,
            min_level=config.min_score_level,
            timeout_seconds=config.scorer_timeout_seconds,
        )
        self.dispatcher = dispatcher or LoggingDispatcher()

        self._lock = threading.Lock()
        self.logger = structlog.get_logger(__name__)

        self._received = 0
        self._events_fired = 0
        self._dispatched = 0
        self._dispatch_failures = 0
        self._suppressed = 0
        self._started_at = clock()

    @property
    def scorer(self) -> Optional[SeverityScorer]:
        return self.scorer_gate.scorer

    def correlate(
        self,
        raw_items: Iterable[RawItem],
        source: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Tuple[IngestResult, List[ConsensusEvent]]:
        """
        Fold a batch of raw records into the topic windows.

        Args:
            raw_items: Schema-less records
            source: Source tag supplied by the transport
            now: Evaluation time (defaults to the engine clock)

        Returns:
            Tuple of (ingest counters, consensus events fired by this batch)
        """
        items = list(raw_items)
        now = now or self.clock()
        result = IngestResult(received=len(items))
        events: List[ConsensusEvent] = []

        start_time = time.time()

        with self._lock:
            self._received += len(items)

            for raw in items:
                item = self.normalizer.normalize(raw, source=source, received_at=now)
                if item is None:
                    result.rejected += 1
                    ITEMS_DROPPED.labels(reason='empty').inc()
                    continue

                digest = content_hash(item)
                if self.deduplicator.seen(digest, now):
                    result.duplicates += 1
                    ITEMS_DROPPED.labels(reason='duplicate').inc()
                    self.logger.debug("Duplicate item dropped", item_id=item.id, source=item.source)
                    continue
                self.deduplicator.remember(digest, now)

                topics = self.extractor.extract(item.text, item.title)
                if not topics:
                    result.unmatched += 1
                    ITEMS_DROPPED.labels(reason='unmatched').inc()
                    continue

                result.processed += 1

                for topic in sorted(topics):
                    distinct = self.window_store.insert(topic, item.account, item, now)
                    event = self.evaluator.evaluate(
                        topic, distinct, now, self.window_store.get_bucket(topic)
                    )
                    if event is not None:
                        events.append(event)
                        result.topics.append(topic)

            result.triggered = len(events)
            self._events_fired += len(events)
            ACTIVE_TOPICS.set(len(self.window_store))

        ITEMS_RECEIVED.inc(len(items))
        EVENTS_FIRED.inc(len(events))
        INGEST_TIME.observe(time.time() - start_time)

        return result, events

    async def ingest(
        self,
        raw_items: Iterable[RawItem],
        source: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> IngestResult:
        """
        Correlate a batch, then score and dispatch every event it fired.

        Scorer and dispatch failures are logged and counted; they never
        raise to the caller and never touch the window state.

        Args:
            raw_items: Schema-less records
            source: Source tag supplied by the transport
            now: Evaluation time (defaults to the engine clock)

        Returns:
            IngestResult for the batch
        """
        log = self.logger.bind(batch_id=str(uuid.uuid4())[:8], source=source)

        result, events = self.correlate(raw_items, source=source, now=now)
        log.info(
            "Batch correlated",
            received=result.received,
            processed=result.processed,
            duplicates=result.duplicates,
            unmatched=result.unmatched,
            triggered=result.triggered
        )

        for event in events:
            decision = await self.scorer_gate.evaluate(event)
            if decision.scorer_failed:
                SCORER_FAILURES.inc()

            if not decision.allowed:
                result.suppressed += 1
                self._suppressed += 1
                log.info("Consensus event suppressed", topic=event.topic, reason=decision.reason)
                continue

            if await self._dispatch(event, decision.score, log):
                result.dispatched += 1

        return result

    async def _dispatch(self, event, score, log) -> bool:
        try:
            await asyncio.wait_for(
                self.dispatcher.dispatch(event, score),
                timeout=self.config.dispatch_timeout_seconds
            )
        except asyncio.TimeoutError:
            self._dispatch_failures += 1
            DISPATCH_FAILURES.inc()
            log.error(
                "Dispatch timed out",
                topic=event.topic,
                timeout=self.config.dispatch_timeout_seconds
            )
            return False
        except DispatchError as e:
            self._dispatch_failures += 1
            DISPATCH_FAILURES.inc()
            log.error("Dispatch failed", topic=event.topic, error=str(e))
            return False
        except Exception as e:
            self._dispatch_failures += 1
            DISPATCH_FAILURES.inc()
            log.exception("Unexpected dispatcher error", topic=event.topic, error=str(e))
            return False

        self._dispatched += 1
        return True

    def sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Purge expired state across all topics.

        Args:
            now: Evaluation time (defaults to the engine clock)

        Returns:
            Counts of removed entries, buckets, cooldown records and hashes
        """
        now = now or self.clock()

        with self._lock:
            entries_removed, buckets_removed = self.window_store.purge_all(now)
            cooldowns_removed = self.cooldown_guard.purge_expired(now)
            hashes_removed = self.deduplicator.purge_expired(now)
            ACTIVE_TOPICS.set(len(self.window_store))

        return {
            "entries_removed": entries_removed,
            "buckets_removed": buckets_removed,
            "cooldowns_removed": cooldowns_removed,
            "hashes_removed": hashes_removed,
        }

    async def run_sweeper(
        self,
        interval: Optional[float] = None,
        stop_event: Optional[asyncio.Event] = None
    ) -> None:
        """
        Sweep periodically until ``stop_event`` is set.

        Args:
            interval: Seconds between sweeps (defaults to the configured interval)
            stop_event: Event that ends the loop
        """
        interval = interval or self.config.sweep_interval_seconds
        stop_event = stop_event or asyncio.Event()

        self.logger.info("Sweeper started", interval=interval)

        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                removed = self.sweep()
            except Exception as e:
                self.logger.error("Sweep failed", error=str(e))
                continue

            if any(removed.values()):
                self.logger.info("Sweep completed", **removed)

        self.logger.info("Sweeper stopped")

    def snapshot(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Read-only view of the current window state for diagnostics.

        Topics are ordered by distinct-account count, highest first.
        """
        now = now or self.clock()

        with self._lock:
            topics = []
            for topic in self.window_store.topics():
                view = self.window_store.describe(topic, now)
                last_alert = self.cooldown_guard.last_alert_at(topic)
                view["last_alert_at"] = last_alert.isoformat() if last_alert else None
                topics.append(view)

            dedup_stats = self.deduplicator.get_stats()

        topics.sort(key=lambda view: (-view["distinct_accounts"], view["topic"]))

        return {
            "generated_at": now.isoformat(),
            "window_seconds": self.config.window_seconds,
            "min_unique_accounts": self.config.min_unique_accounts,
            "cooldown_seconds": self.config.cooldown_seconds,
            "topic_count": len(topics),
            "topics": topics,
            "deduplicator": dedup_stats,
        }

    def add_topic(self, topic: str) -> bool:
        """Add a topic to the vocabulary. Returns False if empty or already present."""
        with self._lock:
            added = self.extractor.add_topic(topic)
        if added:
            self.logger.info("Topic added", topic=normalize_topic(topic))
        return added

    def remove_topic(self, topic: str) -> bool:
        """
        Remove a topic together with its window bucket and cooldown record.

        Returns:
            True if the topic was configured
        """
        normalized = normalize_topic(topic)

        with self._lock:
            removed = self.extractor.remove_topic(normalized)
            if removed:
                self.window_store.remove(normalized)
                self.cooldown_guard.reset(normalized)
                ACTIVE_TOPICS.set(len(self.window_store))

        if removed:
            self.logger.info("Topic removed", topic=normalized)
        return removed

    def topics(self) -> List[str]:
        return sorted(self.extractor.vocabulary)

    async def close(self) -> None:
        """Release dispatcher resources."""
        await self.dispatcher.close()

    def get_stats(self) -> Dict[str, Any]:
        """
        Get engine statistics.

        Returns:
            Dictionary with engine, evaluator, scorer and dedup statistics
        """
        with self._lock:
            return {
                "started_at": self._started_at.isoformat(),
                "records_received": self._received,
                "events_fired": self._events_fired,
                "events_dispatched": self._dispatched,
                "events_suppressed": self._suppressed,
                "dispatch_failures": self._dispatch_failures,
                "active_topics": len(self.window_store),
                "vocabulary_size": len(self.extractor.vocabulary),
                "dispatcher": self.dispatcher.name,
                "evaluator": self.evaluator.get_stats(),
                "scorer": self.scorer_gate.get_stats(),
                "deduplicator": self.deduplicator.get_stats(),
            }
