"""
Consensus Event Publisher

Kafka dispatcher for consensus events, with JSON serialization,
topic-keyed partitioning and retry with exponential backoff.
"""

import asyncio
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from kafka import KafkaProducer
from kafka.errors import KafkaError, KafkaTimeoutError, NoBrokersAvailable
import structlog

from shared.models import ConsensusEvent, Score
from .dispatch import AlertDispatcher, DispatchError


class ConsensusEventPublisher(AlertDispatcher):
    """
    Publishes consensus events to a Kafka topic.

    Events for the same topic share a partition key, so consumers see them in
    firing order.
    """

    name = "kafka"

    def __init__(
        self,
        bootstrap_servers: str,
        topic_name: str = "consensus-events",
        max_retries: int = 3,
        initial_backoff: float = 1.0,
        max_backoff: float = 10.0,
        backoff_multiplier: float = 2.0,
        send_timeout: float = 10.0,
        acks: str = "all",
        linger_ms: int = 10
    ) -> None:
        """
        Initialize the consensus event publisher.

        Args:
            bootstrap_servers: Comma-separated list of Kafka broker addresses
            topic_name: Name of the Kafka topic to publish to
            max_retries: Maximum number of retry attempts for failed sends
            initial_backoff: Initial backoff delay in seconds
            max_backoff: Maximum backoff delay in seconds
            backoff_multiplier: Multiplier for exponential backoff
            send_timeout: Seconds to wait for a broker acknowledgment
            acks: Acknowledgment level ('0', '1', or 'all')
            linger_ms: Time to wait for additional messages before sending batch
        """
        self.bootstrap_servers = bootstrap_servers
        self.topic_name = topic_name
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.backoff_multiplier = backoff_multiplier
        self.send_timeout = send_timeout

        self.logger = structlog.get_logger(__name__)
        self._correlation_id = str(uuid.uuid4())

        self._events_sent = 0
        self._events_failed = 0
        self._retry_attempts = 0

        self._producer_config = {
            'bootstrap_servers': bootstrap_servers.split(','),
            'value_serializer': self._serialize_payload,
            'key_serializer': self._serialize_partition_key,
            'acks': acks,
            'linger_ms': linger_ms,
            'compression_type': 'gzip',
            'request_timeout_ms': 30000,
        }

        self._producer: Optional[KafkaProducer] = None
        self._is_connected = False

    async def connect(self) -> None:
        """
        Create the Kafka producer.

        Raises:
            KafkaError: If connection to Kafka fails
        """
        self._correlation_id = str(uuid.uuid4())
        log = self.logger.bind(
            correlation_id=self._correlation_id,
            bootstrap_servers=self.bootstrap_servers,
            topic=self.topic_name
        )

        log.info("Connecting to Kafka cluster for consensus events")

        try:
            self._producer = KafkaProducer(**self._producer_config)
            self._is_connected = True
            log.info("Connected to Kafka cluster")
        except Exception as e:
            self._is_connected = False
            log.error("Failed to connect to Kafka", error=str(e))
            raise KafkaError(f"Kafka connection failed: {e}")

    async def dispatch(self, event: ConsensusEvent, score: Optional[Score] = None) -> None:
        """
        Publish one consensus event, retrying transient broker errors.

        Raises:
            DispatchError: If the event could not be published
        """
        log = self.logger.bind(correlation_id=self._correlation_id, topic=event.topic)

        if not self._is_connected:
            try:
                await self.connect()
            except KafkaError as e:
                self._events_failed += 1
                raise DispatchError(str(e)) from e

        payload = build_event_payload(event, score)
        retry_count = 0

        while True:
            try:
                future = self._producer.send(
                    self.topic_name,
                    key=event.topic,
                    value=payload,
                    timestamp_ms=int(event.fired_at.timestamp() * 1000)
                )
                metadata = await asyncio.to_thread(future.get, timeout=self.send_timeout)

                self._events_sent += 1
                log.info(
                    "Consensus event published",
                    partition=metadata.partition,
                    offset=metadata.offset
                )
                return

            except (KafkaTimeoutError, KafkaError) as e:
                retry_count += 1
                self._retry_attempts += 1

                if retry_count > self.max_retries:
                    self._events_failed += 1
                    log.error("Consensus event publish failed after all retries",
                              error=str(e), retry_count=retry_count)
                    raise DispatchError(f"Kafka publish failed: {e}") from e

                backoff_delay = min(
                    self.initial_backoff * (self.backoff_multiplier ** (retry_count - 1)),
                    self.max_backoff
                )
                log.warning("Consensus event publish failed, retrying",
                            error=str(e), retry_count=retry_count, backoff_delay=backoff_delay)
                await asyncio.sleep(backoff_delay)

                if isinstance(e, NoBrokersAvailable):
                    await self._reconnect()

    async def _reconnect(self) -> None:
        if self._producer:
            try:
                self._producer.close(timeout=5)
            except Exception as e:
                self.logger.warning("Error closing producer", error=str(e))
        self._producer = None
        self._is_connected = False

        try:
            await self.connect()
        except KafkaError as e:
            self.logger.error("Reconnection failed", error=str(e))

    async def close(self) -> None:
        """Flush and close the Kafka producer."""
        if not self._producer:
            return
        try:
            self._producer.flush(timeout=10)
            self._producer.close(timeout=10)
            self.logger.info(
                "Consensus event publisher closed",
                correlation_id=self._correlation_id,
                events_sent=self._events_sent,
                events_failed=self._events_failed
            )
        except Exception as e:
            self.logger.error("Error closing consensus event publisher", error=str(e))
        finally:
            self._producer = None
            self._is_connected = False

    @staticmethod
    def _serialize_payload(payload: Dict[str, Any]) -> bytes:
        return json.dumps(payload, ensure_ascii=False).encode('utf-8')

    @staticmethod
    def _serialize_partition_key(key: str) -> bytes:
        return key.encode('utf-8')

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    def get_stats(self) -> Dict[str, Any]:
        """
        Get publisher statistics.

        Returns:
            Dictionary containing publisher statistics
        """
        return {
            'is_connected': self._is_connected,
            'events_sent': self._events_sent,
            'events_failed': self._events_failed,
            'retry_attempts': self._retry_attempts,
            'topic_name': self.topic_name,
            'bootstrap_servers': self.bootstrap_servers,
            'correlation_id': self._correlation_id,
        }


def build_event_payload(event: ConsensusEvent, score: Optional[Score] = None) -> Dict[str, Any]:
    """
    Message body for a consensus event.

    Args:
        event: Consensus event
        score: Optional severity score

    Returns:
        JSON-compatible dictionary
    """
    payload = event.to_dict()
    payload['score'] = (
        {'level': score.level.value, 'reason': score.reason, 'provider': score.provider}
        if score else None
    )
    payload['published_at'] = datetime.now(timezone.utc).isoformat()
    return payload
