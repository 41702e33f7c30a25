"""Redis cache of recently fired consensus events.

The cache keeps a capped list of the latest events plus the last event per
topic, each with a TTL, so dashboards can read recent alerts without talking
to the engine.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.exceptions import ConnectionError, RedisError, TimeoutError

from shared.models import ConsensusEvent, Score
from .dispatch import AlertDispatcher, DispatchError
from .event_publisher import build_event_payload


logger = logging.getLogger(__name__)


class RedisAlertCache(AlertDispatcher):
    """Redis-backed dispatcher caching consensus events.

    Attributes:
        redis_client: Async Redis client instance
        ttl: TTL in seconds for cached events
        max_events: Length of the recent-events list
        key_prefix: Prefix for all cache keys
    """

    name = "redis"

    def __init__(
        self,
        redis_host: str = "localhost",
        redis_port: int = 6379,
        redis_db: int = 0,
        redis_password: Optional[str] = None,
        ttl: int = 3600,
        max_events: int = 100,
        key_prefix: str = "consensus",
        socket_timeout: float = 5.0,
        socket_connect_timeout: float = 5.0,
    ) -> None:
        """Initialize the alert cache.

        Args:
            redis_host: Redis server hostname
            redis_port: Redis server port
            redis_db: Redis database number
            redis_password: Optional Redis password
            ttl: TTL in seconds for cached events
            max_events: Number of recent events kept in the list
            key_prefix: Prefix for cache keys
            socket_timeout: Socket timeout in seconds
            socket_connect_timeout: Socket connection timeout in seconds
        """
        if max_events < 1:
            raise ValueError("max_events must be at least 1")

        self.redis_client: Redis = redis.Redis(
            host=redis_host,
            port=redis_port,
            db=redis_db,
            password=redis_password,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_connect_timeout,
            decode_responses=True,
        )
        self.ttl = ttl
        self.max_events = max_events
        self.key_prefix = key_prefix

    @property
    def recent_key(self) -> str:
        return f"{self.key_prefix}:events:recent"

    def topic_key(self, topic: str) -> str:
        return f"{self.key_prefix}:events:topic:{topic}"

    async def dispatch(self, event: ConsensusEvent, score: Optional[Score] = None) -> None:
        """Cache one event in the recent list and under its topic.

        Raises:
            DispatchError: If Redis is unreachable
        """
        encoded = json.dumps(build_event_payload(event, score), ensure_ascii=False)

        try:
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.lpush(self.recent_key, encoded)
                pipe.ltrim(self.recent_key, 0, self.max_events - 1)
                pipe.expire(self.recent_key, self.ttl)
                pipe.setex(self.topic_key(event.topic), self.ttl, encoded)
                await pipe.execute()
        except RedisError as e:
            logger.error(f"Failed to cache consensus event for '{event.topic}': {e}")
            raise DispatchError(f"Redis cache failed: {e}") from e

        logger.info(f"Cached consensus event for '{event.topic}' with TTL {self.ttl}s")

    async def get_recent_events(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Retrieve the most recent cached events, newest first.

        Args:
            limit: Maximum number of events to return

        Raises:
            ConnectionError: If Redis connection fails
        """
        if limit <= 0:
            return []

        try:
            raw_events = await self.redis_client.lrange(self.recent_key, 0, limit - 1)
        except (ConnectionError, TimeoutError) as e:
            logger.error(f"Failed to read recent events: {e}")
            raise

        events = []
        for raw in raw_events:
            try:
                events.append(json.loads(raw))
            except json.JSONDecodeError as e:
                logger.warning(f"Skipping undecodable cached event: {e}")
        return events

    async def get_topic_event(self, topic: str) -> Optional[Dict[str, Any]]:
        """Last cached event for a topic, or None."""
        try:
            raw = await self.redis_client.get(self.topic_key(topic))
        except (ConnectionError, TimeoutError) as e:
            logger.error(f"Failed to read cached event for '{topic}': {e}")
            raise

        if not raw:
            return None

        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to decode cached event for '{topic}': {e}")
            return None

    async def health_check(self) -> bool:
        """Check if Redis connection is healthy."""
        try:
            await self.redis_client.ping()
            return True
        except (ConnectionError, TimeoutError) as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    async def close(self) -> None:
        """Close the Redis connection."""
        await self.redis_client.aclose()
