#!/usr/bin/env python3
"""
Consensus Engine Service

Receives batches of social posts and news items over a webhook, correlates
them by topic across distinct accounts, and dispatches consensus alerts.
Provides health check, diagnostics, vocabulary management and metrics
endpoints.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from json import JSONDecodeError
from typing import Any, Dict, List, Mapping, Optional

from fastapi import FastAPI, HTTPException, Request
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from pydantic import BaseModel
from redis.exceptions import RedisError
from starlette.responses import Response
import uvicorn
import structlog

from .alert_cache import RedisAlertCache
from .config import load_engine_config
from .dispatch import AlertDispatcher, CompositeDispatcher, LoggingDispatcher, TelegramDispatcher
from .engine import ConsensusEngine
from .event_publisher import ConsensusEventPublisher
from .keyword_extractor import normalize_topic
from .normalizer import extract_raw_items
from .scoring import ScorerError, SeverityScorer, create_scorer

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

SERVICE_NAME = "consensus-engine"

PROVIDER_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "gemini": "GEMINI_API_KEY",
}

SECRET_ENV = (
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "GEMINI_API_KEY",
    "TELEGRAM_BOT_TOKEN",
    "TELEGRAM_CHAT_ID",
)

# Global engine instance
engine: Optional[ConsensusEngine] = None


def build_scorer(env: Mapping[str, str], timeout_seconds: float) -> Optional[SeverityScorer]:
    """
    Create the severity scorer from environment variables.

    ``SCORER_PROVIDER`` selects the provider; when unset, the first provider
    with an API key is used.
    """
    provider = env.get("SCORER_PROVIDER")
    if provider is None:
        provider = next((name for name, key in PROVIDER_KEY_ENV.items() if env.get(key)), "none")

    api_key = env.get(PROVIDER_KEY_ENV.get(provider.strip().lower(), ""), "")
    return create_scorer(
        provider,
        api_key,
        model=env.get("SCORER_MODEL") or None,
        timeout_seconds=timeout_seconds,
    )


def build_dispatcher(env: Mapping[str, str], timeout_seconds: float) -> AlertDispatcher:
    """Create the alert channel(s) configured in the environment."""
    channels: List[AlertDispatcher] = []

    bot_token = env.get("TELEGRAM_BOT_TOKEN")
    chat_id = env.get("TELEGRAM_CHAT_ID")
    if bot_token and chat_id:
        channels.append(TelegramDispatcher(bot_token, chat_id, timeout_seconds=timeout_seconds))
    elif bot_token or chat_id:
        logger.warning("Telegram needs both TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID, channel disabled")

    kafka_servers = env.get("KAFKA_BOOTSTRAP_SERVERS")
    if kafka_servers:
        channels.append(ConsensusEventPublisher(
            bootstrap_servers=kafka_servers,
            topic_name=env.get("KAFKA_TOPIC_CONSENSUS_EVENTS", "consensus-events"),
        ))

    redis_host = env.get("REDIS_HOST")
    if redis_host:
        channels.append(RedisAlertCache(
            redis_host=redis_host,
            redis_port=int(env.get("REDIS_PORT", "6379")),
        ))

    if not channels:
        logger.warning("No alert channel configured, consensus events are only logged")
        return LoggingDispatcher()
    if len(channels) == 1:
        return channels[0]
    return CompositeDispatcher(channels)


def create_engine(env: Optional[Mapping[str, str]] = None) -> ConsensusEngine:
    """
    Build the engine and its collaborators from environment variables.

    Raises:
        ConfigurationError: If the engine configuration is invalid
    """
    env = os.environ if env is None else env
    config = load_engine_config(env)

    scorer = build_scorer(env, config.scorer_timeout_seconds)
    dispatcher = build_dispatcher(env, config.dispatch_timeout_seconds)

    logger.info(
        "Configuration loaded",
        window_seconds=config.window_seconds,
        min_unique_accounts=config.min_unique_accounts,
        cooldown_seconds=config.cooldown_seconds,
        topics=len(config.topic_vocabulary),
        scorer=scorer.name if scorer else None,
        dispatcher=dispatcher.name
    )
    return ConsensusEngine(config, scorer=scorer, dispatcher=dispatcher)


def _channels(dispatcher: AlertDispatcher) -> List[AlertDispatcher]:
    return dispatcher.dispatchers if isinstance(dispatcher, CompositeDispatcher) else [dispatcher]


def _alert_cache(current: ConsensusEngine) -> Optional[RedisAlertCache]:
    for channel in _channels(current.dispatcher):
        if isinstance(channel, RedisAlertCache):
            return channel
    return None


async def _connect_channels(dispatcher: AlertDispatcher) -> None:
    for channel in _channels(dispatcher):
        if isinstance(channel, ConsensusEventPublisher):
            try:
                await channel.connect()
            except Exception as e:
                logger.warning("Kafka unavailable at startup, will retry on dispatch", error=str(e))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the engine and its sweeper; close channels on shutdown."""
    global engine

    logger.info("Starting Consensus Engine service...")
    engine = create_engine()
    await _connect_channels(engine.dispatcher)

    stop_event = asyncio.Event()
    sweeper_task = asyncio.create_task(engine.run_sweeper(stop_event=stop_event))

    try:
        yield
    finally:
        logger.info("Shutting down Consensus Engine service...")
        stop_event.set()
        await sweeper_task
        try:
            await engine.close()
        except Exception as e:
            logger.error("Error closing alert channels", error=str(e))
        logger.info("Shutdown complete")


# FastAPI app for ingestion, diagnostics and metrics
app = FastAPI(title="Consensus Engine", version="1.0.0", lifespan=lifespan)


class KeywordRequest(BaseModel):
    keyword: Optional[str] = None
    keywords: List[str] = []


class AnalyzeRequest(BaseModel):
    text: str


def _require_engine() -> ConsensusEngine:
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not initialized")
    return engine


@app.get("/")
async def root() -> Dict[str, Any]:
    """Root endpoint with service information."""
    info = {
        "service": SERVICE_NAME,
        "status": "running",
        "description": "Cross-source consensus filter for social and news signals",
    }
    if engine is not None:
        info.update(engine.get_stats())
    return info


@app.get("/health")
async def health_check() -> Dict[str, Any]:
    """Health check endpoint for Docker health checks."""
    if engine is None:
        return {"status": "starting", "service": SERVICE_NAME}

    health = {
        "status": "healthy",
        "service": SERVICE_NAME,
        "window_seconds": engine.config.window_seconds,
        "min_unique_accounts": engine.config.min_unique_accounts,
        "cooldown_seconds": engine.config.cooldown_seconds,
        "vocabulary_size": len(engine.topics()),
        "active_topics": len(engine.window_store),
    }

    cache = _alert_cache(engine)
    if cache is not None:
        redis_healthy = await cache.health_check()
        health["redis"] = "connected" if redis_healthy else "unavailable"
        if not redis_healthy:
            health["status"] = "degraded"

    return health


@app.get("/debug")
async def debug() -> Dict[str, Any]:
    """Configuration and memory diagnostics; secrets are reported as set/missing."""
    current = _require_engine()
    stats = current.get_stats()

    return {
        "config": current.config.to_dict(),
        "secrets": {name: "set" if os.getenv(name) else "missing" for name in SECRET_ENV},
        "memory": {
            "buckets": stats["active_topics"],
            "dedup_size": stats["deduplicator"]["size"],
            "dedup_capacity": stats["deduplicator"]["capacity"],
            "cooldown_records": stats["evaluator"]["topics_cooling_down"],
        },
        "features": {
            "scorer": stats["scorer"]["scorer"],
            "scorer_fail_policy": stats["scorer"]["fail_policy"],
            "dispatcher": current.dispatcher.name,
            "channels": (
                current.dispatcher.channel_names()
                if isinstance(current.dispatcher, CompositeDispatcher)
                else [current.dispatcher.name]
            ),
        },
    }


@app.get("/debug/topics")
async def debug_topics() -> Dict[str, Any]:
    """Read-only snapshot of the topic windows."""
    return _require_engine().snapshot()


@app.get("/stats")
async def get_stats() -> Dict[str, Any]:
    """Get detailed engine statistics."""
    return _require_engine().get_stats()


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus metrics endpoint."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.post("/webhook")
async def webhook(request: Request, source: Optional[str] = None) -> Dict[str, Any]:
    """Ingest a batch of records from any provider."""
    current = _require_engine()

    try:
        payload = await request.json()
    except (JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Body must be JSON")

    items = extract_raw_items(payload)
    result = await current.ingest(items, source=source)
    return result.to_dict()


@app.get("/keywords")
async def list_keywords() -> Dict[str, Any]:
    topics = _require_engine().topics()
    return {"keywords": topics, "count": len(topics)}


@app.post("/keywords")
async def add_keywords(body: KeywordRequest) -> Dict[str, Any]:
    """Add one or more topics to the vocabulary."""
    current = _require_engine()

    requested = list(body.keywords)
    if body.keyword:
        requested.append(body.keyword)
    if not any(keyword.strip() for keyword in requested):
        raise HTTPException(status_code=400, detail="No keyword provided")

    added = [normalize_topic(keyword) for keyword in requested if current.add_topic(keyword)]
    return {"added": added, "count": len(current.topics())}


@app.delete("/keywords/{keyword}")
async def remove_keyword(keyword: str) -> Dict[str, Any]:
    """Remove a topic with its window and cooldown state."""
    current = _require_engine()
    if not current.remove_topic(keyword):
        raise HTTPException(status_code=404, detail=f"Keyword '{keyword}' not configured")
    return {"removed": normalize_topic(keyword), "count": len(current.topics())}


@app.post("/analyze")
async def analyze(body: AnalyzeRequest) -> Dict[str, Any]:
    """Score arbitrary text with the configured scorer."""
    current = _require_engine()
    if current.scorer is None:
        raise HTTPException(status_code=503, detail="No scorer configured")
    if not body.text.strip():
        raise HTTPException(status_code=400, detail="Text cannot be empty")

    try:
        score = await current.scorer_gate.score_text(body.text)
    except ScorerError as e:
        logger.warning("Ad-hoc analysis failed", error=str(e))
        raise HTTPException(status_code=502, detail=str(e))

    return {
        "level": score.level.value,
        "reason": score.reason,
        "provider": score.provider,
        "matched_keywords": sorted(current.extractor.extract(body.text)),
    }


def _require_alert_cache() -> RedisAlertCache:
    cache = _alert_cache(_require_engine())
    if cache is None:
        raise HTTPException(status_code=404, detail="Redis alert cache not configured")
    return cache


@app.get("/events/recent")
async def recent_events(limit: int = 20) -> Dict[str, Any]:
    """Most recent consensus events from the Redis cache, newest first."""
    cache = _require_alert_cache()
    try:
        events = await cache.get_recent_events(limit=max(0, min(limit, cache.max_events)))
    except RedisError as e:
        raise HTTPException(status_code=503, detail=f"Redis unavailable: {e}")
    return {"events": events, "count": len(events)}


@app.get("/events/{topic}")
async def topic_event(topic: str) -> Dict[str, Any]:
    """Latest cached consensus event for one topic."""
    cache = _require_alert_cache()
    try:
        event = await cache.get_topic_event(normalize_topic(topic))
    except RedisError as e:
        raise HTTPException(status_code=503, detail=f"Redis unavailable: {e}")
    if event is None:
        raise HTTPException(status_code=404, detail=f"No cached event for '{topic}'")
    return event


def main() -> None:
    """Main application entry point."""
    log_level = os.getenv("LOG_LEVEL", "INFO")
    port = int(os.getenv("PORT", "8000"))

    logging.basicConfig(level=getattr(logging, log_level.upper(), logging.INFO), format="%(message)s")

    uvicorn.run(app, host="0.0.0.0", port=port, log_level=log_level.lower())


if __name__ == "__main__":
    main()
