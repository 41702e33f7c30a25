"""
Consensus Engine Configuration

Configuration parameters for the correlation engine, validated on construction
so that a bad deployment fails at startup rather than at runtime.
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional

from shared.models import ScoreLevel


DEFAULT_KEYWORDS = (
    "tariff,tariffs,breaking,fed,interest rates,inflation,earnings,stock,market,"
    "trading,SEC,regulation,sanctions,trade war,merger,acquisition,ipo,crypto,"
    "bitcoin,ethereum"
)
DEFAULT_MARKET_KEYWORDS = (
    "S&P,SPY,QQQ,NASDAQ,DOW,VIX,treasury,bond,yield,dollar,EUR,oil,gold,silver"
)

FAIL_OPEN = "open"
FAIL_CLOSED = "closed"


class ConfigurationError(ValueError):
    """Raised when the engine configuration is invalid."""


def parse_keywords(*raw_lists: Optional[str]) -> FrozenSet[str]:
    """
    Parse comma-separated keyword lists into one topic vocabulary.

    Args:
        raw_lists: Comma-separated keyword strings (None entries are skipped)

    Returns:
        Frozen set of trimmed, lowercase, non-empty topics
    """
    topics = set()
    for raw in raw_lists:
        if not raw:
            continue
        for keyword in raw.split(","):
            normalized = keyword.strip().lower()
            if normalized:
                topics.add(normalized)
    return frozenset(topics)


@dataclass(frozen=True)
class EngineConfig:
    """Configuration parameters for the consensus engine."""

    topic_vocabulary: FrozenSet[str] = field(
        default_factory=lambda: parse_keywords(DEFAULT_KEYWORDS, DEFAULT_MARKET_KEYWORDS)
    )

    # Sliding window and quorum
    window_seconds: int = 300
    min_unique_accounts: int = 2
    cooldown_seconds: Optional[int] = None  # None -> half of the window

    # Memory bounds
    max_samples_per_topic: int = 5
    dedup_capacity: int = 10000
    dedup_ttl_seconds: Optional[int] = None

    # Scorer gate
    scorer_fail_policy: str = FAIL_OPEN
    min_score_level: ScoreLevel = ScoreLevel.NONE
    scorer_timeout_seconds: float = 15.0

    # Dispatch and housekeeping
    dispatch_timeout_seconds: float = 20.0
    sweep_interval_seconds: float = 60.0

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        vocabulary = parse_keywords(",".join(self.topic_vocabulary))
        object.__setattr__(self, "topic_vocabulary", vocabulary)

        if not vocabulary:
            raise ConfigurationError("Topic vocabulary must contain at least one topic")

        if self.window_seconds <= 0:
            raise ConfigurationError("Window seconds must be greater than 0")

        if self.min_unique_accounts < 1:
            raise ConfigurationError("Minimum unique accounts must be at least 1")

        if self.cooldown_seconds is None:
            object.__setattr__(self, "cooldown_seconds", self.window_seconds // 2)
        elif self.cooldown_seconds < 0:
            raise ConfigurationError("Cooldown seconds must be non-negative")

        if self.max_samples_per_topic < 1:
            raise ConfigurationError("Max samples per topic must be at least 1")

        if self.dedup_capacity < 1:
            raise ConfigurationError("Dedup capacity must be at least 1")

        if self.dedup_ttl_seconds is not None and self.dedup_ttl_seconds <= 0:
            raise ConfigurationError("Dedup TTL must be positive when set")

        if self.scorer_fail_policy not in (FAIL_OPEN, FAIL_CLOSED):
            raise ConfigurationError(
                f"Scorer fail policy must be '{FAIL_OPEN}' or '{FAIL_CLOSED}'"
            )

        try:
            object.__setattr__(self, "min_score_level", ScoreLevel.parse(self.min_score_level))
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

        if self.scorer_timeout_seconds <= 0 or self.dispatch_timeout_seconds <= 0:
            raise ConfigurationError("Collaborator timeouts must be positive")

        if self.sweep_interval_seconds <= 0:
            raise ConfigurationError("Sweep interval must be positive")

    @property
    def fail_open(self) -> bool:
        return self.scorer_fail_policy == FAIL_OPEN

    def to_dict(self) -> Dict[str, Any]:
        """Configuration as a JSON-compatible dictionary (for diagnostics)."""
        return {
            "window_seconds": self.window_seconds,
            "min_unique_accounts": self.min_unique_accounts,
            "cooldown_seconds": self.cooldown_seconds,
            "topic_vocabulary": sorted(self.topic_vocabulary),
            "max_samples_per_topic": self.max_samples_per_topic,
            "dedup_capacity": self.dedup_capacity,
            "dedup_ttl_seconds": self.dedup_ttl_seconds,
            "scorer_fail_policy": self.scorer_fail_policy,
            "min_score_level": self.min_score_level.value,
            "scorer_timeout_seconds": self.scorer_timeout_seconds,
            "dispatch_timeout_seconds": self.dispatch_timeout_seconds,
            "sweep_interval_seconds": self.sweep_interval_seconds,
        }


def create_engine_config(
    keywords: Iterable[str],
    window_seconds: int = 300,
    min_unique_accounts: int = 2,
    cooldown_seconds: Optional[int] = None,
    max_samples_per_topic: int = 5,
    dedup_capacity: int = 10000,
    **overrides: Any
) -> EngineConfig:
    """
    Create an engine configuration with common parameters.

    Args:
        keywords: Topic vocabulary (words or multi-word phrases)
        window_seconds: Sliding window length in seconds
        min_unique_accounts: Distinct accounts required for quorum
        cooldown_seconds: Minimum interval between firings per topic
        max_samples_per_topic: Samples retained per topic for alert messages
        dedup_capacity: Maximum number of remembered content hashes
        **overrides: Any other EngineConfig field

    Returns:
        Validated EngineConfig object
    """
    return EngineConfig(
        topic_vocabulary=frozenset(keywords),
        window_seconds=window_seconds,
        min_unique_accounts=min_unique_accounts,
        cooldown_seconds=cooldown_seconds,
        max_samples_per_topic=max_samples_per_topic,
        dedup_capacity=dedup_capacity,
        **overrides
    )


def _env_int(env: Mapping[str, str], name: str, default: Optional[int]) -> Optional[int]:
    value = env.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from e


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    value = env.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from e


def load_engine_config(env: Optional[Mapping[str, str]] = None) -> EngineConfig:
    """
    Build the engine configuration from environment variables.

    Args:
        env: Mapping to read from (defaults to ``os.environ``)

    Returns:
        Validated EngineConfig object

    Raises:
        ConfigurationError: If any value is malformed or out of range
    """
    env = os.environ if env is None else env

    return EngineConfig(
        topic_vocabulary=parse_keywords(
            env.get("KEYWORDS", DEFAULT_KEYWORDS),
            env.get("MARKET_KEYWORDS", DEFAULT_MARKET_KEYWORDS),
        ),
        window_seconds=_env_int(env, "WINDOW_SEC", 300),
        min_unique_accounts=_env_int(env, "MIN_UNIQUE_ACCOUNTS", 2),
        cooldown_seconds=_env_int(env, "COOLDOWN_SEC", None),
        max_samples_per_topic=_env_int(env, "MAX_SAMPLES_PER_TOPIC", 5),
        dedup_capacity=_env_int(env, "DEDUP_CAPACITY", 10000),
        dedup_ttl_seconds=_env_int(env, "DEDUP_TTL_SEC", None),
        scorer_fail_policy=env.get("SCORER_FAIL_POLICY", FAIL_OPEN).strip().lower(),
        min_score_level=env.get("MIN_SCORE_LEVEL", ScoreLevel.NONE.value),
        scorer_timeout_seconds=_env_float(env, "SCORER_TIMEOUT_SEC", 15.0),
        dispatch_timeout_seconds=_env_float(env, "DISPATCH_TIMEOUT_SEC", 20.0),
        sweep_interval_seconds=_env_float(env, "SWEEP_INTERVAL_SEC", 60.0),
    )
