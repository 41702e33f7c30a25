"""
Unit tests for engine configuration.

Covers defaults, validation failures and loading from environment variables.
"""

import pytest

from shared.models import ScoreLevel
from services.consensus_engine.config import (
    ConfigurationError,
    EngineConfig,
    FAIL_CLOSED,
    create_engine_config,
    load_engine_config,
    parse_keywords,
)


class TestParseKeywords:
    """Test keyword list parsing."""

    def test_trims_lowercases_and_collapses(self):
        topics = parse_keywords(" Tariffs ,FED,,fed", "S&P, Oil ")

        assert topics == frozenset({"tariffs", "fed", "s&p", "oil"})

    def test_skips_missing_lists(self):
        assert parse_keywords(None, "", "gold") == frozenset({"gold"})


class TestEngineConfig:
    """Test EngineConfig defaults and validation."""

    def test_defaults(self):
        config = EngineConfig()

        assert config.window_seconds == 300
        assert config.min_unique_accounts == 2
        assert config.cooldown_seconds == 150
        assert config.max_samples_per_topic == 5
        assert config.dedup_capacity == 10000
        assert config.dedup_ttl_seconds is None
        assert config.fail_open is True
        assert config.min_score_level == ScoreLevel.NONE
        assert "tariffs" in config.topic_vocabulary
        assert "s&p" in config.topic_vocabulary

    def test_cooldown_defaults_to_half_window(self):
        config = create_engine_config(["fed"], window_seconds=600)

        assert config.cooldown_seconds == 300

    def test_explicit_zero_cooldown_is_kept(self):
        config = create_engine_config(["fed"], cooldown_seconds=0)

        assert config.cooldown_seconds == 0

    def test_vocabulary_is_normalized(self):
        config = create_engine_config([" Trade War ", "FED", ""])

        assert config.topic_vocabulary == frozenset({"trade war", "fed"})

    def test_min_score_level_accepts_string(self):
        config = create_engine_config(["fed"], min_score_level="Medium")

        assert config.min_score_level == ScoreLevel.MEDIUM

    @pytest.mark.parametrize("overrides", [
        {"window_seconds": 0},
        {"min_unique_accounts": 0},
        {"cooldown_seconds": -1},
        {"max_samples_per_topic": 0},
        {"dedup_capacity": 0},
        {"dedup_ttl_seconds": 0},
        {"scorer_fail_policy": "maybe"},
        {"min_score_level": "critical"},
        {"scorer_timeout_seconds": 0},
        {"sweep_interval_seconds": -5},
    ])
    def test_invalid_values_raise(self, overrides):
        with pytest.raises(ConfigurationError):
            create_engine_config(["fed"], **overrides)

    def test_empty_vocabulary_raises(self):
        with pytest.raises(ConfigurationError, match="at least one topic"):
            EngineConfig(topic_vocabulary=frozenset({" ", ""}))

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            create_engine_config(["fed"], min_unique_accounts=0)

    def test_to_dict(self):
        config = create_engine_config(["fed", "oil"], window_seconds=120)
        data = config.to_dict()

        assert data["window_seconds"] == 120
        assert data["cooldown_seconds"] == 60
        assert data["topic_vocabulary"] == ["fed", "oil"]
        assert data["min_score_level"] == "none"


class TestLoadEngineConfig:
    """Test loading configuration from the environment."""

    def test_empty_environment_uses_defaults(self):
        config = load_engine_config({})

        assert config.window_seconds == 300
        assert config.cooldown_seconds == 150
        assert "bitcoin" in config.topic_vocabulary

    def test_reads_values(self):
        env = {
            "WINDOW_SEC": "120",
            "MIN_UNIQUE_ACCOUNTS": "3",
            "COOLDOWN_SEC": "30",
            "KEYWORDS": "fed,tariffs",
            "MARKET_KEYWORDS": "Gold",
            "MAX_SAMPLES_PER_TOPIC": "3",
            "DEDUP_CAPACITY": "500",
            "DEDUP_TTL_SEC": "900",
            "SCORER_FAIL_POLICY": "Closed",
            "MIN_SCORE_LEVEL": "high",
            "SCORER_TIMEOUT_SEC": "7.5",
            "DISPATCH_TIMEOUT_SEC": "10",
            "SWEEP_INTERVAL_SEC": "30",
        }

        config = load_engine_config(env)

        assert config.window_seconds == 120
        assert config.min_unique_accounts == 3
        assert config.cooldown_seconds == 30
        assert config.topic_vocabulary == frozenset({"fed", "tariffs", "gold"})
        assert config.max_samples_per_topic == 3
        assert config.dedup_capacity == 500
        assert config.dedup_ttl_seconds == 900
        assert config.scorer_fail_policy == FAIL_CLOSED
        assert config.min_score_level == ScoreLevel.HIGH
        assert config.scorer_timeout_seconds == 7.5
        assert config.dispatch_timeout_seconds == 10.0
        assert config.sweep_interval_seconds == 30.0

    def test_malformed_integer_raises(self):
        with pytest.raises(ConfigurationError, match="WINDOW_SEC"):
            load_engine_config({"WINDOW_SEC": "five minutes"})

    def test_malformed_float_raises(self):
        with pytest.raises(ConfigurationError, match="SCORER_TIMEOUT_SEC"):
            load_engine_config({"SCORER_TIMEOUT_SEC": "soon"})

    def test_out_of_range_value_is_fatal(self):
        with pytest.raises(ConfigurationError):
            load_engine_config({"MIN_UNIQUE_ACCOUNTS": "0"})
