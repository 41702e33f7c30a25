"""Consensus engine service.

This package correlates social posts and news items by topic across
distinct accounts and dispatches consensus alerts.
"""

from .config import ConfigurationError, EngineConfig, create_engine_config, load_engine_config
from .dispatch import AlertDispatcher, DispatchError
from .engine import ConsensusEngine
from .scoring import ScorerError, SeverityScorer, create_scorer

__all__ = [
    'AlertDispatcher',
    'ConfigurationError',
    'ConsensusEngine',
    'DispatchError',
    'EngineConfig',
    'ScorerError',
    'SeverityScorer',
    'create_engine_config',
    'create_scorer',
    'load_engine_config',
]
