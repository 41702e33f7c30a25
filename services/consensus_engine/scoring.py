"""
Severity Scoring

Pluggable severity classifiers consulted before a consensus event is
dispatched, and the gate that applies the fail-open / fail-closed policy
and the minimum severity filter.

Each provider is a concrete SeverityScorer chosen once at construction time
through create_scorer().
"""

import asyncio
import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import aiohttp
import structlog

from shared.models import ConsensusEvent, Score, ScoreLevel

logger = structlog.get_logger(__name__)


SCORING_PROMPT = """You classify the market severity of social media posts and news snippets
that several independent accounts published about the same topic.

Respond with ONLY a JSON object of the form:
{{"level": "none|low|medium|high", "reason": "one short sentence"}}

Posts (newest first):
{text}
"""

# The original 1-5 impact scale mapped onto severity levels.
IMPACT_SCORE_LEVELS = {
    1: ScoreLevel.NONE,
    2: ScoreLevel.LOW,
    3: ScoreLevel.MEDIUM,
    4: ScoreLevel.HIGH,
    5: ScoreLevel.HIGH,
}

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


class ScorerError(Exception):
    """Raised when a scorer cannot produce a score."""


def parse_score_payload(raw_text: str, provider: str = "") -> Score:
    """
    Parse the JSON verdict out of free model text.

    Tolerates surrounding prose and code fences. Accepts either a ``level``
    field or the 1-5 ``impact_score`` form.

    Args:
        raw_text: Text returned by the model
        provider: Provider name recorded on the score

    Returns:
        Parsed Score

    Raises:
        ScorerError: If no valid verdict can be found
    """
    if not raw_text or not raw_text.strip():
        raise ScorerError("Empty scorer response")

    match = _JSON_OBJECT.search(raw_text)
    candidate = match.group(0) if match else raw_text

    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise ScorerError(f"Scorer response is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ScorerError("Scorer response is not a JSON object")

    reason = str(data.get("reason") or data.get("reasoning") or data.get("summary") or "")

    level_value = data.get("level", data.get("severity"))
    if level_value is not None:
        try:
            level = ScoreLevel.parse(level_value)
        except ValueError as e:
            raise ScorerError(str(e)) from e
        return Score(level=level, reason=reason, provider=provider)

    impact = data.get("impact_score")
    if impact is not None:
        try:
            impact_value = int(float(impact))
        except (TypeError, ValueError) as e:
            raise ScorerError(f"Invalid impact score: {impact!r}") from e
        impact_value = min(5, max(1, impact_value))
        return Score(level=IMPACT_SCORE_LEVELS[impact_value], reason=reason, provider=provider)

    raise ScorerError("Scorer response has no level")


class SeverityScorer(ABC):
    """Capability: classify aggregated text into a severity level."""

    name = "scorer"

    @abstractmethod
    async def score(self, text: str) -> Score:
        """
        Score aggregated text.

        Raises:
            ScorerError: If the text cannot be scored
        """


class HttpSeverityScorer(SeverityScorer):
    """Base class for scorers backed by an HTTP model API."""

    def __init__(self, api_key: str, model: str, timeout_seconds: float = 15.0) -> None:
        """
        Initialize the HTTP scorer.

        Args:
            api_key: Provider API key
            model: Provider model name
            timeout_seconds: Total request timeout
        """
        if not api_key:
            raise ValueError(f"{self.name} scorer requires an API key")

        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds

    @abstractmethod
    def build_request(self, prompt: str) -> Tuple[str, Dict[str, str], Dict[str, Any], Dict[str, str]]:
        """Return (url, headers, json body, query params) for a prompt."""

    @abstractmethod
    def extract_text(self, data: Dict[str, Any]) -> str:
        """Pull the model's text out of the provider response body."""

    async def score(self, text: str) -> Score:
        if not text or not text.strip():
            raise ScorerError("Nothing to score")

        url, headers, body, params = self.build_request(SCORING_PROMPT.format(text=text))
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, json=body, headers=headers, params=params) as response:
                    if response.status != 200:
                        detail = await response.text()
                        raise ScorerError(
                            f"{self.name} returned HTTP {response.status}: {detail[:200]}"
                        )
                    data = await response.json()
        except asyncio.TimeoutError as e:
            raise ScorerError(f"{self.name} request timed out") from e
        except aiohttp.ClientError as e:
            raise ScorerError(f"{self.name} request failed: {e}") from e
        except ValueError as e:
            raise ScorerError(f"{self.name} returned invalid JSON") from e

        try:
            raw_text = self.extract_text(data)
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise ScorerError(f"Unexpected {self.name} response shape") from e

        return parse_score_payload(raw_text, provider=self.name)


class OpenAIScorer(HttpSeverityScorer):
    """Scorer using the OpenAI chat completions API."""

    name = "openai"
    endpoint = "https://api.openai.com/v1/chat/completions"
    default_model = "gpt-4o-mini"

    def build_request(self, prompt):
        headers = {"Authorization": f"Bearer {self.api_key}"}
        body = {
            "model": self.model,
            "temperature": 0,
            "response_format": {"type": "json_object"},
            "messages": [{"role": "user", "content": prompt}],
        }
        return self.endpoint, headers, body, {}

    def extract_text(self, data):
        return data["choices"][0]["message"]["content"]


class AnthropicScorer(HttpSeverityScorer):
    """Scorer using the Anthropic messages API."""

    name = "anthropic"
    endpoint = "https://api.anthropic.com/v1/messages"
    api_version = "2023-06-01"
    default_model = "claude-3-5-haiku-latest"

    def build_request(self, prompt):
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": self.api_version,
        }
        body = {
            "model": self.model,
            "max_tokens": 300,
            "messages": [{"role": "user", "content": prompt}],
        }
        return self.endpoint, headers, body, {}

    def extract_text(self, data):
        return "".join(
            block.get("text", "") for block in data["content"] if block.get("type") == "text"
        )


class GeminiScorer(HttpSeverityScorer):
    """Scorer using the Gemini generateContent API."""

    name = "gemini"
    base_url = "https://generativelanguage.googleapis.com/v1beta/models"
    default_model = "gemini-1.5-flash"

    def build_request(self, prompt):
        url = f"{self.base_url}/{self.model}:generateContent"
        body = {"contents": [{"parts": [{"text": prompt}]}]}
        return url, {}, body, {"key": self.api_key}

    def extract_text(self, data):
        return data["candidates"][0]["content"]["parts"][0]["text"].strip()


SCORER_PROVIDERS = {
    OpenAIScorer.name: OpenAIScorer,
    AnthropicScorer.name: AnthropicScorer,
    GeminiScorer.name: GeminiScorer,
}


def create_scorer(
    provider: Optional[str],
    api_key: Optional[str],
    model: Optional[str] = None,
    timeout_seconds: float = 15.0
) -> Optional[SeverityScorer]:
    """
    Create the scorer for a provider name.

    Args:
        provider: One of ``openai``, ``anthropic``, ``gemini`` (``none`` or
            empty disables scoring)
        api_key: Provider API key
        model: Optional model override
        timeout_seconds: Request timeout

    Returns:
        Configured scorer, or None when scoring is disabled or unkeyed

    Raises:
        ValueError: If the provider name is unknown
    """
    name = (provider or "").strip().lower()
    if name in ("", "none", "off"):
        return None

    scorer_class = SCORER_PROVIDERS.get(name)
    if scorer_class is None:
        raise ValueError(
            f"Unknown scorer provider {provider!r}; expected one of {sorted(SCORER_PROVIDERS)}"
        )

    if not api_key:
        logger.warning("Scorer provider configured without API key, scoring disabled",
                       provider=name)
        return None

    return scorer_class(
        api_key=api_key,
        model=model or scorer_class.default_model,
        timeout_seconds=timeout_seconds,
    )


@dataclass(frozen=True)
class GateDecision:
    """Outcome of consulting the scorer gate for one event."""

    allowed: bool
    score: Optional[Score] = None
    reason: str = ""
    scorer_failed: bool = False


class ScorerGate:
    """
    Applies the configured scorer policy to consensus events.

    - scorer error, timeout or no scorer: allow without a score (fail-open)
      or suppress (fail-closed)
    - successful score below ``min_level``: suppress
    """

    def __init__(
        self,
        scorer: Optional[SeverityScorer],
        fail_open: bool = True,
        min_level: ScoreLevel = ScoreLevel.NONE,
        timeout_seconds: float = 15.0
    ) -> None:
        self.scorer = scorer
        self.fail_open = fail_open
        self.min_level = min_level
        self.timeout_seconds = timeout_seconds

        self.logger = structlog.get_logger(__name__)

        self._scored = 0
        self._failures = 0
        self._suppressed = 0

    async def score_text(self, text: str) -> Score:
        """
        Score arbitrary text with the configured scorer.

        Raises:
            ScorerError: If no scorer is configured, it fails, or it times out
        """
        if self.scorer is None:
            raise ScorerError("No scorer configured")

        try:
            return await asyncio.wait_for(self.scorer.score(text), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise ScorerError(f"Scorer timed out after {self.timeout_seconds}s") from e

    async def evaluate(self, event: ConsensusEvent) -> GateDecision:
        """
        Decide whether an event should be dispatched.

        Never raises; scorer failures resolve to the configured policy.

        Args:
            event: Consensus event about to be dispatched

        Returns:
            GateDecision with the score (if any) to attach to the dispatch
        """
        log = self.logger.bind(topic=event.topic)

        if self.scorer is None:
            if self.fail_open:
                return GateDecision(allowed=True, reason="fail-open: no scorer configured")
            self._suppressed += 1
            log.info("No scorer configured, suppressing event")
            return GateDecision(allowed=False, reason="fail-closed: no scorer configured")

        try:
            score = await self.score_text(event.aggregated_text())
        except ScorerError as e:
            log.warning("Scorer unavailable", error=str(e))
            return self._resolve_failure(log, str(e))
        except Exception as e:
            log.exception("Unexpected scorer error")
            return self._resolve_failure(log, f"unexpected scorer error: {e}")

        self._scored += 1

        if not score.meets(self.min_level):
            self._suppressed += 1
            log.info(
                "Event below minimum severity",
                level=score.level.value,
                min_level=self.min_level.value
            )
            return GateDecision(allowed=False, score=score, reason="below minimum severity")

        log.debug("Event scored", level=score.level.value, provider=score.provider)
        return GateDecision(allowed=True, score=score)

    def _resolve_failure(self, log, error: str) -> GateDecision:
        """Apply the fail-open/fail-closed policy to a failed scoring attempt."""
        self._failures += 1
        if self.fail_open:
            log.info("Dispatching without score")
            return GateDecision(allowed=True, reason=f"fail-open: {error}", scorer_failed=True)
        self._suppressed += 1
        log.info("Suppressing event")
        return GateDecision(allowed=False, reason=f"fail-closed: {error}", scorer_failed=True)

    @property
    def failures(self) -> int:
        return self._failures

    def get_stats(self) -> Dict[str, Any]:
        return {
            "scorer": self.scorer.name if self.scorer else None,
            "fail_policy": "open" if self.fail_open else "closed",
            "min_level": self.min_level.value,
            "timeout_seconds": self.timeout_seconds,
            "scored": self._scored,
            "failures": self._failures,
            "suppressed": self._suppressed,
        }
