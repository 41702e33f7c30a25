"""Shared data models for the signal consensus pipeline.

This module contains the core data structures used throughout the pipeline
for representing normalized items, topic window entries, consensus events
and severity scores.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple
from dataclasses import dataclass, field


# Upstream records are schema-less; field names vary by provider.
RawItem = Mapping[str, Any]


@dataclass(frozen=True)
class NormalizedItem:
    """Canonical form of a text item received from any upstream source.

    Attributes:
        id: Deterministic identity derived from the raw record
        text: Body text of the item
        title: Headline/title of the item (may be empty)
        url: Permalink of the item (may be empty)
        account: Originating account; "unknown" when upstream omits it
        created_at: Creation time reported upstream, or ingestion time
        source: Source tag (e.g. "twitter", "truth", "rss")
        generated_id: True when ``id`` is a composite built from other fields
    """

    id: str
    text: str
    title: str
    url: str
    account: str
    created_at: datetime
    source: str
    generated_id: bool = False

    def __post_init__(self) -> None:
        """Validate normalized item data."""
        if not self.id:
            raise ValueError("Item id cannot be empty")
        if not self.text and not self.title:
            raise ValueError("Item must carry text or title")

    @property
    def content(self) -> str:
        """Title and text joined for matching and previews."""
        if self.title and self.text:
            return f"{self.title}\n{self.text}"
        return self.title or self.text

    def preview(self, length: int = 120) -> str:
        """Return a single-line preview of the item content."""
        flat = " ".join(self.content.split())
        if len(flat) <= length:
            return flat
        return flat[: length - 3].rstrip() + "..."


@dataclass(frozen=True)
class WindowEntry:
    """One observation of a topic inside a topic bucket.

    ``sample`` is released (set to None) once the entry falls out of the
    bucket's sample cap; the account and timestamp are kept for cardinality.
    """

    account: str
    timestamp: datetime
    sample: Optional[NormalizedItem] = None


class ScoreLevel(str, Enum):
    """Severity levels returned by a scorer, ordered from lowest to highest."""

    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)

    @classmethod
    def parse(cls, value: Any) -> "ScoreLevel":
        """Parse a level name (case-insensitive) into a ScoreLevel."""
        if isinstance(value, ScoreLevel):
            return value
        normalized = str(value or "").strip().lower()
        for level in cls:
            if level.value == normalized:
                return level
        raise ValueError(f"Unknown score level: {value!r}")


_LEVEL_ORDER = [ScoreLevel.NONE, ScoreLevel.LOW, ScoreLevel.MEDIUM, ScoreLevel.HIGH]


@dataclass(frozen=True)
class Score:
    """Severity assessment produced by a scorer."""

    level: ScoreLevel
    reason: str = ""
    provider: str = ""

    def meets(self, minimum: ScoreLevel) -> bool:
        return self.level.rank >= minimum.rank


@dataclass(frozen=True)
class ConsensusEvent:
    """A topic corroborated by enough distinct accounts inside the window.

    Created by the consensus evaluator and never mutated afterwards.

    Attributes:
        topic: Lowercase topic token that reached quorum
        distinct_accounts: Accounts observed for the topic in the window
        samples: Most recent entries first, bounded to the sample cap
        fired_at: Time the event was fired
        window_seconds: Length of the window the event was evaluated over
    """

    topic: str
    distinct_accounts: FrozenSet[str]
    samples: Tuple[WindowEntry, ...]
    fired_at: datetime
    window_seconds: int

    def __post_init__(self) -> None:
        """Validate consensus event data."""
        if not self.topic:
            raise ValueError("Topic cannot be empty")
        if not self.distinct_accounts:
            raise ValueError("Consensus event requires at least one account")

    @property
    def account_count(self) -> int:
        return len(self.distinct_accounts)

    def aggregated_text(self) -> str:
        """Plain text of the retained samples, newest first."""
        parts = []
        for entry in self.samples:
            if entry.sample is None:
                continue
            parts.append(f"@{entry.account}: {entry.sample.content}")
        return "\n\n".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the event to a JSON-compatible dictionary."""
        return {
            "topic": self.topic,
            "distinct_accounts": sorted(self.distinct_accounts),
            "account_count": self.account_count,
            "fired_at": self.fired_at.isoformat(),
            "window_seconds": self.window_seconds,
            "samples": [
                {
                    "account": entry.account,
                    "timestamp": entry.timestamp.isoformat(),
                    "id": entry.sample.id if entry.sample else None,
                    "source": entry.sample.source if entry.sample else None,
                    "title": entry.sample.title if entry.sample else "",
                    "text": entry.sample.text if entry.sample else "",
                    "url": entry.sample.url if entry.sample else "",
                }
                for entry in self.samples
            ],
        }


@dataclass
class IngestResult:
    """Outcome of one ingestion call.

    Attributes:
        received: Number of raw records handed to the engine
        processed: Records that reached at least one topic bucket
        rejected: Records with no usable text
        duplicates: Records already seen
        unmatched: Records with no configured topic
        triggered: Consensus events fired
        dispatched: Events delivered to the dispatcher
        suppressed: Events held back by the scorer gate
        topics: Topics that fired, in firing order
    """

    received: int = 0
    processed: int = 0
    rejected: int = 0
    duplicates: int = 0
    unmatched: int = 0
    triggered: int = 0
    dispatched: int = 0
    suppressed: int = 0
    topics: List[str] = field(default_factory=list)

    def summary(self) -> str:
        return f"accepted {self.received} records, {self.triggered} triggered"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "received": self.received,
            "processed": self.processed,
            "rejected": self.rejected,
            "duplicates": self.duplicates,
            "unmatched": self.unmatched,
            "triggered": self.triggered,
            "dispatched": self.dispatched,
            "suppressed": self.suppressed,
            "topics": list(self.topics),
            "message": self.summary(),
        }
