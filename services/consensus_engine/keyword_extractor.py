"""
Keyword Extractor

Finds which configured topics appear in an item. Matching is
case-insensitive substring containment, so topics may be multi-word phrases.
"""

import logging
from typing import FrozenSet, Iterable, Set

logger = logging.getLogger(__name__)


def normalize_topic(topic: str) -> str:
    """Normalize a topic token for consistent matching (lowercase, trimmed)."""
    return " ".join(str(topic).lower().split())


class KeywordExtractor:
    """Matches item text and title against a topic vocabulary."""

    def __init__(self, vocabulary: Iterable[str]):
        """
        Initialize the extractor.

        Args:
            vocabulary: Topic tokens or phrases
        """
        self._vocabulary: FrozenSet[str] = frozenset(
            topic for topic in (normalize_topic(t) for t in vocabulary) if topic
        )

    @property
    def vocabulary(self) -> FrozenSet[str]:
        return self._vocabulary

    def extract(self, text: str, title: str = "") -> Set[str]:
        """
        Return every configured topic present in the text or title.

        Args:
            text: Item body text
            title: Item title

        Returns:
            Set of matching topics (empty when nothing matches)
        """
        # Fields are matched separately so a phrase cannot span text and title.
        fields = [normalize_topic(field) for field in (text or "", title or "")]
        fields = [field for field in fields if field]
        if not fields:
            return set()
        return {
            topic for topic in self._vocabulary
            if any(topic in field for field in fields)
        }

    def add_topic(self, topic: str) -> bool:
        """
        Add a topic to the vocabulary.

        Returns:
            True if the topic was added, False if empty or already present
        """
        normalized = normalize_topic(topic)
        if not normalized or normalized in self._vocabulary:
            return False
        self._vocabulary = self._vocabulary | {normalized}
        logger.info(f"Added topic '{normalized}' ({len(self._vocabulary)} topics)")
        return True

    def remove_topic(self, topic: str) -> bool:
        """
        Remove a topic from the vocabulary.

        Returns:
            True if the topic was removed, False if it was not configured
        """
        normalized = normalize_topic(topic)
        if normalized not in self._vocabulary:
            return False
        self._vocabulary = self._vocabulary - {normalized}
        logger.info(f"Removed topic '{normalized}' ({len(self._vocabulary)} topics)")
        return True
