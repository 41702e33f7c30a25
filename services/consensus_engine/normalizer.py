"""
Item Normalizer

Maps schema-less records from heterogeneous providers (X, Truth Social,
RSS, news APIs) onto the canonical NormalizedItem, and derives the content
hash used for deduplication.
"""

import hashlib
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, List, Mapping, Optional, Sequence

from shared.models import NormalizedItem, RawItem

logger = logging.getLogger(__name__)


# Field priority lists; the first non-empty value wins.
TITLE_FIELDS = ("title",)
TEXT_FIELDS = ("text", "content", "full_text", "description", "summary")
URL_FIELDS = ("url", "link", "permalink", "tweetUrl", "twitterUrl")
ACCOUNT_FIELDS = (
    "username", "screen_name", "author", "account", "user", "publisher", "feedName",
)
NESTED_ACCOUNT_FIELDS = ("username", "screen_name", "name")
CREATED_FIELDS = ("created_at", "createdAt", "date", "timestamp", "publishedAt", "pubDate")
ID_FIELDS = ("id", "tweet_id", "tweetId", "postId", "uniqueId", "guid")

UNKNOWN_ACCOUNT = "unknown"
DEFAULT_SOURCE = "other"
COMPOSITE_PREFIX_LENGTH = 50

# Epoch values above this are treated as milliseconds.
_EPOCH_MS_THRESHOLD = 10 ** 11


def _as_text(value: Any) -> str:
    if value is None or isinstance(value, (dict, list, tuple, set)):
        return ""
    if isinstance(value, bool):
        return ""
    return str(value).strip()


def _first_text(raw: RawItem, fields: Sequence[str]) -> str:
    for name in fields:
        value = _as_text(raw.get(name))
        if value:
            return value
    return ""


def _extract_account(raw: RawItem) -> str:
    for name in ACCOUNT_FIELDS:
        value = raw.get(name)
        if isinstance(value, Mapping):
            nested = _first_text(value, NESTED_ACCOUNT_FIELDS)
            if nested:
                return nested.lstrip("@")
            continue
        text = _as_text(value)
        if text:
            return text.lstrip("@")
    return ""


def _raw_created(raw: RawItem) -> Any:
    for name in CREATED_FIELDS:
        value = raw.get(name)
        if value not in (None, ""):
            return value
    return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an upstream timestamp into a timezone-aware UTC datetime.

    Accepts datetimes, ISO-8601 strings, RFC-2822 strings (RSS ``pubDate``)
    and epoch seconds or milliseconds.

    Args:
        value: Raw timestamp value

    Returns:
        Parsed datetime or None if the value cannot be interpreted
    """
    if value is None or isinstance(value, bool):
        return None

    parsed: Optional[datetime] = None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        seconds = value / 1000 if value > _EPOCH_MS_THRESHOLD else value
        try:
            parsed = datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    else:
        text = str(value).strip()
        if not text:
            return None
        if text.isdigit():
            return parse_timestamp(int(text))
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            try:
                parsed = parsedate_to_datetime(text)
            except (TypeError, ValueError, IndexError):
                return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class ItemNormalizer:
    """
    Normalizes raw provider records into NormalizedItem objects.

    The normalizer is stateless; the same raw record always yields the same
    id, which keeps re-delivery idempotent.
    """

    def __init__(self, default_source: str = DEFAULT_SOURCE):
        self.default_source = default_source

    def normalize(
        self,
        raw: RawItem,
        source: Optional[str] = None,
        received_at: Optional[datetime] = None
    ) -> Optional[NormalizedItem]:
        """
        Convert one raw record into a NormalizedItem.

        Args:
            raw: Schema-less record from any provider
            source: Source tag supplied by the transport, if any
            received_at: Ingestion time, used when the record has no timestamp

        Returns:
            NormalizedItem, or None if the record has neither text nor title
        """
        if not isinstance(raw, Mapping):
            logger.info(f"Rejected non-mapping record of type {type(raw).__name__}")
            return None

        title = _first_text(raw, TITLE_FIELDS)
        text = _first_text(raw, TEXT_FIELDS)
        if not text and not title:
            logger.info("Rejected record with no text or title")
            return None

        url = _first_text(raw, URL_FIELDS)
        account = _extract_account(raw)
        raw_created = _raw_created(raw)
        created_at = parse_timestamp(raw_created) or received_at or datetime.now(timezone.utc)

        item_id = _first_text(raw, ID_FIELDS) or url
        generated_id = False
        if not item_id:
            created_part = _as_text(raw_created)
            prefix = (title or text)[:COMPOSITE_PREFIX_LENGTH]
            item_id = f"{created_part}:{account}:{prefix}"
            generated_id = True

        resolved_source = (source or _as_text(raw.get("source")) or self.default_source).lower()

        return NormalizedItem(
            id=item_id,
            text=text,
            title=title,
            url=url,
            account=account or UNKNOWN_ACCOUNT,
            created_at=created_at,
            source=resolved_source,
            generated_id=generated_id,
        )


def content_hash(item: NormalizedItem) -> str:
    """
    Digest used to recognize re-delivery of an already processed item.

    Args:
        item: Normalized item

    Returns:
        Hex md5 digest of the id, or of account and text for generated ids
    """
    if item.generated_id:
        basis = f"{item.account}{item.text or item.title}"
    else:
        basis = item.id
    return hashlib.md5(basis.encode("utf-8")).hexdigest()


def extract_raw_items(payload: Any) -> List[RawItem]:
    """
    Pull the list of records out of a webhook payload.

    Providers wrap their results differently: ``items``, ``data``, ``results``,
    ``webhookPayload.items``, or a bare list.

    Args:
        payload: Decoded JSON body

    Returns:
        List of raw records (empty when no list can be found)
    """
    if isinstance(payload, list):
        return payload

    if not isinstance(payload, Mapping):
        return []

    for key in ("items", "data", "results"):
        candidate = payload.get(key)
        if isinstance(candidate, list):
            return candidate

    webhook_payload = payload.get("webhookPayload")
    if isinstance(webhook_payload, Mapping) and isinstance(webhook_payload.get("items"), list):
        return webhook_payload["items"]

    return []
