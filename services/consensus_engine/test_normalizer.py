"""
Unit tests for item normalization, content hashing and payload unwrapping.
"""

import hashlib
from datetime import datetime, timezone

import pytest

from services.consensus_engine.normalizer import (
    ItemNormalizer,
    UNKNOWN_ACCOUNT,
    content_hash,
    extract_raw_items,
    parse_timestamp,
)


RECEIVED_AT = datetime(2024, 1, 15, 13, 0, 0, tzinfo=timezone.utc)


class TestParseTimestamp:
    """Test timestamp parsing across provider formats."""

    def test_iso_with_z_suffix(self):
        parsed = parse_timestamp("2024-01-15T12:00:00Z")

        assert parsed == datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def test_naive_iso_is_utc(self):
        parsed = parse_timestamp("2024-01-15T12:00:00")

        assert parsed.tzinfo is not None
        assert parsed == datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def test_rfc2822(self):
        parsed = parse_timestamp("Mon, 15 Jan 2024 12:00:00 GMT")

        assert parsed == datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [1705320000, 1705320000000, "1705320000"])
    def test_epoch_seconds_and_milliseconds(self, value):
        assert parse_timestamp(value) == datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [None, "", "not a date", True])
    def test_unparseable_returns_none(self, value):
        assert parse_timestamp(value) is None


class TestItemNormalizer:
    """Test ItemNormalizer field extraction."""

    def setup_method(self):
        self.normalizer = ItemNormalizer()

    def test_full_record(self):
        raw = {
            "id": "1746",
            "text": "New tariffs announced",
            "username": "@alice",
            "url": "https://x.com/alice/status/1746",
            "created_at": "2024-01-15T12:00:00Z",
        }

        item = self.normalizer.normalize(raw, source="Twitter", received_at=RECEIVED_AT)

        assert item.id == "1746"
        assert item.text == "New tariffs announced"
        assert item.title == ""
        assert item.account == "alice"
        assert item.url == "https://x.com/alice/status/1746"
        assert item.created_at == datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
        assert item.source == "twitter"
        assert item.generated_id is False

    def test_text_priority_order(self):
        raw = {"summary": "summary text", "content": "content text", "id": "1"}

        item = self.normalizer.normalize(raw)

        assert item.text == "content text"

    def test_title_only_record_is_accepted(self):
        item = self.normalizer.normalize({"title": "Fed holds rates", "link": "https://news/1"})

        assert item.title == "Fed holds rates"
        assert item.text == ""
        assert item.id == "https://news/1"
        assert item.url == "https://news/1"

    def test_nested_user_account(self):
        raw = {"id": "9", "full_text": "oil rallies", "user": {"screen_name": "bob"}}

        item = self.normalizer.normalize(raw)

        assert item.account == "bob"

    def test_account_priority_skips_empty_fields(self):
        raw = {"id": "9", "text": "gold", "username": "", "author": "carol", "feedName": "feed"}

        assert self.normalizer.normalize(raw).account == "carol"

    def test_missing_account_is_unknown(self):
        item = self.normalizer.normalize({"id": "3", "text": "bitcoin"})

        assert item.account == UNKNOWN_ACCOUNT

    def test_composite_id_when_upstream_omits_one(self):
        raw = {"text": "Breaking: sanctions expanded", "username": "dave", "date": "2024-01-15"}

        item = self.normalizer.normalize(raw)

        assert item.id == "2024-01-15:dave:Breaking: sanctions expanded"
        assert item.generated_id is True

    def test_composite_id_truncates_text_prefix(self):
        text = "x" * 80
        item = self.normalizer.normalize({"text": text, "username": "erin"})

        assert item.id == ":erin:" + "x" * 50

    def test_id_is_stable_across_deliveries(self):
        raw = {"text": "merger talks", "username": "frank", "timestamp": 1705320000}

        first = self.normalizer.normalize(raw, received_at=RECEIVED_AT)
        second = self.normalizer.normalize(dict(raw), received_at=RECEIVED_AT)

        assert first.id == second.id
        assert content_hash(first) == content_hash(second)

    def test_missing_timestamp_uses_received_at(self):
        item = self.normalizer.normalize({"id": "4", "text": "ipo"}, received_at=RECEIVED_AT)

        assert item.created_at == RECEIVED_AT

    def test_source_fallbacks(self):
        from_field = self.normalizer.normalize({"id": "5", "text": "fed", "source": "RSS"})
        default = self.normalizer.normalize({"id": "6", "text": "fed"})

        assert from_field.source == "rss"
        assert default.source == "other"

    @pytest.mark.parametrize("raw", [
        {"id": "7", "text": "", "title": "   "},
        {"id": "8"},
        {"text": {"nested": "object"}},
        "plain string",
        None,
    ])
    def test_rejects_records_without_content(self, raw):
        assert self.normalizer.normalize(raw) is None


class TestContentHash:
    """Test content hash derivation."""

    def setup_method(self):
        self.normalizer = ItemNormalizer()

    def test_hash_of_explicit_id(self):
        item = self.normalizer.normalize({"id": "abc", "text": "fed"})

        assert content_hash(item) == hashlib.md5(b"abc").hexdigest()

    def test_same_id_from_different_sources_collides(self):
        first = self.normalizer.normalize({"id": "42", "text": "fed", "username": "a"}, source="twitter")
        second = self.normalizer.normalize({"id": "42", "text": "fed!", "username": "b"}, source="truth")

        assert content_hash(first) == content_hash(second)

    def test_generated_id_hashes_account_and_text(self):
        item = self.normalizer.normalize({"text": "oil spikes", "username": "gina", "date": "2024-01-15"})

        assert content_hash(item) == hashlib.md5("ginaoil spikes".encode("utf-8")).hexdigest()


class TestExtractRawItems:
    """Test webhook payload unwrapping."""

    @pytest.mark.parametrize("payload", [
        [{"id": 1}],
        {"items": [{"id": 1}]},
        {"data": [{"id": 1}]},
        {"results": [{"id": 1}]},
        {"webhookPayload": {"items": [{"id": 1}]}},
    ])
    def test_supported_shapes(self, payload):
        assert extract_raw_items(payload) == [{"id": 1}]

    @pytest.mark.parametrize("payload", [
        {},
        {"items": "not a list"},
        {"webhookPayload": {"data": []}},
        "text",
        42,
        None,
    ])
    def test_unsupported_shapes_yield_nothing(self, payload):
        assert extract_raw_items(payload) == []
