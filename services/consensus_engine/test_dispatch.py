"""
Unit tests for alert dispatchers and Telegram message formatting.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from shared.models import ConsensusEvent, NormalizedItem, Score, ScoreLevel, WindowEntry
from services.consensus_engine.dispatch import (
    AlertDispatcher,
    CompositeDispatcher,
    DispatchError,
    LoggingDispatcher,
    TELEGRAM_MESSAGE_LIMIT,
    TelegramDispatcher,
    format_telegram_message,
)


FIRED_AT = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


def make_event(texts=None) -> ConsensusEvent:
    texts = texts or {"bob": "Tariffs <25%> on steel & aluminium", "alice": "tariffs confirmed"}
    entries = tuple(
        WindowEntry(
            account=account,
            timestamp=FIRED_AT,
            sample=NormalizedItem(
                id=f"id-{account}",
                text=text,
                title="Breaking" if account == "bob" else "",
                url=f"https://x.com/{account}/1?a=1&b=2",
                account=account,
                created_at=FIRED_AT,
                source="twitter",
            ),
        )
        for account, text in texts.items()
    )
    return ConsensusEvent(
        topic="tariffs",
        distinct_accounts=frozenset(texts),
        samples=entries,
        fired_at=FIRED_AT,
        window_seconds=300,
    )


class RecordingDispatcher(AlertDispatcher):
    name = "recording"

    def __init__(self, error=None):
        self.error = error
        self.calls = []
        self.closed = False

    async def dispatch(self, event, score=None):
        self.calls.append((event, score))
        if self.error:
            raise self.error

    async def close(self):
        self.closed = True


class TestFormatTelegramMessage:
    """Test Telegram HTML rendering."""

    def test_header_and_accounts(self):
        message = format_telegram_message(make_event())

        assert "<b>Consensus: tariffs</b>" in message
        assert "2 accounts in 300s: @alice, @bob" in message

    def test_text_is_escaped(self):
        message = format_telegram_message(make_event())

        assert "Tariffs &lt;25%&gt; on steel &amp; aluminium" in message
        assert 'href="https://x.com/bob/1?a=1&amp;b=2"' in message

    def test_samples_in_event_order(self):
        message = format_telegram_message(make_event())

        assert message.index("@bob</b>") < message.index("@alice</b>")

    def test_severity_line(self):
        message = format_telegram_message(make_event(), Score(ScoreLevel.HIGH, "rates & trade"))

        assert "<b>Severity:</b> high - rates &amp; trade" in message

    def test_no_severity_line_without_score(self):
        assert "Severity" not in format_telegram_message(make_event())

    def test_truncated_to_telegram_limit(self):
        texts = {f"user{i}": "tariffs " * 200 for i in range(5)}

        message = format_telegram_message(make_event(texts))

        assert len(message) <= TELEGRAM_MESSAGE_LIMIT
        assert message.endswith("...")


class TestTelegramDispatcher:
    """Test Telegram Bot API delivery."""

    def setup_method(self):
        self.dispatcher = TelegramDispatcher("123:abc", "-100200")

    def mock_response(self, status=200, data=None):
        response = MagicMock()
        response.status = status
        response.json = AsyncMock(return_value=data if data is not None else {"ok": True})
        return response

    def test_requires_credentials(self):
        with pytest.raises(ValueError):
            TelegramDispatcher("", "chat")

    @pytest.mark.asyncio
    async def test_dispatch_success(self):
        with patch('aiohttp.ClientSession.post') as mock_post:
            mock_post.return_value.__aenter__.return_value = self.mock_response()

            await self.dispatcher.dispatch(make_event(), Score(ScoreLevel.MEDIUM))

        args, kwargs = mock_post.call_args
        assert args[0] == "https://api.telegram.org/bot123:abc/sendMessage"
        assert kwargs["json"]["chat_id"] == "-100200"
        assert kwargs["json"]["parse_mode"] == "HTML"
        assert "Consensus: tariffs" in kwargs["json"]["text"]

    @pytest.mark.asyncio
    async def test_api_rejection_raises(self):
        response = self.mock_response(status=400, data={"ok": False, "description": "chat not found"})

        with patch('aiohttp.ClientSession.post') as mock_post:
            mock_post.return_value.__aenter__.return_value = response

            with pytest.raises(DispatchError, match="chat not found"):
                await self.dispatcher.dispatch(make_event())

    @pytest.mark.asyncio
    async def test_network_error_raises(self):
        with patch('aiohttp.ClientSession.post') as mock_post:
            mock_post.return_value.__aenter__.side_effect = aiohttp.ClientError("reset")

            with pytest.raises(DispatchError, match="request failed"):
                await self.dispatcher.dispatch(make_event())


class TestCompositeDispatcher:
    """Test fan-out across channels."""

    @pytest.mark.asyncio
    async def test_all_channels_receive_event(self):
        first, second = RecordingDispatcher(), RecordingDispatcher()
        composite = CompositeDispatcher([first, second])
        event = make_event()

        await composite.dispatch(event)

        assert first.calls == [(event, None)]
        assert second.calls == [(event, None)]

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_other_channels(self):
        failing = RecordingDispatcher(error=DispatchError("down"))
        healthy = RecordingDispatcher()
        composite = CompositeDispatcher([failing, healthy])

        with pytest.raises(DispatchError, match="1/2 channels failed"):
            await composite.dispatch(make_event())

        assert len(healthy.calls) == 1

    @pytest.mark.asyncio
    async def test_close_closes_every_channel(self):
        channels = [RecordingDispatcher(), RecordingDispatcher()]

        await CompositeDispatcher(channels).close()

        assert all(channel.closed for channel in channels)

    def test_stats(self):
        composite = CompositeDispatcher([RecordingDispatcher(), LoggingDispatcher()])

        assert composite.get_stats() == {"channels": ["recording", "log"]}


@pytest.mark.asyncio
async def test_logging_dispatcher_counts():
    dispatcher = LoggingDispatcher()

    await dispatcher.dispatch(make_event(), Score(ScoreLevel.LOW, "minor"))

    assert dispatcher.dispatched == 1
