"""
Alert Dispatch

Delivery of consensus events to notification channels. Dispatch is
best-effort: a failure is reported as DispatchError and never touches the
correlation state.
"""

import asyncio
import html
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import aiohttp
import structlog

from shared.models import ConsensusEvent, Score, ScoreLevel


LEVEL_EMOJI = {
    ScoreLevel.NONE: "⚪",
    ScoreLevel.LOW: "🟢",
    ScoreLevel.MEDIUM: "🟠",
    ScoreLevel.HIGH: "🔴",
}

TELEGRAM_MESSAGE_LIMIT = 4096


class DispatchError(Exception):
    """Raised when an event cannot be delivered to a channel."""


class AlertDispatcher(ABC):
    """Capability: deliver a consensus event (and optional score) somewhere."""

    name = "dispatcher"

    @abstractmethod
    async def dispatch(self, event: ConsensusEvent, score: Optional[Score] = None) -> None:
        """
        Deliver one event.

        Raises:
            DispatchError: If delivery fails
        """

    async def close(self) -> None:
        """Release channel resources."""


class LoggingDispatcher(AlertDispatcher):
    """Writes consensus events to the structured log."""

    name = "log"

    def __init__(self) -> None:
        self.logger = structlog.get_logger(__name__)
        self.dispatched = 0

    async def dispatch(self, event: ConsensusEvent, score: Optional[Score] = None) -> None:
        self.dispatched += 1
        self.logger.info(
            "Consensus alert",
            topic=event.topic,
            accounts=sorted(event.distinct_accounts),
            fired_at=event.fired_at.isoformat(),
            level=score.level.value if score else None,
            reason=score.reason if score else None,
        )


def format_telegram_message(event: ConsensusEvent, score: Optional[Score] = None) -> str:
    """
    Render a consensus event as a Telegram HTML message.

    Args:
        event: Consensus event
        score: Optional severity score

    Returns:
        HTML message no longer than Telegram's message limit
    """
    accounts = ", ".join(f"@{html.escape(a)}" for a in sorted(event.distinct_accounts))
    lines = [
        f"🚨 <b>Consensus: {html.escape(event.topic)}</b>",
        f"👥 {event.account_count} accounts in {event.window_seconds}s: {accounts}",
    ]

    if score is not None:
        emoji = LEVEL_EMOJI.get(score.level, "❓")
        severity = f"{emoji} <b>Severity:</b> {score.level.value}"
        if score.reason:
            severity += f" - {html.escape(score.reason)}"
        lines.append(severity)

    lines.append("")

    for entry in event.samples:
        item = entry.sample
        if item is None:
            continue
        header = f"<b>@{html.escape(entry.account)}</b> <i>{html.escape(item.source)}</i>"
        if item.title:
            header += f"\n<b>{html.escape(item.title)}</b>"
        body = html.escape(item.text)
        link = f'\n<a href="{html.escape(item.url, quote=True)}">Link</a>' if item.url else ""
        lines.append(f"{header}\n{body}{link}\n")

    message = "\n".join(lines).rstrip()
    if len(message) > TELEGRAM_MESSAGE_LIMIT:
        # Cut on a line boundary so no HTML tag is left open.
        cut = message.rfind("\n", 0, TELEGRAM_MESSAGE_LIMIT - 4)
        message = message[: cut if cut > 0 else TELEGRAM_MESSAGE_LIMIT - 4] + "\n..."
    return message


class TelegramDispatcher(AlertDispatcher):
    """Sends consensus events to a Telegram chat through the Bot API."""

    name = "telegram"
    api_base = "https://api.telegram.org"

    def __init__(self, bot_token: str, chat_id: str, timeout_seconds: float = 15.0) -> None:
        """
        Initialize the Telegram dispatcher.

        Args:
            bot_token: Bot API token
            chat_id: Destination chat id
            timeout_seconds: Request timeout
        """
        if not bot_token or not chat_id:
            raise ValueError("Telegram dispatcher requires bot token and chat id")

        self.bot_token = bot_token
        self.chat_id = chat_id
        self.timeout_seconds = timeout_seconds
        self.logger = structlog.get_logger(__name__)

    @property
    def url(self) -> str:
        return f"{self.api_base}/bot{self.bot_token}/sendMessage"

    async def dispatch(self, event: ConsensusEvent, score: Optional[Score] = None) -> None:
        body = {
            "chat_id": self.chat_id,
            "text": format_telegram_message(event, score),
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.url, json=body) as response:
                    data = await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise DispatchError("Telegram request timed out") from e
        except aiohttp.ClientError as e:
            raise DispatchError(f"Telegram request failed: {e}") from e

        if response.status != 200 or not (isinstance(data, dict) and data.get("ok")):
            description = data.get("description") if isinstance(data, dict) else data
            raise DispatchError(f"Telegram send error (HTTP {response.status}): {description}")

        self.logger.info("Telegram alert sent", topic=event.topic)


class CompositeDispatcher(AlertDispatcher):
    """Fans an event out to several channels, trying every one of them."""

    name = "composite"

    def __init__(self, dispatchers: Sequence[AlertDispatcher]) -> None:
        self.dispatchers: List[AlertDispatcher] = list(dispatchers)
        self.logger = structlog.get_logger(__name__)

    async def dispatch(self, event: ConsensusEvent, score: Optional[Score] = None) -> None:
        failures = []

        for dispatcher in self.dispatchers:
            try:
                await dispatcher.dispatch(event, score)
            except Exception as e:
                self.logger.error(
                    "Channel dispatch failed",
                    channel=dispatcher.name,
                    topic=event.topic,
                    error=str(e)
                )
                failures.append(f"{dispatcher.name}: {e}")

        if failures:
            raise DispatchError(
                f"{len(failures)}/{len(self.dispatchers)} channels failed: " + "; ".join(failures)
            )

    async def close(self) -> None:
        for dispatcher in self.dispatchers:
            try:
                await dispatcher.close()
            except Exception as e:
                self.logger.error("Error closing channel", channel=dispatcher.name, error=str(e))

    def channel_names(self) -> List[str]:
        return [dispatcher.name for dispatcher in self.dispatchers]

    def get_stats(self) -> Dict[str, Any]:
        return {
            "channels": self.channel_names(),
        }
