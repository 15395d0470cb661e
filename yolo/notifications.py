"""Notification sinks for YOLO mode.

Every sink is opaque: the control loop only calls
``NotificationDispatcher.notify(channel, message)`` and never waits on
delivery. A sink that fails is logged and otherwise ignored.
"""

import asyncio
from enum import Enum
from typing import List, Optional, Protocol, Set

import aiohttp
import structlog

from .exceptions import NotificationError

logger = structlog.get_logger("yolo.notify")


class Channel(str, Enum):
    INFO = "info"
    APPROVAL = "approval"
    REVIEW = "review"
    CRITICAL = "critical"


class Notifier(Protocol):
    async def send(self, channel: Channel, message: str) -> None: ...

    async def close(self) -> None: ...


def log_task_exception(task: asyncio.Task):
    """Log exceptions from fire-and-forget sends instead of silently swallowing them."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc:
        logger.error("notification_failed", error=str(exc), exc_type=type(exc).__name__)


class LogNotifier:
    """Writes notifications to the ``yolo.notify`` log."""

    async def send(self, channel: Channel, message: str) -> None:
        if channel == Channel.CRITICAL:
            logger.critical("notification", channel=channel.value, message=message)
        elif channel in (Channel.APPROVAL, Channel.REVIEW):
            logger.warning("notification", channel=channel.value, message=message)
        else:
            logger.info("notification", channel=channel.value, message=message)

    async def close(self) -> None:
        return None


class WebhookNotifier:
    """POSTs ``{"text": ...}`` to a chat webhook (Slack-compatible)."""

    def __init__(self, url: str, timeout: float = 10.0, channels: Optional[List[Channel]] = None):
        self.url = url
        self.timeout = timeout
        self.channels = set(channels) if channels else set(Channel)
        self.session: Optional[aiohttp.ClientSession] = None

    async def send(self, channel: Channel, message: str) -> None:
        if channel not in self.channels:
            return
        if self.session is None:
            self.session = aiohttp.ClientSession()

        payload = {"text": f"[yolo:{channel.value}] {message}"}
        try:
            async with self.session.post(
                self.url, json=payload, timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as resp:
                if resp.status >= 300:
                    body = await resp.text()
                    raise NotificationError(
                        f"Webhook returned HTTP {resp.status}: {body[:200]}",
                        channel=channel.value,
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NotificationError(
                f"Webhook delivery failed: {e}", channel=channel.value
            ) from e

    async def close(self) -> None:
        if self.session is not None:
            await self.session.close()
            self.session = None


class NotificationDispatcher:
    """Fans a notification out to every sink without blocking the caller."""

    def __init__(self, sinks: Optional[List[Notifier]] = None):
        self.sinks: List[Notifier] = list(sinks) if sinks is not None else [LogNotifier()]
        self._pending: Set[asyncio.Task] = set()

    def notify(self, channel: Channel, message: str) -> None:
        """Schedule delivery on every sink and return immediately."""
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # No running loop (CLI one-shot commands): log only
            logger.info("notification_unsent", channel=channel.value, message=message)
            return
        for sink in self.sinks:
            task = asyncio.create_task(sink.send(channel, message))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            task.add_done_callback(log_task_exception)

    async def drain(self) -> None:
        """Wait for in-flight deliveries. Used on shutdown and in tests."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        for sink in self.sinks:
            await sink.close()
