"""Tests for notification sinks and the dispatcher."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from yolo.exceptions import NotificationError
from yolo.notifications import Channel, LogNotifier, NotificationDispatcher, WebhookNotifier


class RecordingSink:
    def __init__(self):
        self.sent = []

    async def send(self, channel, message):
        self.sent.append((channel, message))

    async def close(self):
        return None


class BrokenSink:
    async def send(self, channel, message):
        raise NotificationError("sink down", channel=channel.value)

    async def close(self):
        return None


def mock_session(status=200, body=""):
    resp = MagicMock(status=status)
    resp.text = AsyncMock(return_value=body)
    session = MagicMock()
    session.post.return_value.__aenter__ = AsyncMock(return_value=resp)
    session.post.return_value.__aexit__ = AsyncMock(return_value=False)
    session.close = AsyncMock()
    return session


@pytest.mark.asyncio
async def test_failing_sink_does_not_block_others():
    good = RecordingSink()
    dispatcher = NotificationDispatcher([BrokenSink(), good])

    dispatcher.notify(Channel.CRITICAL, "rollback failed")
    await dispatcher.drain()

    assert good.sent == [(Channel.CRITICAL, "rollback failed")]


def test_notify_without_loop_only_logs():
    sink = RecordingSink()
    NotificationDispatcher([sink]).notify(Channel.INFO, "hello")
    assert sink.sent == []


@pytest.mark.asyncio
async def test_default_sink_is_log():
    dispatcher = NotificationDispatcher()
    assert isinstance(dispatcher.sinks[0], LogNotifier)
    dispatcher.notify(Channel.APPROVAL, "approve me")
    await dispatcher.close()


class TestWebhook:

    @pytest.mark.asyncio
    async def test_posts_channel_prefixed_text(self):
        notifier = WebhookNotifier("https://hooks.example.com/x")
        notifier.session = mock_session()

        await notifier.send(Channel.REVIEW, "branch ready")

        _, kwargs = notifier.session.post.call_args
        assert kwargs["json"] == {"text": "[yolo:review] branch ready"}

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        notifier = WebhookNotifier("https://hooks.example.com/x")
        notifier.session = mock_session(status=500, body="boom")

        with pytest.raises(NotificationError) as exc_info:
            await notifier.send(Channel.INFO, "hi")
        assert "HTTP 500" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_channel_filter(self):
        notifier = WebhookNotifier("https://hooks.example.com/x", channels=[Channel.CRITICAL])
        notifier.session = mock_session()

        await notifier.send(Channel.INFO, "ignored")

        notifier.session.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_close_releases_session(self):
        notifier = WebhookNotifier("https://hooks.example.com/x")
        session = mock_session()
        notifier.session = session

        await notifier.close()

        session.close.assert_awaited_once()
        assert notifier.session is None
