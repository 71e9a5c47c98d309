"""Tests for notification delivery."""

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from healclaw.models import EventKind, HealingEvent, NotifyConfig
from healclaw.notify import DiscordNotifier, LogNotifier, NotificationDispatcher


def event(kind=EventKind.FAILED, **details):
    return HealingEvent(
        kind=kind,
        job_id="heal-acme-api-1",
        repo_key="acme/api",
        signature="abcdef0123456789",
        message="no changes generated",
        details=details,
    )


class TestDiscordNotifier:
    """Webhook embeds."""

    def test_embed_shape(self):
        embed = DiscordNotifier.build_embed(
            event(EventKind.SUCCEEDED, pull_request="https://x/pr/1", files_changed=["a.py", "b.py"], issue=None)
        )

        assert embed["title"] == "✅ Healing Successful"
        assert embed["color"] == 0x00FF00
        names = [f["name"] for f in embed["fields"]]
        assert names == ["Repository", "Signature", "pull_request", "files_changed"]
        assert embed["fields"][-1]["value"] == "a.py, b.py"

    @pytest.mark.asyncio
    async def test_posts_to_webhook(self):
        captured = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(json.loads(request.content))
            return httpx.Response(204)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        notifier = DiscordNotifier("https://discord.test/webhook", client=client)

        await notifier.notify(event())
        await notifier.close()

        assert captured[0]["embeds"][0]["title"] == "❌ Healing Failed"

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        notifier = DiscordNotifier("https://discord.test/webhook", client=client)

        with pytest.raises(httpx.HTTPStatusError):
            await notifier.notify(event())


class TestNotificationDispatcher:
    """Filtering and fan-out."""

    @pytest.mark.asyncio
    async def test_filters_by_config(self):
        notifier = AsyncMock()
        dispatcher = NotificationDispatcher(NotifyConfig(on_skipped=False), notifiers=[notifier])

        delivered = await dispatcher.dispatch([event(EventKind.SKIPPED), event(EventKind.FAILED)])

        assert delivered == 1
        assert notifier.notify.await_args.args[0].kind == EventKind.FAILED

    @pytest.mark.asyncio
    async def test_failures_never_raise(self):
        broken = AsyncMock()
        broken.notify.side_effect = RuntimeError("webhook down")
        working = AsyncMock()
        dispatcher = NotificationDispatcher(NotifyConfig(), notifiers=[broken, working])

        delivered = await dispatcher.dispatch([event()])

        assert delivered == 1
        working.notify.assert_awaited_once()

    def test_default_notifiers(self):
        assert [type(n) for n in NotificationDispatcher().notifiers] == [LogNotifier]

        with_discord = NotificationDispatcher(NotifyConfig(discord_webhook_url="https://discord.test/x"))
        assert [type(n) for n in with_discord.notifiers] == [LogNotifier, DiscordNotifier]

    @pytest.mark.asyncio
    async def test_log_notifier(self):
        await LogNotifier().notify(event(EventKind.STARTED))
