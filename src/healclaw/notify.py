"""Notification delivery for HealClaw.

The pipeline returns events; the dispatcher drains them after each batch
and hands them to every configured notifier. Delivery is best-effort.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import httpx
from loguru import logger

from healclaw.models import EventKind, HealingEvent, NotifyConfig

EMBED_COLORS = {
    EventKind.STARTED: 0xFFAA00,
    EventKind.SUCCEEDED: 0x00FF00,
    EventKind.FAILED: 0xFF0000,
    EventKind.SKIPPED: 0x95A5A6,
}

EMBED_TITLES = {
    EventKind.STARTED: "🔧 Healing Started",
    EventKind.SUCCEEDED: "✅ Healing Successful",
    EventKind.FAILED: "❌ Healing Failed",
    EventKind.SKIPPED: "⏭️ Healing Skipped",
}


@runtime_checkable
class Notifier(Protocol):
    """Delivers one event somewhere."""

    async def notify(self, event: HealingEvent) -> None:
        ...


class LogNotifier:
    """Writes events to the log."""

    async def notify(self, event: HealingEvent) -> None:
        text = f"[{event.kind.value}] {event.repo_key}: {event.message}"
        if event.kind == EventKind.FAILED:
            logger.warning(text)
        else:
            logger.info(text)


class DiscordNotifier:
    """Posts events to a Discord webhook as embeds."""

    def __init__(self, webhook_url: str, client: httpx.AsyncClient | None = None):
        self._webhook_url = webhook_url
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=10)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def build_embed(event: HealingEvent) -> dict:
        fields = [{"name": "Repository", "value": event.repo_key, "inline": True}]
        if event.signature:
            fields.append({"name": "Signature", "value": f"`{event.signature}`", "inline": True})
        for name, value in event.details.items():
            if value in (None, "", []):
                continue
            if isinstance(value, list):
                value = ", ".join(str(v) for v in value[:10])
            fields.append({"name": name, "value": str(value)[:1024], "inline": False})

        return {
            "title": EMBED_TITLES[event.kind],
            "description": event.message[:2000],
            "color": EMBED_COLORS[event.kind],
            "fields": fields,
            "timestamp": event.created_at.isoformat(),
            "footer": {"text": f"job {event.job_id}"},
        }

    async def notify(self, event: HealingEvent) -> None:
        response = await self._get_client().post(
            self._webhook_url,
            json={"embeds": [self.build_embed(event)]},
        )
        response.raise_for_status()


class NotificationDispatcher:
    """Filters events by configuration and fans them out to notifiers."""

    def __init__(self, config: NotifyConfig | None = None, notifiers: list[Notifier] | None = None):
        self._config = config or NotifyConfig()
        if notifiers is None:
            notifiers = [LogNotifier()]
            if self._config.discord_webhook_url:
                notifiers.append(DiscordNotifier(self._config.discord_webhook_url))
        self._notifiers = notifiers

    @property
    def notifiers(self) -> list[Notifier]:
        return self._notifiers

    async def dispatch(self, events: list[HealingEvent]) -> int:
        """Deliver events. Never raises.

        Returns:
            Number of successful deliveries
        """
        delivered = 0
        for event in events:
            if not self._config.wants(event.kind):
                continue
            for notifier in self._notifiers:
                try:
                    await notifier.notify(event)
                    delivered += 1
                except Exception as e:
                    logger.warning(
                        f"Notifier {type(notifier).__name__} failed for {event.job_id}: {e}"
                    )
        return delivered

    async def close(self) -> None:
        for notifier in self._notifiers:
            close = getattr(notifier, "close", None)
            if close is not None:
                await close()
