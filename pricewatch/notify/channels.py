"""Notification channel senders (Telegram, Discord, Pushover, ntfy).

Each sender posts one rendered alert and raises ChannelDeliveryFailed on
any non-success; the dispatcher runs them concurrently under a timeout.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from pricewatch import metrics
from pricewatch.config import settings
from pricewatch.db.models import NotificationSettings
from pricewatch.errors import ChannelDeliveryFailed
from pricewatch.notify.formatters import (
    NotificationPayload,
    format_discord_embed,
    format_short_message,
    format_text_message,
)

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"
PUSHOVER_API_URL = "https://api.pushover.net/1/messages.json"

NTFY_TAGS = {
    "price_drop": "money_with_wings",
    "price_target": "dart",
    "stock_change": "tada",
}


class NotificationChannel(ABC):
    """One delivery channel."""

    name: str

    @abstractmethod
    def is_configured(self, config: NotificationSettings) -> bool:
        """Credentials present."""

    def is_enabled(self, config: NotificationSettings) -> bool:
        return bool(getattr(config, f"{self.name}_enabled", False))

    @abstractmethod
    async def send(
        self,
        client: httpx.AsyncClient,
        payload: NotificationPayload,
        config: NotificationSettings,
    ) -> None:
        """
        Deliver a message.

        Raises:
            ChannelDeliveryFailed: If the service rejected the message
        """

    def _check(self, response: httpx.Response, ok: tuple[int, ...] = (200,)) -> None:
        if response.status_code not in ok:
            raise ChannelDeliveryFailed(
                self.name, f"HTTP {response.status_code}: {response.text[:200]}"
            )


class TelegramChannel(NotificationChannel):
    name = "telegram"

    def is_configured(self, config: NotificationSettings) -> bool:
        return bool(config.telegram_bot_token and config.telegram_chat_id)

    async def send(self, client, payload, config) -> None:
        url = f"{TELEGRAM_API_URL}/bot{config.telegram_bot_token}/sendMessage"
        response = await client.post(
            url,
            json={
                "chat_id": config.telegram_chat_id,
                "text": format_text_message(payload),
                "disable_web_page_preview": False,
            },
        )
        self._check(response)


class DiscordChannel(NotificationChannel):
    name = "discord"

    def is_configured(self, config: NotificationSettings) -> bool:
        return bool(config.discord_webhook_url)

    async def send(self, client, payload, config) -> None:
        response = await client.post(
            config.discord_webhook_url,
            json={"embeds": [format_discord_embed(payload)]},
        )
        self._check(response, ok=(200, 204))


class PushoverChannel(NotificationChannel):
    name = "pushover"

    def is_configured(self, config: NotificationSettings) -> bool:
        return bool(config.pushover_user_key and config.pushover_app_token)

    async def send(self, client, payload, config) -> None:
        response = await client.post(
            PUSHOVER_API_URL,
            data={
                "token": config.pushover_app_token,
                "user": config.pushover_user_key,
                "title": payload.title,
                "message": format_short_message(payload),
                "url": payload.product_url,
                "url_title": "View Product",
            },
        )
        self._check(response)


class NtfyChannel(NotificationChannel):
    name = "ntfy"

    def is_configured(self, config: NotificationSettings) -> bool:
        return bool(config.ntfy_topic)

    async def send(self, client, payload, config) -> None:
        server = (config.ntfy_server_url or settings.ntfy_default_server).rstrip("/")
        # Header values must be ASCII; the emoji title goes in the tag instead
        title = payload.title.encode("ascii", "ignore").decode().strip()
        response = await client.post(
            f"{server}/{config.ntfy_topic}",
            content=format_short_message(payload).encode("utf-8"),
            headers={
                "Title": title,
                "Click": str(httpx.URL(payload.product_url)),
                "Tags": NTFY_TAGS.get(payload.notification_type, "bell"),
            },
        )
        self._check(response)


DEFAULT_CHANNELS: list[NotificationChannel] = [
    TelegramChannel(),
    DiscordChannel(),
    PushoverChannel(),
    NtfyChannel(),
]


class ChannelDispatcher:
    """Sends one payload to every enabled, configured channel concurrently."""

    def __init__(
        self,
        channels: Optional[list[NotificationChannel]] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self.channels = channels if channels is not None else DEFAULT_CHANNELS
        self._http_client = client
        self._owns_client = client is None
        self.timeout = settings.channel_timeout_seconds if timeout is None else timeout

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    def active_channels(self, config: Optional[NotificationSettings]) -> list[NotificationChannel]:
        if config is None:
            return []
        return [c for c in self.channels if c.is_enabled(config) and c.is_configured(config)]

    async def _deliver(
        self,
        channel: NotificationChannel,
        client: httpx.AsyncClient,
        payload: NotificationPayload,
        config: NotificationSettings,
    ) -> bool:
        try:
            await asyncio.wait_for(channel.send(client, payload, config), timeout=self.timeout)
        except asyncio.TimeoutError:
            error = ChannelDeliveryFailed(channel.name, f"timed out after {self.timeout}s")
        except ChannelDeliveryFailed as e:
            error = e
        except httpx.HTTPError as e:
            error = ChannelDeliveryFailed(channel.name, f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.exception(f"Unexpected error sending via {channel.name}")
            error = ChannelDeliveryFailed(channel.name, f"{type(e).__name__}: {e}")
        else:
            metrics.notifications_sent_total.labels(channel=channel.name, status="success").inc()
            logger.info(f"{payload.notification_type} notification sent via {channel.name}")
            return True

        metrics.notifications_sent_total.labels(channel=channel.name, status="failed").inc()
        logger.warning(f"Notification delivery failed: {error}")
        return False

    async def dispatch(
        self,
        payload: NotificationPayload,
        config: Optional[NotificationSettings],
    ) -> list[str]:
        """
        Deliver to all active channels.

        Returns:
            Names of the channels that succeeded, in channel order
        """
        channels = self.active_channels(config)
        if not channels:
            logger.debug(f"No active channels for {payload.notification_type} notification")
            return []

        client = await self._get_client()
        results = await asyncio.gather(
            *(self._deliver(channel, client, payload, config) for channel in channels)
        )
        return [channel.name for channel, ok in zip(channels, results) if ok]


channel_dispatcher = ChannelDispatcher()
