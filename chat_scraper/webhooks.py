"""
Webhook Notifications

Pushes chat messages and orchestration alerts to external HTTP endpoints.

Key Features:
- Provider interface with a Discord embed implementation and a plain JSON one
- Fan-out manager that logs and skips providers that fail
- Discord rate limiting: bounded concurrency, spacing between posts, 429 retry
- Consumers for the chat channel and the orchestration event channel
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import aiohttp
import structlog

from .broadcast import ChannelClosed, Subscription
from .config import MonitorConfig
from .errors import NetworkError
from .models import ChatMessage
from .orchestrator import AgentMessageType

DEFAULT_TIMEOUT = 10.0
DEFAULT_COLOR = 0x9146FF

ALERT_COLORS = {
    "critical": 0xFF0000,
    "warning": 0xFFFF00,
    "info": 0x0099FF,
}


def parse_user_color(color: Optional[str]) -> int:
    """Convert a chat name colour ("#RRGGBB" or "rgb(r, g, b)") to an embed colour"""
    if not color:
        return DEFAULT_COLOR

    color = color.strip()
    if color.startswith("rgb(") and color.endswith(")"):
        parts = color[4:-1].split(",")
        if len(parts) == 3:
            try:
                r, g, b = (int(part.strip()) for part in parts)
            except ValueError:
                return DEFAULT_COLOR
            return (r << 16) | (g << 8) | b
    elif color.startswith("#"):
        try:
            return int(color[1:], 16)
        except ValueError:
            return DEFAULT_COLOR

    return DEFAULT_COLOR


class WebhookProvider(ABC):
    """Destination for chat messages and alerts"""

    name = "webhook"

    @abstractmethod
    async def send_message(self, message: ChatMessage) -> None:
        """Deliver one chat message; raises NetworkError on failure"""

    @abstractmethod
    async def send_alert(self, level: str, title: str, message: str) -> None:
        """Deliver an alert; level is "info", "warning" or "critical" """

    async def close(self) -> None:
        pass


class _HttpWebhook(WebhookProvider):
    """POSTs JSON payloads to one URL over a shared aiohttp session"""

    def __init__(
        self,
        url: str,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.logger = structlog.get_logger(self.__class__.__name__)
        self.url = url
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True
        return self._session

    async def _post(self, payload: Dict[str, Any]) -> int:
        """POST a payload and return the status; errors other than 429 raise NetworkError"""
        try:
            async with self._get_session().post(self.url, json=payload) as response:
                if response.status == 429 or response.status < 400:
                    return response.status
                body = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as error:
            raise NetworkError(f"Failed to send webhook: {error}") from error

        raise NetworkError(
            f"{self.name} webhook failed with status {response.status}: {body}"
        )

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None


class JsonWebhook(_HttpWebhook):
    """Generic webhook: posts the message or alert as a flat JSON document"""

    name = "JSON"

    async def send_message(self, message: ChatMessage) -> None:
        await self._send({"type": "chat_message", "message": message.to_dict()})

    async def send_alert(self, level: str, title: str, message: str) -> None:
        await self._send(
            {
                "type": "alert",
                "level": level,
                "title": title,
                "message": message,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )

    async def _send(self, payload: Dict[str, Any]) -> None:
        status = await self._post(payload)
        if status == 429:
            raise NetworkError("JSON webhook rate limited")


class DiscordWebhook(_HttpWebhook):
    """
    Discord channel webhook posting one embed per message or alert.

    At most five requests are in flight, each successful post is followed by
    a short pause, and 429 responses are retried after retry_delay seconds.
    """

    name = "Discord"

    def __init__(
        self,
        url: str,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_concurrent: int = 5,
        min_interval: float = 0.4,
        retry_delay: float = 2.0,
        max_retries: int = 3,
    ):
        super().__init__(url, session=session, timeout=timeout)
        self.min_interval = min_interval
        self.retry_delay = retry_delay
        self.max_retries = max_retries
        self._rate_limiter = asyncio.Semaphore(max_concurrent)

    async def send_message(self, message: ChatMessage) -> None:
        await self._send({"embeds": [self.chat_embed(message)]})

    async def send_alert(self, level: str, title: str, message: str) -> None:
        await self._send({"embeds": [self.alert_embed(level, title, message)]})

    def chat_embed(self, message: ChatMessage) -> Dict[str, Any]:
        return {
            "title": f"💬 Chat from {message.streamer}",
            "color": parse_user_color(message.user.color),
            "fields": [
                {"name": "User", "value": message.user.display_name, "inline": True},
                {"name": "Message", "value": message.message.text, "inline": False},
                {
                    "name": "Channel",
                    "value": f"twitch.tv/{message.streamer}",
                    "inline": True,
                },
            ],
            "timestamp": message.timestamp.isoformat(),
            "footer": {"text": "Twitch Chat Scraper"},
        }

    def alert_embed(self, level: str, title: str, message: str) -> Dict[str, Any]:
        return {
            "title": title,
            "description": message,
            "color": ALERT_COLORS.get(level.lower(), 0x808080),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "footer": {"text": "Twitch Chat Scraper Alert"},
        }

    async def _send(self, payload: Dict[str, Any]) -> None:
        async with self._rate_limiter:
            for attempt in range(self.max_retries + 1):
                status = await self._post(payload)
                if status != 429:
                    self.logger.debug("Discord webhook sent", status=status)
                    await asyncio.sleep(self.min_interval)
                    return

                self.logger.warning(
                    "Discord webhook rate limited, waiting",
                    attempt=attempt + 1,
                    retry_delay=self.retry_delay,
                )
                await asyncio.sleep(self.retry_delay)

        raise NetworkError(
            f"Discord webhook still rate limited after {self.max_retries} retries"
        )


class WebhookManager:
    """
    Fans messages and alerts out to every registered provider.

    A failing provider is logged and skipped; it never stops delivery to the
    others or the consumer loops.
    """

    def __init__(self, providers: Optional[List[WebhookProvider]] = None):
        self.logger = structlog.get_logger(self.__class__.__name__)
        self.providers: List[WebhookProvider] = list(providers or [])
        self.failures = 0

    @classmethod
    def from_config(cls, monitoring: MonitorConfig) -> "WebhookManager":
        providers: List[WebhookProvider] = []
        if monitoring.discord_webhook_url:
            providers.append(DiscordWebhook(monitoring.discord_webhook_url))
        if monitoring.webhook_url:
            providers.append(JsonWebhook(monitoring.webhook_url))
        return cls(providers)

    def add_provider(self, provider: WebhookProvider) -> None:
        self.providers.append(provider)

    @property
    def enabled(self) -> bool:
        return bool(self.providers)

    async def send_message(self, message: ChatMessage) -> None:
        for provider in self.providers:
            try:
                await provider.send_message(message)
            except NetworkError as error:
                self._record_failure(provider, error)

    async def send_alert(self, level: str, title: str, message: str) -> None:
        for provider in self.providers:
            try:
                await provider.send_alert(level, title, message)
            except NetworkError as error:
                self._record_failure(provider, error)

    async def forward_chat(self, subscription: Subscription) -> None:
        """Send every chat message to the providers until the subscription closes"""
        while True:
            try:
                message = await subscription.recv()
            except ChannelClosed:
                break
            await self.send_message(message)

        if subscription.lagged:
            self.logger.warning(
                "Webhook chat forwarder fell behind", dropped=subscription.lagged
            )

    async def forward_events(self, subscription: Subscription) -> None:
        """Send ResourceAlert and Error events until the subscription closes"""

        while True:
            try:
                event = await subscription.recv()
            except ChannelClosed:
                break

            if event.message_type is AgentMessageType.RESOURCE_ALERT:
                await self.send_alert("warning", "Resource alert", event.alert or "")
            elif event.message_type is AgentMessageType.ERROR:
                title = f"Agent error ({event.agent_id})" if event.agent_id else "Error"
                await self.send_alert("critical", title, event.error or "")

    async def run(
        self,
        chat_subscription: Optional[Subscription],
        event_subscription: Subscription,
    ) -> None:
        """Run both forwarders; returns once their channels are closed"""
        consumers = [self.forward_events(event_subscription)]
        if chat_subscription is not None:
            consumers.append(self.forward_chat(chat_subscription))
        await asyncio.gather(*consumers)

    async def close(self) -> None:
        for provider in self.providers:
            await provider.close()

    def _record_failure(self, provider: WebhookProvider, error: Exception) -> None:
        self.failures += 1
        self.logger.warning(
            f"{provider.name} webhook delivery failed", error=str(error)
        )


__all__ = [
    "WebhookProvider",
    "WebhookManager",
    "DiscordWebhook",
    "JsonWebhook",
    "parse_user_color",
]
