from __future__ import annotations

import hashlib
import time

import httpx

from job_monitor.config import Settings
from job_monitor.log import get_logger

log = get_logger(__name__)

POST_MESSAGE_URL = "https://slack.com/api/chat.postMessage"


class SlackDeliveryError(Exception):
    pass


def _webhook_message_id(message_text: str) -> str:
    digest = hashlib.sha1(message_text.encode("utf-8")).hexdigest()[:12]
    return f"webhook-{digest}-{int(time.time())}"


class SlackClient:
    """Posts plain-text messages through ``chat.postMessage`` or an incoming webhook.

    With a bot token and channel the Slack message ``ts`` is returned as the
    message id. Webhooks report none, so a synthetic ``webhook-<digest>-<epoch>`` id
    is returned instead.
    """

    def __init__(
        self,
        *,
        bot_token: str = "",
        channel: str = "",
        webhook_url: str = "",
        timeout_seconds: float = 20.0,
        post_message_url: str = POST_MESSAGE_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not webhook_url and not (bot_token and channel):
            raise ValueError("SlackClient needs a webhook URL or a bot token and channel")
        self.bot_token = bot_token
        self.channel = channel
        self.webhook_url = webhook_url
        self.post_message_url = post_message_url
        self._client = httpx.AsyncClient(
            timeout=timeout_seconds,
            follow_redirects=True,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "SlackClient":
        return cls(
            bot_token=settings.slack_bot_token,
            channel=settings.slack_channel,
            webhook_url=settings.slack_webhook_url,
            timeout_seconds=settings.request_timeout_seconds,
        )

    async def send(self, message_text: str) -> str | None:
        if self.bot_token and self.channel:
            return await self._post_message(message_text)
        await self._post_webhook(message_text)
        return _webhook_message_id(message_text)

    async def _post_message(self, message_text: str) -> str | None:
        try:
            response = await self._client.post(
                self.post_message_url,
                headers={"Authorization": f"Bearer {self.bot_token}"},
                json={"channel": self.channel, "text": message_text},
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise SlackDeliveryError(f"chat.postMessage failed: {exc}") from exc

        if not payload.get("ok"):
            raise SlackDeliveryError(f"chat.postMessage rejected: {payload.get('error', 'unknown_error')}")
        return payload.get("ts")

    async def _post_webhook(self, message_text: str) -> None:
        try:
            response = await self._client.post(self.webhook_url, json={"text": message_text})
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise SlackDeliveryError(f"webhook delivery failed: {exc}") from exc

    async def aclose(self) -> None:
        await self._client.aclose()
