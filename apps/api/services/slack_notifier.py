"""Thread replies posted back into the originating Slack conversation."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from config import settings

logger = logging.getLogger(__name__)

READY_FALLBACK_TEXT = "🎧 Audio summary ready. Link sharing failed but you can still listen on your dashboard."


class SlackNotificationError(Exception):
    """Raised when Slack rejects or cannot receive a message."""


def dashboard_url(link_id: str) -> str:
    return f"{settings.DASHBOARD_BASE_URL.rstrip('/')}/dashboard#{link_id}"


class SlackNotifier:
    """Notification stage: chat.postMessage into the message thread."""

    def __init__(
        self,
        access_token: str,
        api_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ):
        if not access_token:
            raise SlackNotificationError("Team has no Slack access token")
        self.access_token = access_token
        self.api_url = (api_url or settings.SLACK_API_URL).rstrip("/")
        self._transport = transport
        self.timeout = timeout

    async def post_message(self, channel_id: str, thread_ts: str, text: str) -> None:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.post(
                    f"{self.api_url}/chat.postMessage",
                    headers={"Authorization": f"Bearer {self.access_token}"},
                    json={"channel": channel_id, "thread_ts": thread_ts, "text": text},
                )
                response.raise_for_status()
            except httpx.HTTPError as exc:
                raise SlackNotificationError(f"Slack request failed: {exc}") from exc

        payload = response.json()
        if not payload.get("ok"):
            raise SlackNotificationError(f"Slack API error: {payload.get('error', 'unknown_error')}")

    async def post_link_ready(self, channel_id: str, thread_ts: str, link_id: str, title: str) -> None:
        """Post the dashboard link; on failure try a plainer message before raising."""
        text = f"🎧 Audio summary of *{title}* is ready. Listen on your dashboard: {dashboard_url(link_id)}"
        try:
            await self.post_message(channel_id, thread_ts, text)
            logger.info("Dashboard link for %s posted to %s", link_id, channel_id)
        except SlackNotificationError as exc:
            logger.error("Failed to post dashboard link for %s to %s: %s", link_id, channel_id, exc)
            try:
                await self.post_message(channel_id, thread_ts, READY_FALLBACK_TEXT)
                logger.info("Fallback completion message posted to %s", channel_id)
            except SlackNotificationError as fallback_exc:
                logger.error("Fallback completion message to %s failed: %s", channel_id, fallback_exc)
                raise exc

    async def post_link_failed(self, channel_id: str, thread_ts: str, url: str, reason: str) -> None:
        text = f"⚠️ Sorry, I couldn't process the link: {url}. {reason}"
        await self.post_message(channel_id, thread_ts, text)
