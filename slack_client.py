"""Slack Web API client (chat.postMessage only)."""

import logging
from typing import Any

import httpx

from errors import ToolExecutionFailed

logger = logging.getLogger(__name__)


class SlackClient:
    """Posts messages to Slack with a bot token.

    The httpx client is owned by the application and shared with the OAuth
    components so a single timeout policy applies to every outbound call.
    """

    def __init__(self, bot_token: str, http_client: httpx.AsyncClient, api_url: str = "https://slack.com/api"):
        self.bot_token = bot_token
        self.http_client = http_client
        self.api_url = api_url.rstrip("/")

    async def post_message(self, channel: str, text: str) -> dict[str, Any]:
        """Post text to a channel.

        Returns the Slack response body (contains ``ts``). Raises
        ToolExecutionFailed when Slack answers ``ok: false`` or the request fails.
        """
        try:
            response = await self.http_client.post(
                f"{self.api_url}/chat.postMessage",
                headers={"Authorization": f"Bearer {self.bot_token}"},
                json={"channel": channel, "text": text},
            )
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"[SLACK] Request to chat.postMessage failed: {e}")
            raise ToolExecutionFailed(str(e) or e.__class__.__name__) from e

        if not data.get("ok"):
            error = data.get("error") or "Slack API error"
            logger.warning(f"[SLACK] chat.postMessage rejected: {error}")
            raise ToolExecutionFailed(error)

        logger.info(f"[SLACK] Message posted to {channel} (ts={data.get('ts')})")
        return data
