"""MCP tools for slack-mcp-server.

The server exposes exactly one tool, which posts a message to Slack. It has
two catalog shapes: ``slack_post_message`` (``channel_id``) for anonymous
deployments and ``postMessage`` (``channel``) when callers are authenticated
through Duo. Either channel key is accepted at call time.
"""

import logging
from typing import Any, Optional

from errors import INVALID_PARAMS, JSONRPCError
from oauth.introspection import VerifiedIdentity
from slack_client import SlackClient

logger = logging.getLogger(__name__)


class SlackPostTool:
    """Tool executor for posting a message to a Slack channel."""

    def __init__(self, slack: SlackClient, authenticated: bool = False):
        self.slack = slack
        self.authenticated = authenticated

    @property
    def name(self) -> str:
        return "postMessage" if self.authenticated else "slack_post_message"

    @property
    def channel_field(self) -> str:
        return "channel" if self.authenticated else "channel_id"

    def definition(self) -> dict[str, Any]:
        """Catalog entry returned by tools/list."""
        if self.authenticated:
            description = "Post a message to a Slack channel (prefixed with your display name)"
        else:
            description = "Post a message to Slack"

        return {
            "name": self.name,
            "description": description,
            "inputSchema": {
                "type": "object",
                "properties": {
                    self.channel_field: {
                        "type": "string",
                        "description": "Slack channel ID (e.g., C08286T5HPV)",
                    },
                    "text": {
                        "type": "string",
                        "description": "Message text to post",
                    },
                },
                "required": [self.channel_field, "text"],
            },
        }

    def parse_arguments(self, arguments: Any) -> tuple[str, str]:
        """Return (channel, text) or raise an invalid-params error."""
        if not isinstance(arguments, dict):
            raise JSONRPCError(INVALID_PARAMS, "Invalid params: arguments must be an object")

        channel = arguments.get("channel_id") or arguments.get("channel")
        text = arguments.get("text")

        if not isinstance(channel, str) or not channel.strip():
            raise JSONRPCError(INVALID_PARAMS, f"Invalid params: '{self.channel_field}' is required")
        if not isinstance(text, str) or not text.strip():
            raise JSONRPCError(INVALID_PARAMS, "Invalid params: 'text' is required")

        return channel, text

    async def execute(self, arguments: Any, identity: Optional[VerifiedIdentity] = None) -> str:
        """Post the message and return the confirmation text.

        Raises ToolExecutionFailed when Slack rejects the message.
        """
        channel, text = self.parse_arguments(arguments)

        if identity is not None:
            user_name = identity.display_name
            logger.info(f"[TOOL] {self.name} invoked by {user_name} -> {channel}")
            data = await self.slack.post_message(channel, f"*[{user_name}]* {text}")
            return (
                f"Message posted successfully as {user_name}\n"
                f"Channel: {channel}\n"
                f"Timestamp: {data.get('ts')}"
            )

        logger.info(f"[TOOL] {self.name} invoked -> {channel}, message length: {len(text)}")
        await self.slack.post_message(channel, text)
        return f'Sent: "{text}"'
