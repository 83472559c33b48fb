"""JSON-RPC dispatch for the MCP methods this server supports.

Every transport decodes a message, hands it to ``MCPDispatcher.dispatch()``
and sends back whatever comes out. ``None`` means the message was a
notification and gets no JSON-RPC reply.
"""

import json
import logging
from typing import Any, Optional

from errors import (
    INTERNAL_ERROR,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    SERVER_ERROR,
    JSONRPCError,
    ToolExecutionFailed,
)
from oauth.introspection import VerifiedIdentity
from tools import SlackPostTool

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
SERVER_VERSION = "1.0.0"

# Tool failures: flagged result content, or a JSON-RPC error envelope
ERROR_MODE_RESULT = "result"
ERROR_MODE_RPC_ERROR = "rpc_error"


def result_response(request_id: Any, result: dict) -> dict:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def error_response(request_id: Any, code: int, message: str) -> dict:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


def parse_error() -> dict:
    return error_response(None, PARSE_ERROR, "Parse error")


def decode_message(raw: Any) -> Any:
    """Decode a raw JSON-RPC payload. Raises ValueError on malformed JSON."""
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    return json.loads(raw)


def is_method_not_found(response: Optional[dict]) -> bool:
    return bool(response and response.get("error", {}).get("code") == METHOD_NOT_FOUND)


class MCPDispatcher:
    """Method table for initialize, tools/list, tools/call and notifications."""

    def __init__(
        self,
        tool: SlackPostTool,
        server_name: str = "slack-mcp",
        server_version: str = SERVER_VERSION,
        error_mode: str = ERROR_MODE_RESULT,
    ):
        self.tool = tool
        self.server_name = server_name
        self.server_version = server_version
        self.error_mode = error_mode

    async def dispatch(self, request: Any, identity: Optional[VerifiedIdentity] = None) -> Optional[dict]:
        if not isinstance(request, dict):
            return error_response(None, INVALID_REQUEST, "Invalid Request")

        request_id = request.get("id")
        method = request.get("method")

        if request.get("jsonrpc") != "2.0":
            return error_response(request_id, INVALID_REQUEST, "Invalid Request")

        if isinstance(method, str) and method.startswith("notifications/"):
            logger.info(f"[MCP] Notification received: {method}")
            return None

        logger.info(f"[MCP] {method or f'id:{request_id}'}")

        try:
            if method == "initialize":
                return result_response(request_id, self.initialize())
            if method == "tools/list":
                return result_response(request_id, {"tools": [self.tool.definition()]})
            if method == "tools/call":
                return await self.call_tool(request_id, request.get("params"), identity)
        except JSONRPCError as e:
            return error_response(request_id, e.code, e.message)
        except Exception as e:
            logger.exception(f"[MCP] Error handling {method}")
            return error_response(request_id, INTERNAL_ERROR, str(e))

        logger.warning(f"[MCP] Unknown method: {method}")
        return error_response(request_id, METHOD_NOT_FOUND, "Method not found")

    def initialize(self) -> dict:
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {}},
            "serverInfo": {"name": self.server_name, "version": self.server_version},
        }

    async def call_tool(self, request_id: Any, params: Any, identity: Optional[VerifiedIdentity]) -> dict:
        params = params if isinstance(params, dict) else {}
        name = params.get("name")

        if name != self.tool.name:
            logger.warning(f"[MCP] Unknown tool: {name}")
            return error_response(request_id, METHOD_NOT_FOUND, f"Unknown tool: {name}")

        try:
            text = await self.tool.execute(params.get("arguments"), identity)
        except ToolExecutionFailed as e:
            if self.error_mode == ERROR_MODE_RPC_ERROR:
                return error_response(request_id, SERVER_ERROR, str(e))
            return result_response(request_id, {
                "content": [{"type": "text", "text": f"Error: {e}"}],
                "isError": True,
            })

        return result_response(request_id, {"content": [{"type": "text", "text": text}]})
