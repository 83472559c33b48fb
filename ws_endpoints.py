"""WebSocket transport: one JSON-RPC message per frame (text or binary)."""

import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from dispatcher import decode_message, parse_error
from errors import AuthInvalid
from oauth.middleware import authenticate

logger = logging.getLogger(__name__)

router = APIRouter(tags=["mcp-websocket"])


async def mcp_websocket(websocket: WebSocket):
    """Serve one MCP client for the lifetime of the socket."""
    try:
        identity = await authenticate(websocket.headers, websocket.app.state.introspector)
    except AuthInvalid as e:
        logger.info(f"[WS] Connection refused: {e}")
        await websocket.close(code=1008, reason=str(e))
        return

    await websocket.accept()
    dispatcher = websocket.app.state.dispatcher
    logger.info(f"[WS] Connected ({identity.display_name if identity else 'anonymous'})")

    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(frame.get("code", 1000))

            # Text and binary frames both carry JSON
            data = frame.get("text")
            if data is None:
                data = frame.get("bytes") or b""
            try:
                message = decode_message(data)
            except ValueError:
                logger.warning("[WS] Malformed JSON frame")
                await websocket.send_text(json.dumps(parse_error()))
                continue

            response = await dispatcher.dispatch(message, identity)
            if response is not None:
                await websocket.send_text(json.dumps(response))
                logger.info(f"[WS] Sent {'error' if 'error' in response else 'result'}")
    except WebSocketDisconnect:
        logger.info("[WS] Disconnected")


router.add_api_websocket_route("/", mcp_websocket)
router.add_api_websocket_route("/ws", mcp_websocket)
