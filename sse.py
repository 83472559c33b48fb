"""SSE transports.

Two flavours are provided:

- SDK SSE (/sse, /message): the MCP SDK's SseServerTransport handles the
  stream and POST plumbing; messages read off the stream are answered by
  our dispatcher. The SDK correlates POSTs to streams by its session_id.
- Push SSE (GET /mcp, POST /mcp): the caller opens a stream, receives an
  ``endpoint`` event naming its connection id, then POSTs JSON-RPC messages
  with that id. Replies are pushed onto the named stream as
  ``event: message`` frames.
"""

import json
import logging
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from mcp.server.sse import SseServerTransport
from mcp.shared.message import SessionMessage
from mcp.types import JSONRPCMessage
from pydantic import TypeAdapter
from sse_starlette.sse import EventSourceResponse
from starlette.responses import Response

from dispatcher import decode_message, parse_error
from errors import INTERNAL_ERROR, METHOD_NOT_FOUND, AuthInvalid
from oauth.middleware import authenticate, unauthorized_response
from oauth.stores import Connection, ConnectionRegistry

logger = logging.getLogger(__name__)

CONNECTION_ID_HEADER = "mcp-connection-id"


class _ResponseAlreadySent(Response):
    """Returned after the SDK has written the response through the raw ASGI send."""

    async def __call__(self, scope, receive, send):
        return None


# ============== SDK SSE (/sse, /message) ==============

sdk_router = APIRouter(tags=["mcp-sse"])

sse_transport = SseServerTransport("/message")

# JSONRPCMessage is a RootModel on older SDK releases and a bare union on newer ones
_jsonrpc_message = TypeAdapter(JSONRPCMessage)


def _to_dict(message: JSONRPCMessage) -> dict:
    return message.model_dump(by_alias=True, mode="json", exclude_none=True)


@sdk_router.get("/sse")
async def sse_endpoint(request: Request) -> Response:
    """Open an SDK SSE stream and answer its messages until the client leaves."""
    try:
        identity = await authenticate(request.headers, request.app.state.introspector)
    except AuthInvalid as e:
        return unauthorized_response(str(e))

    dispatcher = request.app.state.dispatcher
    logger.info(f"[SSE] SDK stream opened ({identity.display_name if identity else 'anonymous'})")

    async with sse_transport.connect_sse(
        request.scope, request.receive, request._send
    ) as (read_stream, write_stream):
        async for item in read_stream:
            if isinstance(item, Exception):
                logger.warning(f"[SSE] Invalid message on stream: {item}")
                continue

            response = await dispatcher.dispatch(_to_dict(item.message), identity)
            if response is None:
                continue
            if response.get("id") is None:
                logger.warning("[SSE] Dropping reply without a request id")
                continue
            await write_stream.send(SessionMessage(_jsonrpc_message.validate_python(response)))

    logger.info("[SSE] SDK stream closed")
    return _ResponseAlreadySent()


@sdk_router.post("/message")
async def message_endpoint(request: Request) -> Response:
    """Hand a client message to the SDK transport (answers 202 Accepted)."""
    try:
        await authenticate(request.headers, request.app.state.introspector)
    except AuthInvalid as e:
        return unauthorized_response(str(e))

    body = await request.body()
    try:
        decode_message(body)
    except ValueError:
        return JSONResponse(parse_error(), status_code=400)

    async def receive():
        return {"type": "http.request", "body": body, "more_body": False}

    await sse_transport.handle_post_message(request.scope, receive, request._send)
    return _ResponseAlreadySent()


# ============== Push SSE (GET/POST /mcp) ==============

push_router = APIRouter(tags=["mcp-push-sse"])


async def event_stream(connection: Connection, registry: ConnectionRegistry) -> AsyncIterator[dict]:
    """Yield the endpoint event, then queued replies until the stream is closed."""
    try:
        yield {
            "event": "endpoint",
            "data": json.dumps({
                "path": "/mcp",
                "connectionId": connection.connection_id,
                "authenticated": True,
                "user": connection.identity.display_name,
            }),
        }
        while True:
            item = await connection.queue.get()
            if item is None:
                break
            yield {"event": item["event"], "data": json.dumps(item["data"])}
    finally:
        registry.close(connection.connection_id)


@push_router.get("/mcp")
async def open_stream(request: Request) -> Response:
    """Open a push stream for an authenticated caller."""
    try:
        identity = await authenticate(request.headers, request.app.state.introspector)
    except AuthInvalid as e:
        return unauthorized_response(str(e))

    registry: ConnectionRegistry = request.app.state.connections
    connection = registry.open(identity)
    logger.info(f"[SSE] Stream established for {identity.display_name} ({identity.email})")

    return EventSourceResponse(
        event_stream(connection, registry),
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        sep="\n",
    )


def _connection_id(request: Request) -> Optional[str]:
    return request.headers.get(CONNECTION_ID_HEADER) or request.query_params.get("connection_id")


@push_router.post("/mcp")
async def post_message(request: Request) -> Response:
    """Dispatch a message and push the reply onto the caller's named stream."""
    try:
        identity = await authenticate(request.headers, request.app.state.introspector)
    except AuthInvalid as e:
        return unauthorized_response(str(e))

    try:
        message = decode_message(await request.body())
    except ValueError:
        logger.warning("[SSE] Malformed JSON body")
        return JSONResponse(parse_error(), status_code=400)

    connection = request.app.state.connections.get(_connection_id(request), identity)
    if connection is None:
        logger.warning(f"[SSE] No active stream for {identity.email}")
        return JSONResponse(
            {"error": "No active SSE connection found. Please establish GET /mcp connection first."},
            status_code=404,
        )

    response = await request.app.state.dispatcher.dispatch(message, identity)
    if response is None:
        return JSONResponse({"status": "ok"})

    await connection.send("message", response)

    error = response.get("error")
    if error is None:
        return JSONResponse({"status": "ok"})
    if error["code"] == METHOD_NOT_FOUND:
        return JSONResponse({"error": error["message"]}, status_code=400)
    if error["code"] == INTERNAL_ERROR:
        return JSONResponse({"error": error["message"]}, status_code=500)
    return JSONResponse({"status": "ok"})
