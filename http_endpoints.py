"""Plain HTTP transport: one JSON-RPC request per POST /mcp."""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.responses import Response

from dispatcher import decode_message, is_method_not_found, parse_error
from errors import AuthInvalid
from oauth.middleware import authenticate, unauthorized_response

logger = logging.getLogger(__name__)

router = APIRouter(tags=["mcp-http"])


@router.post("/mcp")
async def mcp_endpoint(request: Request) -> Response:
    """Handle a JSON-RPC message and answer on the same response."""
    try:
        identity = await authenticate(request.headers, request.app.state.introspector)
    except AuthInvalid as e:
        return unauthorized_response(str(e))

    try:
        message = decode_message(await request.body())
    except ValueError:
        logger.warning("[MCP] Malformed JSON body")
        return JSONResponse(parse_error(), status_code=400)

    user = identity.display_name if identity else "anonymous"
    response = await request.app.state.dispatcher.dispatch(message, identity)

    if response is None:
        logger.info(f"[MCP] Notification acknowledged (user: {user})")
        return Response(status_code=202)

    status_code = 400 if is_method_not_found(response) else 200
    logger.info(f"[MCP] Sending {'error' if 'error' in response else 'result'} (user: {user})")
    return JSONResponse(response, status_code=status_code)
