"""Bearer token checks for MCP endpoints.

Endpoints call ``authenticate()`` with the incoming headers; when Duo is
disabled it returns None (anonymous) without looking at the headers.
"""

import logging
from typing import Mapping, Optional

from fastapi.responses import JSONResponse

from errors import INVALID_REQUEST, AuthInvalid
from oauth.introspection import TokenIntrospector, VerifiedIdentity, extract_bearer_token

logger = logging.getLogger(__name__)


async def authenticate(
    headers: Mapping[str, str],
    introspector: Optional[TokenIntrospector],
) -> Optional[VerifiedIdentity]:
    """Return the caller's identity, or None when authentication is disabled.

    Raises AuthInvalid when authentication is enabled and the token is
    missing, malformed or rejected by the authorization server.
    """
    if introspector is None:
        return None

    token = extract_bearer_token(headers.get("authorization"))
    if not token:
        logger.info("[AUTH] Request rejected: no Bearer token")
        raise AuthInvalid("Authorization token required")

    result = await introspector.verify_token(token)
    if not result.valid:
        logger.info("[AUTH] Request rejected: invalid or expired token")
        raise AuthInvalid("Invalid or expired token")

    return result.identity


def unauthorized_response(error_description: str) -> JSONResponse:
    """401 carrying a JSON-RPC invalid-request error and a Bearer challenge."""
    return JSONResponse(
        {
            "jsonrpc": "2.0",
            "id": None,
            "error": {"code": INVALID_REQUEST, "message": error_description},
        },
        status_code=401,
        headers={"WWW-Authenticate": 'Bearer realm="mcp"'},
    )
