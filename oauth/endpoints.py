"""Duo OAuth endpoints.

- /auth/duo-initiate: start a PKCE authorization session
- /auth/callback: redirect target; exchanges the code for tokens
- /auth/status: poll a session by state (used by the client CLI)
"""

import html
import logging

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse

from errors import OAuthNotConfigured, SessionNotFound, StateAlreadyUsed, TokenExchangeFailed
from oauth.flow import AuthorizationFlow
from oauth.templates import AUTH_FAILURE_PAGE, AUTH_SUCCESS_PAGE

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["oauth"])


def get_flow(request: Request) -> AuthorizationFlow:
    return request.app.state.authorization_flow


@router.get("/duo-initiate")
async def duo_initiate(request: Request):
    """Start an authorization session and return the Duo authorize URL."""
    try:
        return get_flow(request).initiate()
    except OAuthNotConfigured:
        logger.error("[OAUTH] Initiate requested but Duo OAuth is not configured")
        return JSONResponse({"error": "Duo OAuth not configured"}, status_code=500)


@router.get("/callback")
async def callback(request: Request, code: str = "", state: str = ""):
    """OAuth redirect target."""
    if not code or not state:
        return PlainTextResponse("Missing code or state parameter", status_code=400)

    try:
        await get_flow(request).complete_callback(code, state)
    except SessionNotFound:
        logger.warning("[OAUTH] Callback with unknown or expired state")
        return PlainTextResponse("Invalid or expired session", status_code=400)
    except StateAlreadyUsed as e:
        return PlainTextResponse(str(e), status_code=400)
    except TokenExchangeFailed as e:
        return HTMLResponse(AUTH_FAILURE_PAGE.format(message=html.escape(str(e))), status_code=500)
    except Exception as e:
        logger.exception("[OAUTH] Token exchange error")
        return HTMLResponse(AUTH_FAILURE_PAGE.format(message=html.escape(str(e))), status_code=500)

    return HTMLResponse(AUTH_SUCCESS_PAGE.format())


@router.get("/status")
async def status(request: Request, state: str = ""):
    """Report whether the session for ``state`` is authenticated."""
    if not state:
        return JSONResponse({"error": "Missing state parameter"}, status_code=400)
    return get_flow(request).status(state)
