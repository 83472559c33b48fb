"""Duo OAuth 2.0 authorization-code flow with PKCE (RFC 7636).

Session lifecycle: initiate() creates a session keyed by ``state``;
complete_callback() exchanges the code and marks it authenticated;
sessions older than ten minutes are swept.
"""

import base64
import hashlib
import logging
import secrets
from typing import Any
from urllib.parse import urlencode

import httpx

from config import Settings
from errors import OAuthNotConfigured, SessionNotFound, StateAlreadyUsed, TokenExchangeFailed
from oauth.stores import AuthorizationSession, AuthSessionStore

logger = logging.getLogger(__name__)


def generate_code_verifier() -> str:
    """32 random bytes, base64url without padding (43 characters)."""
    return secrets.token_urlsafe(32)


def code_challenge_for(code_verifier: str) -> str:
    """S256 challenge: base64url(sha256(verifier)) without padding."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class AuthorizationFlow:
    """Starts, completes and reports on Duo authorization sessions."""

    def __init__(self, settings: Settings, store: AuthSessionStore, http_client: httpx.AsyncClient):
        self.settings = settings
        self.store = store
        self.http_client = http_client

    @property
    def authorize_endpoint(self) -> str:
        return f"https://{self.settings.duo_api_hostname}/oauth/v1/authorize"

    @property
    def token_endpoint(self) -> str:
        return f"https://{self.settings.duo_api_hostname}/oauth/v1/token"

    def initiate(self) -> dict[str, str]:
        """Create a session and return the URL the user must visit."""
        if not self.settings.oauth_configured:
            raise OAuthNotConfigured("Duo OAuth not configured")

        # Opportunistic cleanup alongside the periodic sweep
        self.store.sweep()

        state = secrets.token_hex(32)
        code_verifier = generate_code_verifier()
        self.store.create(state, code_verifier)

        params = {
            "response_type": "code",
            "client_id": self.settings.duo_client_id,
            "redirect_uri": self.settings.duo_redirect_uri,
            "state": state,
            "code_challenge": code_challenge_for(code_verifier),
            "code_challenge_method": "S256",
            "scope": self.settings.duo_scope,
        }
        auth_url = f"{self.authorize_endpoint}?{urlencode(params)}"

        logger.info(f"[OAUTH] Authorization URL generated for state {state[:8]}...")
        return {"authUrl": auth_url, "state": state}

    async def complete_callback(self, code: str, state: str) -> AuthorizationSession:
        """Exchange ``code`` for tokens and mark the session authenticated."""
        session = self.store.get(state)
        if session is None:
            raise SessionNotFound(state)

        if (session.authenticated or session.exchanging) and self.settings.reject_state_reuse:
            logger.warning(f"[OAUTH] Rejected code exchange on used state {state[:8]}...")
            raise StateAlreadyUsed(state)

        logger.info(f"[OAUTH] Exchanging authorization code for state {state[:8]}...")
        # Claimed before the await so a concurrent callback on the same state is rejected
        session.exchanging = True
        try:
            response = await self.http_client.post(
                self.token_endpoint,
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self.settings.duo_redirect_uri,
                    "code_verifier": session.code_verifier,
                },
                auth=(self.settings.duo_client_id, self.settings.duo_client_secret),
            )
        finally:
            session.exchanging = False

        if not response.is_success:
            logger.error(f"[OAUTH] Token exchange failed: {response.status_code}")
            raise TokenExchangeFailed(response.status_code, response.text)

        token_data = response.json()
        session.authenticated = True
        session.access_token = token_data.get("access_token")
        session.refresh_token = token_data.get("refresh_token")
        expires_in = token_data.get("expires_in")
        session.expires_at = self.store.clock() + float(expires_in) if expires_in is not None else None

        logger.info(f"[OAUTH] Session authenticated for state {state[:8]}...")
        return session

    def status(self, state: str) -> dict[str, Any]:
        """Report whether ``state`` has completed authentication."""
        session = self.store.peek(state)
        if session is None:
            return {"authenticated": False, "error": "Session not found"}

        result: dict[str, Any] = {
            "authenticated": session.authenticated,
            "expiresAt": session.expires_at,
        }
        if session.authenticated:
            result["token"] = session.access_token
        return result
