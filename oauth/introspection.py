"""Bearer token validation via OAuth 2.0 token introspection (RFC 7662).

Every protected request is checked against the Duo introspection endpoint.
Results are not cached, and a failed check is never retried.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerifiedIdentity:
    """Identity claims of a caller whose token is active."""

    username: Optional[str]
    display_name: Optional[str]
    email: Optional[str]
    expires_at: Optional[int] = None


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    identity: Optional[VerifiedIdentity] = None

    @classmethod
    def invalid(cls) -> "VerificationResult":
        return cls(valid=False)


def extract_bearer_token(auth_header: Optional[str]) -> Optional[str]:
    """Return the token from an ``Authorization: Bearer <token>`` header value."""
    if not auth_header:
        return None

    parts = auth_header.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        return None

    return parts[1]


class TokenIntrospector:
    """Validates bearer tokens against the authorization server."""

    def __init__(self, endpoint: str, client_id: str, client_secret: str, http_client: httpx.AsyncClient):
        self.endpoint = endpoint
        self.client_id = client_id
        self.client_secret = client_secret
        self.http_client = http_client

    async def verify_token(self, token: Optional[str]) -> VerificationResult:
        """Introspect a token. Never raises; failures are reported as invalid."""
        if not token:
            return VerificationResult.invalid()

        try:
            response = await self.http_client.post(
                self.endpoint,
                data={"token": token},
                auth=(self.client_id, self.client_secret),
            )

            if not response.is_success:
                logger.warning(f"[AUTH] Token introspection failed: {response.status_code}")
                return VerificationResult.invalid()

            data = response.json()
            if not isinstance(data, dict) or not data.get("active"):
                logger.warning("[AUTH] Token is not active")
                return VerificationResult.invalid()

        except Exception as e:
            logger.error(f"[AUTH] Token introspection error: {e}")
            return VerificationResult.invalid()

        username = data.get("username")
        identity = VerifiedIdentity(
            username=username,
            display_name=data.get("display_name") or username,
            email=data.get("email"),
            expires_at=data.get("exp"),
        )
        logger.info(f"[AUTH] Token verified: {identity.display_name} ({identity.email})")
        return VerificationResult(valid=True, identity=identity)
