"""Error types and JSON-RPC error codes for slack-mcp-server."""

# JSON-RPC 2.0 error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
SERVER_ERROR = -32000


class ConfigMissing(Exception):
    """Required configuration is absent. Fatal at startup."""


class AuthInvalid(Exception):
    """Bearer token is missing, malformed, inactive or expired."""


class OAuthNotConfigured(Exception):
    """Duo hostname or client id is not set, so the OAuth flow cannot start."""


class SessionNotFound(Exception):
    """OAuth callback referenced an unknown or expired state."""

    def __init__(self, state: str = ""):
        super().__init__("Invalid or expired session")
        self.state = state


class StateAlreadyUsed(Exception):
    """OAuth callback replayed against a session that already holds tokens."""

    def __init__(self, state: str = ""):
        super().__init__("Authorization state has already been used")
        self.state = state


class TokenExchangeFailed(Exception):
    """Authorization server answered the code exchange with a non-2xx status."""

    def __init__(self, status_code: int, body: str):
        super().__init__(f"Token exchange failed: {status_code} - {body}")
        self.status_code = status_code
        self.body = body


class ToolExecutionFailed(Exception):
    """The Slack API rejected the call or could not be reached."""


class JSONRPCError(Exception):
    """Raised inside the dispatcher to produce a JSON-RPC error envelope."""

    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message
