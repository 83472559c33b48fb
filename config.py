"""Config management for slack-mcp-server.

Two kinds of configuration live here:
- Settings: server configuration read from environment variables (.env supported)
- Config: the client CLI's saved login (~/.slack-mcp-server/config.json)
"""
import json
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from errors import ConfigMissing


CONFIG_DIR = Path.home() / ".slack-mcp-server"
CONFIG_FILE = CONFIG_DIR / "config.json"

TRANSPORTS = ("websocket", "http", "sse", "http-sse")
TOOL_ERROR_MODES = ("result", "rpc_error")

# Default port per transport (the SDK SSE deployment historically ran on 10000)
DEFAULT_PORTS = {
    "websocket": 8080,
    "http": 8080,
    "sse": 10000,
    "http-sse": 8080,
}


def _as_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Server settings backed by an environment mapping."""

    def __init__(self, env: dict = None):
        self.env = dict(os.environ) if env is None else dict(env)

    def _get(self, name: str, default: str = "") -> str:
        value = self.env.get(name)
        if value is None:
            return default
        return value.strip()

    # ----- Slack -----

    @property
    def slack_bot_token(self) -> str:
        return self._get("SLACK_BOT_TOKEN")

    @property
    def slack_api_url(self) -> str:
        return self._get("SLACK_API_URL", "https://slack.com/api").rstrip("/")

    # ----- Transport -----

    @property
    def transport(self) -> str:
        return self._get("MCP_TRANSPORT", "http").lower()

    @property
    def host(self) -> str:
        return self._get("MCP_HOST", "0.0.0.0")

    @property
    def port(self) -> int:
        value = self._get("PORT")
        if value:
            return int(value)
        return DEFAULT_PORTS.get(self.transport, 8080)

    @property
    def http_timeout(self) -> float:
        return float(self._get("HTTP_TIMEOUT", "10"))

    @property
    def tool_error_mode(self) -> str:
        return self._get("TOOL_ERROR_MODE", "result").lower()

    @property
    def log_level(self) -> str:
        return self._get("LOG_LEVEL", "INFO").upper()

    # ----- Duo OAuth -----

    @property
    def duo_enabled(self) -> bool:
        # The push-SSE transport routes replies by identity, so it always authenticates
        if self.transport == "http-sse":
            return True
        return _as_bool(self.env.get("DUO_ENABLED"))

    @property
    def duo_api_hostname(self) -> str:
        return self._get("DUO_API_HOSTNAME")

    @property
    def duo_client_id(self) -> str:
        return self._get("DUO_CLIENT_ID")

    @property
    def duo_client_secret(self) -> str:
        return self._get("DUO_CLIENT_SECRET")

    @property
    def duo_introspection_endpoint(self) -> str:
        return self._get("DUO_TOKEN_INTROSPECTION_ENDPOINT")

    @property
    def duo_redirect_uri(self) -> str:
        uri = self._get("DUO_REDIRECT_URI")
        if uri:
            return uri
        return f"https://{self._get('RENDER_EXTERNAL_HOSTNAME')}/auth/callback"

    @property
    def duo_scope(self) -> str:
        return self._get("DUO_SCOPE", "openid")

    @property
    def reject_state_reuse(self) -> bool:
        return _as_bool(self.env.get("OAUTH_REJECT_STATE_REUSE"), default=True)

    @property
    def oauth_configured(self) -> bool:
        """Whether the authorization-code flow can build URLs."""
        return bool(self.duo_api_hostname and self.duo_client_id)

    # ----- Remote logging -----

    @property
    def supabase_url(self) -> str:
        return self._get("SUPABASE_URL")

    @property
    def supabase_anon_key(self) -> str:
        return self._get("SUPABASE_ANON_KEY")

    def validate(self) -> "Settings":
        """Raise ConfigMissing if the server cannot start with these settings."""
        if not self.slack_bot_token:
            raise ConfigMissing("SLACK_BOT_TOKEN environment variable is required")

        if self.transport not in TRANSPORTS:
            raise ConfigMissing(
                f"Unknown MCP_TRANSPORT '{self.transport}' (expected one of: {', '.join(TRANSPORTS)})"
            )

        if self.tool_error_mode not in TOOL_ERROR_MODES:
            raise ConfigMissing(
                f"Unknown TOOL_ERROR_MODE '{self.tool_error_mode}' (expected one of: {', '.join(TOOL_ERROR_MODES)})"
            )

        for name, convert in (("PORT", int), ("HTTP_TIMEOUT", float)):
            value = self._get(name)
            if not value:
                continue
            try:
                convert(value)
            except ValueError:
                raise ConfigMissing(f"{name} must be a number, got '{value}'")

        if self.duo_enabled:
            missing = [
                name for name, value in (
                    ("DUO_TOKEN_INTROSPECTION_ENDPOINT", self.duo_introspection_endpoint),
                    ("DUO_CLIENT_ID", self.duo_client_id),
                    ("DUO_CLIENT_SECRET", self.duo_client_secret),
                )
                if not value
            ]
            if missing:
                raise ConfigMissing(
                    "Duo authentication enabled but required environment variables are missing: "
                    + ", ".join(missing)
                )

        return self


def load_settings(env_file: Optional[Path] = None) -> Settings:
    """Load settings from the environment, reading .env first if present."""
    env_file = env_file or Path(".env")
    if env_file.exists():
        load_dotenv(env_file)
    return Settings()


# ============== Client CLI config ==============

class Config:
    """Saved login for the client CLI."""

    def __init__(self, data: dict = None):
        self.data = data or {}

    @property
    def server_url(self) -> Optional[str]:
        return self.data.get("server_url")

    @property
    def access_token(self) -> Optional[str]:
        return self.data.get("access_token")

    @property
    def expires_at(self) -> Optional[float]:
        return self.data.get("expires_at")

    def is_valid(self) -> bool:
        """Check if config has a usable token."""
        return bool(self.server_url and self.access_token)


def load_config() -> Config:
    """Load config from file."""
    if not CONFIG_FILE.exists():
        return Config()

    try:
        with open(CONFIG_FILE, "r") as f:
            data = json.load(f)
        return Config(data)
    except (json.JSONDecodeError, IOError):
        return Config()


def save_config(server_url: str, access_token: str, expires_at: float = None) -> None:
    """Save config to file."""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    data = {
        "server_url": server_url,
        "access_token": access_token,
        "expires_at": expires_at,
    }

    with open(CONFIG_FILE, "w") as f:
        json.dump(data, f, indent=2)

    # Set restrictive permissions (owner read/write only)
    os.chmod(CONFIG_FILE, 0o600)


def clear_config() -> None:
    """Remove config file."""
    if CONFIG_FILE.exists():
        CONFIG_FILE.unlink()
