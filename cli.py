"""Client CLI for slack-mcp-server.

Talks to a running server over POST /mcp or a WebSocket: log in through
Duo in the browser, list tools, post a message, or chat interactively.
"""
import argparse
import itertools
import json
import os
import subprocess
import sys
import time
import webbrowser
from typing import Any, Optional

import requests
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException
from websockets.sync.client import connect as ws_connect

from config import CONFIG_FILE, clear_config, load_config, save_config

VERSION = "1.0.0"
DEFAULT_SERVER_URL = os.getenv("SLACK_MCP_SERVER_URL", "http://localhost:8080")
LOGIN_TIMEOUT_SECONDS = 300
POLL_INTERVAL_SECONDS = 2
CLIENT_TRANSPORTS = ("http", "websocket")


class MCPClientError(Exception):
    """The server answered with a JSON-RPC error or an unexpected status."""


# ============== Browser helpers ==============

def is_wsl() -> bool:
    """Check if running inside WSL."""
    if os.path.exists("/proc/version"):
        try:
            with open("/proc/version", "r") as f:
                version = f.read().lower()
                if "microsoft" in version or "wsl" in version:
                    return True
        except OSError:
            pass
    return bool(os.environ.get("WSL_DISTRO_NAME"))


def open_browser(url: str) -> None:
    """Open URL in browser, handling WSL gracefully."""
    if is_wsl():
        for command in (["wslview", url], ["cmd.exe", "/c", "start", url]):
            try:
                result = subprocess.run(command, capture_output=True, timeout=5)
                if result.returncode == 0:
                    return
            except (FileNotFoundError, subprocess.TimeoutExpired):
                continue
    webbrowser.open(url)


# ============== MCP clients ==============

class MCPClient:
    """JSON-RPC calls shared by the HTTP and WebSocket clients."""

    def __init__(self, server_url: str):
        self.server_url = server_url.rstrip("/")
        self._ids = itertools.count(1)

    def _exchange(self, payload: dict) -> dict:
        """Send one request and return the matching JSON-RPC response."""
        raise NotImplementedError

    def notify(self, method: str) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def request(self, method: str, params: dict = None) -> dict:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method}
        if params is not None:
            payload["params"] = params

        data = self._exchange(payload)
        if "error" in data:
            raise MCPClientError(f"{data['error'].get('message')} (code {data['error'].get('code')})")
        return data.get("result", {})

    def initialize(self) -> dict:
        result = self.request("initialize", {
            "protocolVersion": "2024-11-05",
            "capabilities": {},
            "clientInfo": {"name": "slack-mcp-client", "version": VERSION},
        })
        self.notify("notifications/initialized")
        return result

    def list_tools(self) -> list[dict]:
        return self.request("tools/list").get("tools", [])

    def post_message(self, channel: str, text: str) -> str:
        """Call the server's Slack tool and return its text output."""
        tools = self.list_tools()
        if not tools:
            raise MCPClientError("Server exposes no tools")

        tool = tools[0]
        channel_field = tool["inputSchema"]["required"][0]
        result = self.request("tools/call", {
            "name": tool["name"],
            "arguments": {channel_field: channel, "text": text},
        })
        text_out = "\n".join(c.get("text", "") for c in result.get("content", []))
        if result.get("isError"):
            raise MCPClientError(text_out)
        return text_out


class MCPHttpClient(MCPClient):
    """One POST /mcp per message (http transport)."""

    def __init__(self, server_url: str, token: Optional[str] = None, session: requests.Session = None):
        super().__init__(server_url)
        self.session = session or requests.Session()
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def _post(self, payload: dict) -> requests.Response:
        return self.session.post(f"{self.server_url}/mcp", json=payload, timeout=30)

    def _exchange(self, payload: dict) -> dict:
        response = self._post(payload)
        if response.status_code == 401:
            raise MCPClientError("Not authorized. Run 'slack-mcp-client login' first.")

        try:
            return response.json()
        except ValueError:
            raise MCPClientError(f"Unexpected response ({response.status_code}): {response.text}")

    def notify(self, method: str) -> None:
        self._post({"jsonrpc": "2.0", "method": method})


def websocket_url(server_url: str) -> str:
    """http(s)://host/path -> ws(s)://host/path; ws URLs pass through."""
    if server_url.startswith("https://"):
        return "wss://" + server_url[len("https://"):]
    if server_url.startswith("http://"):
        return "ws://" + server_url[len("http://"):]
    return server_url


class MCPWebSocketClient(MCPClient):
    """One persistent socket, one text frame per message (websocket transport)."""

    def __init__(self, server_url: str, token: Optional[str] = None, connection=None):
        super().__init__(server_url)
        if connection is None:
            headers = {"Authorization": f"Bearer {token}"} if token else None
            try:
                connection = ws_connect(websocket_url(self.server_url), additional_headers=headers, open_timeout=30)
            except InvalidStatus as e:
                raise MCPClientError(f"WebSocket handshake rejected: {e}")
        self.connection = connection

    def _exchange(self, payload: dict) -> dict:
        self.connection.send(json.dumps(payload))
        # Frames without our id (stray replies, parse errors) are skipped
        while True:
            try:
                frame = self.connection.recv(timeout=30)
            except ConnectionClosed as e:
                raise MCPClientError(f"Connection closed by server ({e})")
            except TimeoutError:
                raise MCPClientError(f"No reply to {payload['method']}")
            try:
                data = json.loads(frame)
            except ValueError:
                continue
            if isinstance(data, dict) and data.get("id") == payload["id"]:
                return data

    def notify(self, method: str) -> None:
        self.connection.send(json.dumps({"jsonrpc": "2.0", "method": method}))

    def close(self) -> None:
        self.connection.close()


def open_client(server_url: str, token: Optional[str] = None, transport: str = "http") -> MCPClient:
    if transport == "websocket":
        return MCPWebSocketClient(server_url, token=token)
    return MCPHttpClient(server_url, token=token)


# ============== Login flow ==============

def run_login_flow(server_url: str, timeout: float = LOGIN_TIMEOUT_SECONDS) -> Optional[dict[str, Any]]:
    """Start a Duo session, open the browser and wait for authentication."""
    server_url = server_url.rstrip("/")
    response = requests.get(f"{server_url}/auth/duo-initiate", timeout=30)
    if response.status_code != 200:
        print(f"[ERROR] Could not start login: {response.text}")
        return None

    data = response.json()
    state = data["state"]

    print("\nOpening browser for Duo login...")
    print(f"If it does not open, visit:\n  {data['authUrl']}\n")
    open_browser(data["authUrl"])

    deadline = time.time() + timeout
    while time.time() < deadline:
        status = requests.get(f"{server_url}/auth/status", params={"state": state}, timeout=30).json()
        if status.get("authenticated"):
            return status
        time.sleep(POLL_INTERVAL_SECONDS)

    print("[ERROR] Timed out waiting for login.")
    return None


# ============== Commands ==============

def _client(args) -> MCPClient:
    config = load_config()
    server_url = args.server or config.server_url or DEFAULT_SERVER_URL
    token = config.access_token if config.server_url == server_url else None
    return open_client(server_url, token=token, transport=args.transport)


def cmd_login(args):
    """Log in through Duo (browser) and save the token."""
    server_url = args.server or DEFAULT_SERVER_URL
    status = run_login_flow(server_url)
    if not status:
        sys.exit(1)

    save_config(server_url, status["token"], status.get("expiresAt"))
    print(f"Logged in. Token saved to {CONFIG_FILE}")


def cmd_logout(args):
    """Clear the saved token."""
    if not load_config().is_valid():
        print("Not logged in.")
        return
    clear_config()
    print(f"Config removed: {CONFIG_FILE}")


def cmd_tools(args):
    """List the server's tools."""
    with _client(args) as client:
        info = client.initialize()
        print(f"Connected to {info.get('serverInfo', {}).get('name')} (protocol {info.get('protocolVersion')})")
        print("\n=== Available tools ===")
        for tool in client.list_tools():
            print(f"- {tool['name']}: {tool.get('description', '')}")


def cmd_post(args):
    """Post one message."""
    if not args.channel or not args.text:
        print("[ERROR] --channel and --text are required")
        sys.exit(2)
    with _client(args) as client:
        client.initialize()
        print(client.post_message(args.channel, args.text))


def cmd_chat(args):
    """Interactive loop: every line is posted to the channel."""
    if not args.channel:
        print("[ERROR] --channel is required")
        sys.exit(2)

    with _client(args) as client:
        client.initialize()

        print("=" * 40)
        print("Interactive mode")
        print(f"Channel: {args.channel}")
        print("=" * 40)
        print("Type a message, or 'exit' to quit.\n")

        while True:
            try:
                line = input("message> ")
            except (EOFError, KeyboardInterrupt):
                print()
                break

            if line.strip().lower() == "exit":
                break
            if not line.strip():
                continue

            try:
                print(client.post_message(args.channel, line), "\n")
            except (MCPClientError, requests.RequestException) as e:
                print(f"[ERROR] {e}\n")


def cmd_version(args):
    """Show version information."""
    print(f"slack-mcp-client v{VERSION}")


COMMANDS = {
    "login": cmd_login,
    "logout": cmd_logout,
    "tools": cmd_tools,
    "post": cmd_post,
    "chat": cmd_chat,
    "version": cmd_version,
}


# ============== Main Entry Point ==============

def main(argv: list[str] = None):
    """Main entry point for CLI."""
    parser = argparse.ArgumentParser(
        prog="slack-mcp-client",
        description="Client for the Slack MCP server (http or websocket transport)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  slack-mcp-client login --server https://mcp.example.com
  slack-mcp-client tools
  slack-mcp-client post --channel C08286T5HPV --text "hello"
  slack-mcp-client chat --channel C08286T5HPV
  slack-mcp-client tools --transport websocket --server http://localhost:8080
"""
    )
    parser.add_argument("command", choices=list(COMMANDS), help="Command to run")
    parser.add_argument("--server", help=f"Server URL (default: saved login or {DEFAULT_SERVER_URL})")
    parser.add_argument("--channel", help="Slack channel ID")
    parser.add_argument("--text", help="Message text")
    parser.add_argument(
        "--transport",
        choices=CLIENT_TRANSPORTS,
        default="http",
        help="How to reach the server: POST /mcp (http) or a socket on / (websocket)",
    )

    args = parser.parse_args(argv)

    try:
        COMMANDS[args.command](args)
    except MCPClientError as e:
        print(f"[ERROR] {e}")
        sys.exit(1)
    except requests.RequestException as e:
        print(f"[ERROR] Could not reach server: {e}")
        sys.exit(1)
    except (OSError, WebSocketException) as e:
        print(f"[ERROR] Could not reach server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
