"""Slack MCP Server.

Exposes a single Slack "post message" tool over the Model Context Protocol.
The transport is chosen with MCP_TRANSPORT:
- websocket: JSON-RPC text frames on WS / (and /ws)
- http:      one request per POST /mcp
- sse:       MCP SDK SSE transport on GET /sse + POST /message
- http-sse:  push stream on GET /mcp, requests on POST /mcp (Duo required)

With DUO_ENABLED=true every MCP endpoint requires a Duo bearer token, and the
/auth/* routes run the PKCE authorization-code flow for clients.
"""
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import Settings, load_settings
from dispatcher import SERVER_VERSION, MCPDispatcher
from errors import ConfigMissing
from logging_config import create_supabase_client, flush_logs, setup_logging
from oauth.flow import AuthorizationFlow
from oauth.introspection import TokenIntrospector
from oauth.stores import AuthSessionStore, ConnectionRegistry
from slack_client import SlackClient
from tools import SlackPostTool

logger = logging.getLogger(__name__)

SERVER_NAMES = {
    "websocket": "slack-mcp",
    "http": "slack-mcp-http",
    "sse": "slack-mcp-sse",
    "http-sse": "slack-mcp-server-duo",
}


def create_app(settings: Settings, http_client: Optional[httpx.AsyncClient] = None) -> FastAPI:
    """Build the FastAPI app for the configured transport.

    ``http_client`` is used for every outbound call (Slack, introspection,
    token exchange). When omitted, one is created at startup with the
    configured timeout and closed at shutdown.
    """
    settings.validate()

    transport = settings.transport
    owns_client = http_client is None
    if owns_client:
        http_client = httpx.AsyncClient(timeout=settings.http_timeout)

    session_store = AuthSessionStore()
    connections = ConnectionRegistry()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        session_store.start()
        if transport == "http-sse":
            connections.start()
        logger.info(f"[STARTUP] {app.title} ready (transport: {transport}, duo: {settings.duo_enabled})")
        try:
            yield
        finally:
            await session_store.shutdown()
            await connections.shutdown()
            if owns_client:
                await http_client.aclose()
            logger.info("[SHUTDOWN] Server stopped")
            flush_logs()

    app = FastAPI(
        title="Slack MCP Server",
        description="MCP server exposing Slack chat.postMessage",
        version=SERVER_VERSION,
        lifespan=lifespan,
    )

    # CORS for browser-based MCP clients
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    slack = SlackClient(settings.slack_bot_token, http_client, api_url=settings.slack_api_url)
    tool = SlackPostTool(slack, authenticated=transport == "http-sse")

    app.state.settings = settings
    app.state.dispatcher = MCPDispatcher(
        tool,
        server_name=SERVER_NAMES[transport],
        error_mode=settings.tool_error_mode,
    )
    app.state.connections = connections
    app.state.session_store = session_store
    app.state.introspector = None
    app.state.authorization_flow = AuthorizationFlow(settings, session_store, http_client)

    if settings.duo_enabled:
        app.state.introspector = TokenIntrospector(
            settings.duo_introspection_endpoint,
            settings.duo_client_id,
            settings.duo_client_secret,
            http_client,
        )
        from oauth.endpoints import router as oauth_router
        app.include_router(oauth_router)

    if transport == "websocket":
        from ws_endpoints import router as transport_router
    elif transport == "http":
        from http_endpoints import router as transport_router
    elif transport == "sse":
        from sse import sdk_router as transport_router
    else:
        from sse import push_router as transport_router
    app.include_router(transport_router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "ok",
            "service": SERVER_NAMES[transport],
            "transport": transport,
            "duo_enabled": settings.duo_enabled,
            "oauth_configured": settings.oauth_configured,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/")
    async def root():
        """Root endpoint with server info."""
        endpoints = {
            "websocket": {"websocket": "/"},
            "http": {"mcp": "POST /mcp"},
            "sse": {"sse": "GET /sse", "message": "POST /message"},
            "http-sse": {"stream": "GET /mcp", "message": "POST /mcp"},
        }[transport]
        response = {
            "name": SERVER_NAMES[transport],
            "version": SERVER_VERSION,
            "transport": transport,
            "endpoints": endpoints,
            "tools": [tool.name],
            "duo_enabled": settings.duo_enabled,
        }
        if settings.duo_enabled:
            response["oauth"] = {
                "initiate": "/auth/duo-initiate",
                "callback": "/auth/callback",
                "status": "/auth/status",
            }
        return response

    return app


def main():
    """Run the server with uvicorn."""
    import uvicorn

    settings = load_settings()
    setup_logging(
        level=settings.log_level,
        server_name=SERVER_NAMES.get(settings.transport),
        transport=settings.transport,
        supabase_client=create_supabase_client(settings.supabase_url, settings.supabase_anon_key),
    )

    try:
        app = create_app(settings)
    except ConfigMissing as e:
        logger.error(f"[STARTUP] {e}")
        sys.exit(1)

    logger.info(f"[STARTUP] Listening on {settings.host}:{settings.port}")
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
