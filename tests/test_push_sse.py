"""Tests for the push-SSE transport (GET/POST /mcp) and its connection registry."""

import asyncio
import json

import pytest

from oauth.introspection import VerifiedIdentity
from oauth.stores import ConnectionRegistry
from sse import event_stream

from conftest import DUO_ENV, auth_header

ALICE = VerifiedIdentity(username="alice", display_name="Alice Example", email="alice@example.com")
BOB = VerifiedIdentity(username="bob", display_name="Bob", email="bob@example.com")

CALL = {
    "jsonrpc": "2.0",
    "id": 11,
    "method": "tools/call",
    "params": {"name": "postMessage", "arguments": {"channel": "C123", "text": "hi"}},
}


@pytest.fixture
def client(make_client):
    return make_client(MCP_TRANSPORT="http-sse", **DUO_ENV)


def _open(client, identity=ALICE):
    return client.app.state.connections.open(identity)


def _pushed(connection) -> dict:
    item = connection.queue.get_nowait()
    assert item["event"] == "message"
    return item["data"]


def test_tool_catalog_uses_authenticated_shape(client):
    connection = _open(client)

    client.post(
        "/mcp",
        json={"jsonrpc": "2.0", "id": 1, "method": "tools/list"},
        headers={**auth_header(), "Mcp-Connection-Id": connection.connection_id},
    )

    tools = _pushed(connection)["result"]["tools"]
    assert [t["name"] for t in tools] == ["postMessage"]


def test_reply_pushed_to_named_connection(client, upstream):
    first = _open(client)
    second = _open(client)

    response = client.post(
        "/mcp",
        json=CALL,
        headers=auth_header(),
        params={"connection_id": second.connection_id},
    )

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert first.queue.empty()
    reply = _pushed(second)
    assert reply["id"] == 11
    assert "Alice Example" in reply["result"]["content"][0]["text"]
    assert upstream.slack_payloads() == [{"channel": "C123", "text": "*[Alice Example]* hi"}]


def test_other_users_connection_not_found(client):
    bobs = _open(client, BOB)

    response = client.post(
        "/mcp",
        json=CALL,
        headers={**auth_header(), "Mcp-Connection-Id": bobs.connection_id},
    )

    assert response.status_code == 404
    assert bobs.queue.empty()


def test_missing_connection_id(client):
    _open(client)

    response = client.post("/mcp", json=CALL, headers=auth_header())

    assert response.status_code == 404


def test_unknown_method_pushes_error(client):
    connection = _open(client)

    response = client.post(
        "/mcp",
        json={"jsonrpc": "2.0", "id": 4, "method": "resources/list"},
        headers={**auth_header(), "Mcp-Connection-Id": connection.connection_id},
    )

    assert response.status_code == 400
    assert _pushed(connection)["error"]["code"] == -32601


def test_notification_not_pushed(client):
    connection = _open(client)

    response = client.post(
        "/mcp",
        json={"jsonrpc": "2.0", "method": "notifications/initialized"},
        headers={**auth_header(), "Mcp-Connection-Id": connection.connection_id},
    )

    assert response.status_code == 200
    assert connection.queue.empty()


def test_malformed_json(client):
    response = client.post(
        "/mcp",
        content=b"not json",
        headers={**auth_header(), "Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == -32700
    assert response.json()["id"] is None


def test_stream_requires_token(client):
    response = client.get("/mcp")

    assert response.status_code == 401


def test_post_requires_token(client):
    assert client.post("/mcp", json=CALL).status_code == 401


def test_transport_forces_duo(make_client):
    client = make_client(MCP_TRANSPORT="http-sse", **{**DUO_ENV, "DUO_ENABLED": "false"})

    assert client.get("/health").json()["duo_enabled"] is True


# ============== Stream generator and registry ==============

def test_event_stream_yields_endpoint_then_messages():
    async def run():
        registry = ConnectionRegistry()
        connection = registry.open(ALICE)
        await connection.send("message", {"jsonrpc": "2.0", "id": 1, "result": {}})
        connection.queue.put_nowait(None)

        events = [event async for event in event_stream(connection, registry)]
        return registry, connection, events

    registry, connection, events = asyncio.run(run())

    assert events[0]["event"] == "endpoint"
    endpoint = json.loads(events[0]["data"])
    assert endpoint["connectionId"] == connection.connection_id
    assert endpoint["user"] == "Alice Example"
    assert events[1] == {"event": "message", "data": json.dumps({"jsonrpc": "2.0", "id": 1, "result": {}})}
    assert len(events) == 2
    assert len(registry) == 0


def test_registry_ids_are_unique():
    registry = ConnectionRegistry()
    ids = {registry.open(ALICE).connection_id for _ in range(10)}

    assert len(ids) == 10
    assert len(registry) == 10


def test_registry_sweep_drops_old_connections():
    now = [0.0]
    registry = ConnectionRegistry(clock=lambda: now[0])
    old = registry.open(ALICE)
    now[0] = 50 * 60
    recent = registry.open(ALICE)
    now[0] = 61 * 60

    assert registry.sweep() == 1
    assert registry.get(old.connection_id, ALICE) is None
    assert registry.get(recent.connection_id, ALICE) is recent
    assert old.queue.get_nowait() is None


def test_registry_close():
    registry = ConnectionRegistry()
    connection = registry.open(ALICE)

    registry.close(connection.connection_id)
    registry.close(connection.connection_id)

    assert registry.get(connection.connection_id, ALICE) is None
