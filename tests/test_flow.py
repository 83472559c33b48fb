"""Tests for the PKCE authorization-code flow and the session store."""

import asyncio
import base64
import hashlib
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from config import Settings
from errors import OAuthNotConfigured, SessionNotFound, StateAlreadyUsed, TokenExchangeFailed
from oauth.flow import AuthorizationFlow, code_challenge_for, generate_code_verifier
from oauth.stores import AuthSessionStore

from conftest import BASE_ENV, DUO_ENV, DUO_HOST


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return AuthSessionStore(clock=clock)


def _flow(upstream, store, **env) -> AuthorizationFlow:
    settings = Settings({**BASE_ENV, **DUO_ENV, **env})
    return AuthorizationFlow(settings, store, upstream.client())


def _query(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


def test_code_challenge_matches_rfc7636_example():
    verifier = "dBjftJeZ4CVP-mJ92K9-s5iE2dOd4xk86yHD6KUqUpQ"
    assert code_challenge_for(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_code_verifier_is_unpadded_base64url():
    verifier = generate_code_verifier()
    assert len(verifier) == 43
    assert "=" not in verifier
    assert len(base64.urlsafe_b64decode(verifier + "=")) == 32


def test_initiate_builds_authorize_url(upstream, store):
    result = _flow(upstream, store).initiate()

    url = urlparse(result["authUrl"])
    assert url.scheme == "https"
    assert url.netloc == DUO_HOST
    assert url.path == "/oauth/v1/authorize"

    params = _query(result["authUrl"])
    assert params["response_type"] == "code"
    assert params["client_id"] == "client-id"
    assert params["redirect_uri"] == "https://mcp.test/auth/callback"
    assert params["state"] == result["state"]
    assert params["code_challenge_method"] == "S256"
    assert params["scope"] == "openid"
    assert len(result["state"]) == 64


def test_challenge_derived_from_stored_verifier(upstream, store):
    result = _flow(upstream, store).initiate()

    session = store.get(result["state"])
    expected = base64.urlsafe_b64encode(
        hashlib.sha256(session.code_verifier.encode()).digest()
    ).rstrip(b"=").decode()
    assert _query(result["authUrl"])["code_challenge"] == expected
    assert session.authenticated is False


def test_initiate_states_are_unique(upstream, store):
    flow = _flow(upstream, store)
    states = {flow.initiate()["state"] for _ in range(20)}
    assert len(states) == 20


def test_initiate_requires_hostname(upstream, store):
    with pytest.raises(OAuthNotConfigured):
        _flow(upstream, store, DUO_API_HOSTNAME="").initiate()


def test_initiate_sweeps_old_sessions(upstream, store, clock):
    flow = _flow(upstream, store)
    old_state = flow.initiate()["state"]

    clock.advance(11 * 60)
    flow.initiate()

    assert old_state not in store
    assert len(store) == 1


def test_sweep_keeps_recent_sessions(store, clock):
    store.create("old", "v1")
    clock.advance(9 * 60)
    store.create("recent", "v2")
    clock.advance(2 * 60)

    removed = store.sweep()

    assert removed == 1
    assert "old" not in store
    assert "recent" in store


def test_complete_callback_exchanges_code(upstream, store, clock):
    flow = _flow(upstream, store)
    state = flow.initiate()["state"]
    verifier = store.get(state).code_verifier

    session = asyncio.run(flow.complete_callback("auth-code", state))

    assert session.authenticated
    assert session.access_token == "duo-access-token"
    assert session.refresh_token == "duo-refresh-token"
    assert session.expires_at == clock.now + 3600

    request = upstream.requests_to(f"https://{DUO_HOST}/oauth/v1/token")[0]
    body = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
    assert body == {
        "grant_type": "authorization_code",
        "code": "auth-code",
        "redirect_uri": "https://mcp.test/auth/callback",
        "code_verifier": verifier,
    }
    assert request.headers["Authorization"].startswith("Basic ")


def test_complete_callback_unknown_state(upstream, store):
    flow = _flow(upstream, store)

    with pytest.raises(SessionNotFound):
        asyncio.run(flow.complete_callback("auth-code", "never-issued"))
    assert upstream.requests == []


def test_complete_callback_expired_state(upstream, store, clock):
    flow = _flow(upstream, store)
    state = flow.initiate()["state"]
    clock.advance(10 * 60 + 1)

    with pytest.raises(SessionNotFound):
        asyncio.run(flow.complete_callback("auth-code", state))


def test_token_exchange_failure_carries_upstream_details(upstream, store):
    upstream.token_status = 400
    flow = _flow(upstream, store)
    state = flow.initiate()["state"]

    with pytest.raises(TokenExchangeFailed) as excinfo:
        asyncio.run(flow.complete_callback("bad-code", state))

    assert excinfo.value.status_code == 400
    assert excinfo.value.body == "invalid_grant"
    assert store.get(state).authenticated is False


def test_state_reuse_rejected_by_default(upstream, store):
    flow = _flow(upstream, store)
    state = flow.initiate()["state"]
    asyncio.run(flow.complete_callback("auth-code", state))

    with pytest.raises(StateAlreadyUsed):
        asyncio.run(flow.complete_callback("auth-code", state))


def test_state_reuse_allowed_when_disabled(upstream, store):
    flow = _flow(upstream, store, OAUTH_REJECT_STATE_REUSE="false")
    state = flow.initiate()["state"]
    asyncio.run(flow.complete_callback("auth-code", state))

    session = asyncio.run(flow.complete_callback("auth-code-2", state))

    assert session.authenticated
    assert len(upstream.requests_to(f"https://{DUO_HOST}/oauth/v1/token")) == 2


def test_concurrent_callbacks_on_one_state(upstream, store):
    async def run():
        entered = asyncio.Event()
        release = asyncio.Event()

        async def slow_token_endpoint(request):
            entered.set()
            await release.wait()
            return upstream.handler(request)

        settings = Settings({**BASE_ENV, **DUO_ENV})
        client = httpx.AsyncClient(transport=httpx.MockTransport(slow_token_endpoint))
        flow = AuthorizationFlow(settings, store, client)
        state = flow.initiate()["state"]

        first = asyncio.create_task(flow.complete_callback("auth-code", state))
        await entered.wait()
        with pytest.raises(StateAlreadyUsed):
            await flow.complete_callback("auth-code", state)

        release.set()
        return await first

    session = asyncio.run(run())

    assert session.authenticated
    assert session.exchanging is False
    assert len(upstream.requests_to(f"https://{DUO_HOST}/oauth/v1/token")) == 1


def test_failed_exchange_releases_state(upstream, store):
    flow = _flow(upstream, store)
    state = flow.initiate()["state"]
    upstream.token_status = 400

    with pytest.raises(TokenExchangeFailed):
        asyncio.run(flow.complete_callback("bad-code", state))
    assert store.get(state).exchanging is False

    upstream.token_status = 200
    assert asyncio.run(flow.complete_callback("auth-code", state)).authenticated


def test_status_lifecycle(upstream, store):
    flow = _flow(upstream, store)
    state = flow.initiate()["state"]

    pending = flow.status(state)
    assert pending["authenticated"] is False
    assert "token" not in pending

    asyncio.run(flow.complete_callback("auth-code", state))

    done = flow.status(state)
    assert done["authenticated"] is True
    assert done["token"] == "duo-access-token"
    assert done["expiresAt"] is not None


def test_status_unknown_state(upstream, store):
    assert _flow(upstream, store).status("missing") == {"authenticated": False, "error": "Session not found"}
