import json
import time

import httpx
import pytest

from config import Config
from oauth.pkce import compute_challenge
from oauth.stores import InMemorySessionStore
from oauth.upstream import UpstreamExchangeClient, UpstreamTokens

CLIENT_VERIFIER = "client-verifier-" + "x" * 40
REDIRECT_URI = "http://localhost:3030/zendesk/oauth/callback"


class FakeClock:
    """Settable clock for TTL tests."""

    def __init__(self, now: float = None):
        self.now = time.time() if now is None else now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordedSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def token_response(access_token="zd-access", refresh_token="zd-refresh", expires_in=7200, status=200, **extra):
    body = {
        "access_token": access_token,
        "token_type": "bearer",
        "refresh_token": refresh_token,
        "expires_in": expires_in,
        "scope": "read write",
    }
    body.update(extra)
    return httpx.Response(status, json=body)


def make_upstream(handler, **kwargs) -> UpstreamExchangeClient:
    settings = {
        "client_id": "zd-client",
        "client_secret": "zd-secret",
        "subdomain": "acme",
        "redirect_uri": REDIRECT_URI,
    }
    settings.update(kwargs)
    return UpstreamExchangeClient(transport=httpx.MockTransport(handler), **settings)


def request_json(request: httpx.Request) -> dict:
    return json.loads(request.content)


async def issue_code(store, tokens: UpstreamTokens = None, verifier: str = CLIENT_VERIFIER, **pending_kwargs):
    """Run a pending authorization through the callback half and return the local code."""
    tokens = tokens or UpstreamTokens("zd-access", "zd-refresh", 7200, "read write")
    pending = await store.create_pending(
        pending_kwargs.pop("state", "state-1"),
        "upstream-verifier",
        client_code_challenge=compute_challenge(verifier),
        **pending_kwargs,
    )
    return await store.issue_authorization_code(pending, tokens)


async def create_session(store, tokens: UpstreamTokens = None, **pending_kwargs):
    code = await issue_code(store, tokens, **pending_kwargs)
    return await store.exchange_authorization_code(code, CLIENT_VERIFIER)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemorySessionStore(clock=clock)


@pytest.fixture
def config():
    return Config({
        "ZENDESK_SUBDOMAIN": "acme",
        "ZENDESK_OAUTH_CLIENT_ID": "zd-client",
        "ZENDESK_OAUTH_CLIENT_SECRET": "zd-secret",
        "SERVER_BASE_URL": "http://localhost:3030",
    })
