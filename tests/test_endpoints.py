from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from config import Config
from main import create_app
from oauth.pkce import generate_pkce
from oauth.stores import LOCAL_TOKEN_TTL_SECONDS

from conftest import make_upstream, request_json, token_response

CLIENT_REDIRECT = "http://localhost:9999/cb"


class UpstreamStub:
    """Zendesk token endpoint: replays queued responses, then succeeds."""

    def __init__(self):
        self.queued = []
        self.calls = []

    def __call__(self, request):
        self.calls.append(request_json(request))
        if self.queued:
            return self.queued.pop(0)
        return token_response(access_token="zd-access", scope="read write")


@pytest.fixture
def upstream():
    return UpstreamStub()


@pytest.fixture
def app(config, store, upstream):
    return create_app(config, store=store, upstream=make_upstream(upstream))


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


def query(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


async def start_authorization(client, pkce, **params):
    params.setdefault("code_challenge", pkce.challenge)
    params.setdefault("code_challenge_method", "S256")
    response = await client.get("/oauth/authorize", params=params)
    assert response.status_code == 302, response.text
    return query(response.headers["location"])["state"]


class TestDiscovery:
    async def test_protected_resource(self, client):
        response = await client.get("/.well-known/oauth-protected-resource")
        assert response.status_code == 200
        assert response.json() == {
            "resource": "http://localhost:3030/mcp",
            "authorization_servers": ["http://localhost:3030"],
            "scopes_supported": ["read", "write"],
            "bearer_methods_supported": ["header"],
        }

    async def test_protected_resource_path_form(self, client):
        response = await client.get("/.well-known/oauth-protected-resource/mcp")
        assert response.json()["resource"] == "http://localhost:3030/mcp"

    async def test_authorization_server(self, client):
        data = (await client.get("/.well-known/oauth-authorization-server")).json()
        assert data["issuer"] == "http://localhost:3030"
        assert data["authorization_endpoint"] == "http://localhost:3030/oauth/authorize"
        assert data["token_endpoint"] == "http://localhost:3030/oauth/token"
        assert data["registration_endpoint"] == "http://localhost:3030/oauth/register"
        assert data["code_challenge_methods_supported"] == ["S256"]
        assert data["grant_types_supported"] == ["authorization_code"]
        assert data["response_types_supported"] == ["code"]
        assert data["scopes_supported"] == ["read", "write"]


class TestRegister:
    async def test_register(self, client):
        response = await client.post("/oauth/register", json={"redirect_uris": [CLIENT_REDIRECT]})

        assert response.status_code == 201
        data = response.json()
        assert data["client_id"] == "zd-client"
        assert data["token_endpoint_auth_method"] == "none"
        assert data["redirect_uris"] == [CLIENT_REDIRECT]
        assert data["grant_types"] == ["authorization_code"]
        assert data["response_types"] == ["code"]
        assert data["scope"] == "read write"
        assert isinstance(data["client_id_issued_at"], int)

    @pytest.mark.parametrize("body", [{}, {"redirect_uris": []}, {"redirect_uris": "http://x"}, {"redirect_uris": [1]}])
    async def test_invalid_redirect_uris(self, client, body):
        response = await client.post("/oauth/register", json=body)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_redirect_uri"

    async def test_body_must_be_json(self, client):
        response = await client.post("/oauth/register", content=b"not json", headers={"Content-Type": "application/json"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_client_metadata"

    async def test_unconfigured_client_id(self, store, upstream):
        app = create_app(Config({"ZENDESK_SUBDOMAIN": "acme"}), store=store, upstream=make_upstream(upstream))
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post("/oauth/register", json={"redirect_uris": [CLIENT_REDIRECT]})
        assert response.status_code == 500
        assert response.json()["error"] == "server_error"


class TestAuthorize:
    async def test_redirects_to_zendesk(self, client, store):
        pkce = generate_pkce()
        response = await client.get(
            "/oauth/authorize",
            params={"code_challenge": pkce.challenge, "code_challenge_method": "S256", "state": "client-state"},
        )

        assert response.status_code == 302
        location = urlparse(response.headers["location"])
        assert location.netloc == "acme.zendesk.com"
        assert location.path == "/oauth/authorizations/new"
        params = query(response.headers["location"])
        assert params["code_challenge_method"] == "S256"
        # Upstream gets our own PKCE pair and state, never the caller's
        assert params["code_challenge"] != pkce.challenge
        assert params["state"] != "client-state"
        assert (await store.counts())["pending"] == 1

    async def test_requires_code_challenge(self, client):
        response = await client.get("/oauth/authorize")
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    async def test_rejects_plain_method(self, client):
        response = await client.get(
            "/oauth/authorize", params={"code_challenge": "abc", "code_challenge_method": "plain"}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    async def test_rejects_unsupported_response_type(self, client):
        response = await client.get(
            "/oauth/authorize", params={"response_type": "token", "code_challenge": "abc"}
        )
        assert response.json()["error"] == "unsupported_response_type"

    async def test_rejects_unregistered_redirect_uri(self, client):
        await client.post("/oauth/register", json={"redirect_uris": [CLIENT_REDIRECT]})
        response = await client.get(
            "/oauth/authorize",
            params={"client_id": "zd-client", "redirect_uri": "http://evil.example/cb", "code_challenge": "abc"},
        )
        assert response.status_code == 400

    async def test_misconfigured(self, store):
        app = create_app(Config({"ZENDESK_SUBDOMAIN": "acme"}), store=store)
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get("/oauth/authorize", params={"code_challenge": "abc"})

        assert response.status_code == 500
        data = response.json()
        assert data["error"] == "server_error"
        assert "ZENDESK_OAUTH_CLIENT_ID" in data["message"]
        assert (await store.counts())["pending"] == 0


class TestCallback:
    async def test_redirects_back_to_client(self, client, upstream):
        pkce = generate_pkce()
        state = await start_authorization(client, pkce, redirect_uri=CLIENT_REDIRECT, state="client-xyz")

        response = await client.get("/zendesk/oauth/callback", params={"code": "zd-code", "state": state})

        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith(CLIENT_REDIRECT + "?")
        params = query(location)
        assert params["state"] == "client-xyz"
        assert params["code"]
        assert upstream.calls[0]["code"] == "zd-code"
        assert upstream.calls[0]["grant_type"] == "authorization_code"

    async def test_renders_code_page(self, client):
        pkce = generate_pkce()
        state = await start_authorization(client, pkce)

        response = await client.get("/zendesk/oauth/callback", params={"code": "zd-code", "state": state})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/html")
        assert response.headers["cache-control"] == "no-store, no-cache, must-revalidate, private"
        assert response.headers["pragma"] == "no-cache"
        assert "default-src 'none'" in response.headers["content-security-policy"]
        assert response.headers["referrer-policy"] == "no-referrer"
        assert response.headers["x-content-type-options"] == "nosniff"
        assert response.headers["x-frame-options"] == "DENY"
        assert "Authorization Successful" in response.text

    async def test_state_is_single_use(self, client, upstream):
        pkce = generate_pkce()
        state = await start_authorization(client, pkce)

        first = await client.get("/zendesk/oauth/callback", params={"code": "zd-code", "state": state})
        second = await client.get("/zendesk/oauth/callback", params={"code": "zd-code", "state": state})

        assert first.status_code == 200
        assert second.status_code == 400
        assert second.json()["error"] == "invalid_request"
        assert len(upstream.calls) == 1

    async def test_unknown_state(self, client, upstream):
        response = await client.get("/zendesk/oauth/callback", params={"code": "zd-code", "state": "forged"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"
        assert upstream.calls == []

    async def test_expired_state(self, client, store, clock, upstream):
        state = await start_authorization(client, generate_pkce())
        clock.advance(601)

        response = await client.get("/zendesk/oauth/callback", params={"code": "zd-code", "state": state})

        assert response.status_code == 400
        assert upstream.calls == []

    async def test_upstream_failure_keeps_pending_state(self, client, store, upstream):
        state = await start_authorization(client, generate_pkce())
        upstream.queued.append(httpx.Response(400, json={"error": "invalid_grant"}))

        response = await client.get("/zendesk/oauth/callback", params={"code": "zd-code", "state": state})

        assert response.status_code == 502
        assert response.json()["error"] == "upstream_error"
        assert (await store.counts()) == {"active": 0, "pending": 1, "codes": 0}

    async def test_malformed_upstream_expiry(self, client, upstream):
        state = await start_authorization(client, generate_pkce())
        upstream.queued.append(token_response(expires_in="never"))

        response = await client.get("/zendesk/oauth/callback", params={"code": "zd-code", "state": state})

        assert response.status_code == 502
        assert response.json()["error"] == "upstream_error"

    async def test_upstream_error_parameter(self, client):
        response = await client.get(
            "/zendesk/oauth/callback", params={"error": "access_denied", "error_description": "User denied"}
        )
        assert response.status_code == 400
        assert response.json() == {"error": "access_denied", "message": "User denied"}

    async def test_missing_parameters(self, client):
        response = await client.get("/zendesk/oauth/callback", params={"state": "abc"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    async def test_custom_callback_path(self, store, upstream):
        config = Config({
            "ZENDESK_SUBDOMAIN": "acme",
            "ZENDESK_OAUTH_CLIENT_ID": "zd-client",
            "ZENDESK_OAUTH_CLIENT_SECRET": "zd-secret",
            "ZENDESK_OAUTH_REDIRECT_URI": "https://mcp.example.com/auth/zendesk",
        })
        app = create_app(config, store=store, upstream=make_upstream(upstream))
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get("/auth/zendesk", params={"state": "abc"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"


async def obtain_code(client, pkce, **params):
    state = await start_authorization(client, pkce, redirect_uri=CLIENT_REDIRECT, **params)
    response = await client.get("/zendesk/oauth/callback", params={"code": "zd-code", "state": state})
    return query(response.headers["location"])["code"]


class TestToken:
    async def test_form_exchange(self, client, store):
        pkce = generate_pkce()
        code = await obtain_code(client, pkce)

        response = await client.post(
            "/oauth/token",
            data={
                "grant_type": "authorization_code",
                "code": code,
                "code_verifier": pkce.verifier,
                "redirect_uri": CLIENT_REDIRECT,
            },
        )

        assert response.status_code == 200
        assert response.headers["cache-control"] == "no-store"
        data = response.json()
        assert data["token_type"] == "Bearer"
        assert data["expires_in"] == LOCAL_TOKEN_TTL_SECONDS
        assert data["scope"] == "read write"
        session = await store.get_session(data["access_token"])
        assert session.upstream_access_token == "zd-access"
        # The caller's token is not the upstream one
        assert data["access_token"] != "zd-access"

    async def test_json_exchange(self, client):
        pkce = generate_pkce()
        code = await obtain_code(client, pkce)

        response = await client.post(
            "/oauth/token",
            json={"grant_type": "authorization_code", "code": code, "code_verifier": pkce.verifier},
        )
        assert response.status_code == 200

    async def test_code_reuse(self, client):
        pkce = generate_pkce()
        code = await obtain_code(client, pkce)
        body = {"grant_type": "authorization_code", "code": code, "code_verifier": pkce.verifier}

        first = await client.post("/oauth/token", data=body)
        second = await client.post("/oauth/token", data=body)

        assert first.status_code == 200
        assert second.status_code == 400
        assert second.json()["error"] == "invalid_grant"
        assert second.json()["error_description"]

    async def test_wrong_verifier(self, client):
        code = await obtain_code(client, generate_pkce())
        response = await client.post(
            "/oauth/token",
            data={"grant_type": "authorization_code", "code": code, "code_verifier": generate_pkce().verifier},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"

    async def test_redirect_uri_mismatch(self, client):
        pkce = generate_pkce()
        code = await obtain_code(client, pkce)
        response = await client.post(
            "/oauth/token",
            data={
                "grant_type": "authorization_code",
                "code": code,
                "code_verifier": pkce.verifier,
                "redirect_uri": "http://localhost:1111/other",
            },
        )
        assert response.json()["error"] == "invalid_grant"

    @pytest.mark.parametrize(
        "body,error",
        [
            ({}, "invalid_request"),
            ({"grant_type": "refresh_token", "refresh_token": "x"}, "unsupported_grant_type"),
            ({"grant_type": "authorization_code", "code_verifier": "v"}, "invalid_request"),
            ({"grant_type": "authorization_code", "code": "c"}, "invalid_request"),
            ({"grant_type": "authorization_code", "code": "unknown", "code_verifier": "v"}, "invalid_grant"),
        ],
    )
    async def test_errors(self, client, body, error):
        response = await client.post("/oauth/token", data=body)
        assert response.status_code == 400
        assert response.json()["error"] == error

    @pytest.mark.parametrize(
        "field,value",
        [("code_verifier", 123), ("code", ["a", "b"]), ("grant_type", {"x": 1}), ("redirect_uri", 7)],
    )
    async def test_non_string_json_fields(self, client, field, value):
        pkce = generate_pkce()
        code = await obtain_code(client, pkce)
        body = {"grant_type": "authorization_code", "code": code, "code_verifier": pkce.verifier}

        response = await client.post("/oauth/token", json={**body, field: value})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"
        # Rejected before the store, so the code is still redeemable
        assert (await client.post("/oauth/token", json=body)).status_code == 200


class TestRevokeAndHealth:
    async def test_revoke(self, client, store):
        pkce = generate_pkce()
        code = await obtain_code(client, pkce)
        token = (
            await client.post(
                "/oauth/token",
                data={"grant_type": "authorization_code", "code": code, "code_verifier": pkce.verifier},
            )
        ).json()["access_token"]
        assert (await client.get("/health")).json()["sessions"] == 1

        response = await client.post("/oauth/revoke", data={"token": token})

        assert response.status_code == 200
        assert await store.get_session(token) is None
        assert (await client.get("/health")).json()["sessions"] == 0

    async def test_revoke_unknown_token(self, client):
        response = await client.post("/oauth/revoke", data={"token": "unknown"})
        assert response.status_code == 200

    async def test_revoke_non_string_token(self, client):
        response = await client.post("/oauth/revoke", json={"token": ["a"]})
        assert response.status_code == 200

    async def test_health(self, client):
        data = (await client.get("/health")).json()
        assert data["status"] == "healthy"
        assert data["transport"] == "streamable-http"
        assert data["sessions"] == 0
        assert data["clients"] == 0


class TestProtectedEndpoint:
    async def test_requires_bearer_token(self, client):
        response = await client.post("/mcp/", json={"jsonrpc": "2.0", "id": 1, "method": "tools/list"})

        assert response.status_code == 401
        assert 'resource_metadata="http://localhost:3030/.well-known/oauth-protected-resource"' in (
            response.headers["www-authenticate"]
        )
        assert response.json()["error"] == "unauthorized"
