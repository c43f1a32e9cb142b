"""OAuth 2.1 endpoints for the Zendesk MCP server.

This module contains all OAuth-related endpoints:
- Discovery metadata (/.well-known/*)
- Client registration (/oauth/register)
- Authorization flow (/oauth/authorize, upstream callback)
- Token endpoint (/oauth/token) and revocation (/oauth/revoke)

The server is an OAuth client of Zendesk and an authorization server for its
own MCP callers at the same time. Callers never see Zendesk tokens; they get a
locally issued access token bound to a session holding the upstream pair.
"""

import html
import logging
import time
from urllib.parse import urlencode

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from config import Config
from oauth.context import DownstreamClientPool
from oauth.errors import AuthExchangeError, ConfigurationError, CsrfError, GrantError
from oauth.pkce import CHALLENGE_METHOD, generate_pkce, generate_state
from oauth.refresh import TokenRefresher
from oauth.stores import AUTHORIZATION_CODE_TTL_SECONDS, SessionStore
from oauth.templates import AUTHORIZATION_CODE_PAGE
from oauth.upstream import DEFAULT_SCOPES, UpstreamExchangeClient

logger = logging.getLogger(__name__)

# Router for OAuth endpoints
router = APIRouter(tags=["oauth"])

# These will be set by init_oauth_routes()
_config: Config = None
_store: SessionStore = None
_upstream: UpstreamExchangeClient = None
_pool: DownstreamClientPool = None
_refresher: TokenRefresher = None

CODE_PAGE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, private",
    "Pragma": "no-cache",
    "Expires": "0",
    "Content-Security-Policy": "default-src 'none'; style-src 'unsafe-inline'; frame-ancestors 'none'",
    "Referrer-Policy": "no-referrer",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
}

TOKEN_RESPONSE_HEADERS = {
    "Cache-Control": "no-store",
    "Pragma": "no-cache",
}


def init_oauth_routes(
    config: Config,
    store: SessionStore,
    upstream: UpstreamExchangeClient,
    pool: DownstreamClientPool,
    refresher: TokenRefresher,
):
    """Initialize OAuth routes with their collaborators.

    Must be called before including the router in the app.
    """
    global _config, _store, _upstream, _pool, _refresher
    _config = config
    _store = store
    _upstream = upstream
    _pool = pool
    _refresher = refresher


def _error(error: str, description: str, status_code: int = 400) -> JSONResponse:
    return JSONResponse({"error": error, "error_description": description}, status_code=status_code)


async def _read_params(request: Request) -> dict:
    """Body parameters from either a form post or a JSON document."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            data = await request.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}
    form = await request.form()
    return dict(form)


def _append_query(url: str, params: dict) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode(params)}"


# ============== OAuth 2.1 Discovery Endpoints ==============

@router.get("/.well-known/oauth-protected-resource")
@router.get("/.well-known/oauth-protected-resource/mcp")
async def oauth_protected_resource():
    """OAuth 2.0 Protected Resource Metadata (RFC 9728)."""
    server_url = _config.server_url
    return {
        "resource": f"{server_url}/mcp",
        "authorization_servers": [server_url],
        "scopes_supported": DEFAULT_SCOPES,
        "bearer_methods_supported": ["header"],
    }


@router.get("/.well-known/oauth-authorization-server")
async def oauth_authorization_server():
    """OAuth 2.0 Authorization Server Metadata (RFC 8414)."""
    server_url = _config.server_url
    return {
        "issuer": server_url,
        "authorization_endpoint": f"{server_url}/oauth/authorize",
        "token_endpoint": f"{server_url}/oauth/token",
        "registration_endpoint": f"{server_url}/oauth/register",
        "revocation_endpoint": f"{server_url}/oauth/revoke",
        "scopes_supported": DEFAULT_SCOPES,
        "response_types_supported": ["code"],
        "response_modes_supported": ["query"],
        "grant_types_supported": ["authorization_code"],
        "token_endpoint_auth_methods_supported": ["none"],
        "code_challenge_methods_supported": [CHALLENGE_METHOD],
    }


# ============== Client Registration ==============

@router.post("/oauth/register")
async def register_client(request: Request):
    """OAuth 2.0 Dynamic Client Registration (RFC 7591).

    Every registrant receives the same upstream client id; registration only
    records which redirect URIs may be used with it.
    """
    try:
        data = await request.json()
    except ValueError:
        return _error("invalid_client_metadata", "Request body must be a JSON object")
    if not isinstance(data, dict):
        return _error("invalid_client_metadata", "Request body must be a JSON object")

    redirect_uris = data.get("redirect_uris")
    if (
        not isinstance(redirect_uris, list)
        or not redirect_uris
        or not all(isinstance(uri, str) and uri for uri in redirect_uris)
    ):
        return _error("invalid_redirect_uri", "redirect_uris must be a non-empty array of strings")

    client_id = _config.oauth_client_id
    if not client_id:
        logger.error("[OAUTH] Registration failed: ZENDESK_OAUTH_CLIENT_ID is not set")
        return JSONResponse(
            {"error": "server_error", "message": "OAuth not configured. Please set ZENDESK_OAUTH_CLIENT_ID"},
            status_code=500,
        )

    client = await _store.register_client(client_id, redirect_uris)
    logger.info(f"[OAUTH] Client registered with {len(redirect_uris)} redirect URIs")

    response = {
        "client_id": client.client_id,
        "client_id_issued_at": int(time.time()),
        "client_name": data.get("client_name", "MCP Client"),
        "application_type": "native",
        "token_endpoint_auth_method": "none",
        "redirect_uris": redirect_uris,
        "grant_types": ["authorization_code"],
        "response_types": ["code"],
        "scope": " ".join(DEFAULT_SCOPES),
    }
    return JSONResponse(response, status_code=201)


# ============== Authorization Flow ==============

@router.get("/oauth/authorize")
async def authorize(
    response_type: str = "code",
    client_id: str = "",
    redirect_uri: str = "",
    state: str = "",
    code_challenge: str = "",
    code_challenge_method: str = "",
):
    """Start the flow: remember the caller, then send the browser to Zendesk."""
    try:
        _upstream.validate_config()
    except ConfigurationError as e:
        logger.error(f"[OAUTH] Authorization unavailable: {e.message}")
        return JSONResponse(e.to_dict(), status_code=e.status_code)

    if response_type != "code":
        return _error("unsupported_response_type", "Only response_type=code is supported")

    if code_challenge_method and code_challenge_method != CHALLENGE_METHOD:
        return _error("invalid_request", "Only the S256 code_challenge_method is supported")
    if code_challenge_method and not code_challenge:
        return _error("invalid_request", "code_challenge_method given without code_challenge")
    if _config.require_pkce and not code_challenge:
        return _error("invalid_request", "code_challenge is required (PKCE with S256)")

    if client_id and redirect_uri:
        client = await _store.get_registered_client(client_id)
        if client is not None and redirect_uri not in client.redirect_uris:
            logger.warning("[OAUTH] Authorization rejected: redirect_uri not registered")
            return _error("invalid_request", "redirect_uri is not registered for this client")

    pkce = generate_pkce()
    internal_state = generate_state()
    await _store.create_pending(
        internal_state,
        pkce.verifier,
        client_redirect_uri=redirect_uri or None,
        client_code_challenge=code_challenge or None,
        client_state=state or None,
    )

    logger.info("[OAUTH] Redirecting to Zendesk for authorization")
    return RedirectResponse(url=_upstream.authorization_url(internal_state, pkce.challenge), status_code=302)


async def oauth_callback(
    code: str = "",
    state: str = "",
    error: str = "",
    error_description: str = "",
):
    """Upstream redirect target; mounted at the path of ZENDESK_OAUTH_REDIRECT_URI."""
    if error:
        logger.warning(f"[OAUTH] Zendesk returned an error: {error}")
        return JSONResponse({"error": error, "message": error_description or error}, status_code=400)

    if not code or not state:
        return _error("invalid_request", "Missing code or state parameter")

    try:
        pending = await _store.get_pending_by_state(state)
        if pending is None:
            raise CsrfError("Invalid or expired state parameter")

        tokens = await _upstream.exchange_code(code, pending.upstream_verifier)
        local_code = await _store.issue_authorization_code(pending, tokens)
    except CsrfError as e:
        logger.warning(f"[OAUTH] Callback rejected: {e.message}")
        return JSONResponse(e.to_dict(), status_code=e.status_code)
    except (AuthExchangeError, ConfigurationError) as e:
        logger.error(f"[OAUTH] Callback failed: {e.message}")
        return JSONResponse(e.to_dict(), status_code=e.status_code)

    logger.info("[OAUTH] Authorization code issued")

    if pending.client_redirect_uri:
        params = {"code": local_code}
        if pending.client_state:
            params["state"] = pending.client_state
        return RedirectResponse(url=_append_query(pending.client_redirect_uri, params), status_code=302)

    page = AUTHORIZATION_CODE_PAGE.format(
        code=html.escape(local_code),
        token_endpoint=html.escape(f"{_config.server_url}/oauth/token"),
        scope=html.escape(tokens.scope or " ".join(DEFAULT_SCOPES)),
        expires_minutes=AUTHORIZATION_CODE_TTL_SECONDS // 60,
    )
    return HTMLResponse(page, headers=CODE_PAGE_HEADERS)


# ============== Token Endpoint ==============

@router.post("/oauth/token")
async def token(request: Request):
    """OAuth 2.0 Token Endpoint. Form or JSON body."""
    params = await _read_params(request)
    for name in ("grant_type", "code", "code_verifier", "redirect_uri"):
        if params.get(name) is not None and not isinstance(params[name], str):
            return _error("invalid_request", f"{name} must be a string")

    grant_type = params.get("grant_type")
    code = params.get("code")
    code_verifier = params.get("code_verifier")
    redirect_uri = params.get("redirect_uri")

    logger.debug(f"[TOKEN] grant_type: {grant_type}")

    if not grant_type:
        return _error("invalid_request", "grant_type is required")
    if grant_type != "authorization_code":
        return _error("unsupported_grant_type", "Only authorization_code is supported")
    if not code:
        return _error("invalid_request", "code is required")
    if not code_verifier and _config.require_pkce:
        return _error("invalid_request", "code_verifier is required")

    try:
        result = await _store.exchange_authorization_code(code, code_verifier or "", redirect_uri=redirect_uri)
    except GrantError as e:
        logger.info("[TOKEN] Authorization code rejected")
        return JSONResponse(e.to_dict(), status_code=e.status_code)

    logger.info(f"[TOKEN] Access token issued for session {result.session.id}")
    return JSONResponse(
        {
            "access_token": result.local_access_token,
            "token_type": "Bearer",
            "expires_in": result.local_expires_in,
            "scope": " ".join(result.session.scopes) or " ".join(DEFAULT_SCOPES),
        },
        headers=TOKEN_RESPONSE_HEADERS,
    )


@router.post("/oauth/revoke")
async def revoke(request: Request):
    """OAuth 2.0 Token Revocation (RFC 7009). Always 200, known token or not."""
    params = await _read_params(request)
    token_value = params.get("token")
    if token_value and isinstance(token_value, str):
        session = await _store.delete_session(token_value)
        if session is not None:
            _pool.remove(session.id)
            _refresher.forget(session.id)
            logger.info(f"[TOKEN] Session {session.id} revoked")
    return JSONResponse({}, headers=TOKEN_RESPONSE_HEADERS)
