"""Zendesk MCP Server.

Exposes Zendesk to MCP clients behind a local OAuth 2.1 authorization server.
It handles:
- MCP tools via tools.py, served over Streamable HTTP at /mcp
- OAuth flow for MCP clients (oauth/), proxied to Zendesk OAuth
- Bearer token validation and transparent upstream token refresh
- Periodic cleanup of expired sessions
"""
import asyncio
import contextlib
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware import Middleware

from config import Config, load_config
from logging_config import setup_logging
from oauth.context import DownstreamClientPool
from oauth.endpoints import init_oauth_routes, oauth_callback, router as oauth_router
from oauth.middleware import BearerAuthMiddleware
from oauth.refresh import TokenRefresher
from oauth.stores import InMemorySessionStore, SessionStore, sweep_periodically
from oauth.upstream import UpstreamExchangeClient
from tools import mcp
from zendesk_client import ZendeskClient

logger = logging.getLogger(__name__)

SERVICE_NAME = "zendesk-mcp-server"
VERSION = "1.0.0"
MCP_TRANSPORT = "streamable-http"


def create_app(
    config: Config,
    store: SessionStore = None,
    upstream: UpstreamExchangeClient = None,
    pool: DownstreamClientPool = None,
    refresher: TokenRefresher = None,
) -> FastAPI:
    """Wire the store, upstream client, refresher and routes into a FastAPI app."""
    store = store or InMemorySessionStore(require_client_pkce=config.require_pkce)
    upstream = upstream or UpstreamExchangeClient.from_config(config)
    pool = pool or DownstreamClientPool(
        lambda: ZendeskClient(config.zendesk_subdomain, timeout=config.upstream_timeout)
    )
    refresher = refresher or TokenRefresher(
        store,
        upstream,
        max_attempts=config.refresh_max_attempts,
        buffer_seconds=config.refresh_buffer_seconds,
    )

    if not config.is_valid():
        logger.warning(
            f"[STARTUP] OAuth not configured, missing: {', '.join(config.missing_oauth_settings())}"
        )

    def release_sessions(removed):
        for session in removed:
            pool.remove(session.id)
            refresher.forget(session.id)

    # ============== Streamable HTTP MCP App ==============
    # Created before the FastAPI app: its lifespan runs the MCP session manager
    mcp_http_app = mcp.http_app(
        path="/",
        transport=MCP_TRANSPORT,
        stateless_http=True,
        middleware=[
            Middleware(
                BearerAuthMiddleware,
                store=store,
                refresher=refresher,
                pool=pool,
                server_url=config.server_url,
                required_scopes=config.required_scopes,
            )
        ],
    )

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper = asyncio.create_task(
            sweep_periodically(store, config.sweep_interval_seconds, on_removed=release_sessions)
        )
        try:
            async with mcp_http_app.lifespan(app):
                yield
        finally:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper

    # ============== FastAPI App ==============
    app = FastAPI(
        title="Zendesk MCP Server",
        description="MCP access to Zendesk behind OAuth 2.1 with PKCE",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.store = store
    app.state.pool = pool
    app.state.refresher = refresher

    # Browser-based MCP clients run on localhost
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=r"^http://localhost(:\d+)?$",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Mcp-Session-Id", "WWW-Authenticate"],
    )

    app.mount("/mcp", mcp_http_app)

    # ============== Include Routers ==============
    init_oauth_routes(config, store, upstream, pool, refresher)
    app.include_router(oauth_router)
    app.add_api_route(config.callback_path, oauth_callback, methods=["GET"], tags=["oauth"])

    @app.exception_handler(Exception)
    async def unhandled_exception(request: Request, exc: Exception):
        logger.exception(f"[SERVER] Unhandled error on {request.method} {request.url.path}")
        return JSONResponse({"error": "internal_error", "message": "Internal server error"}, status_code=500)

    # ============== Server Info Endpoints ==============

    @app.get("/health")
    async def health_check():
        counts = await store.counts()
        return {
            "status": "healthy",
            "service": SERVICE_NAME,
            "transport": MCP_TRANSPORT,
            "sessions": counts["active"],
            "pending_authorizations": counts["pending"],
            "clients": len(pool),
        }

    @app.get("/")
    async def root():
        return {
            "name": "Zendesk MCP Server",
            "version": VERSION,
            "transport": MCP_TRANSPORT,
            "endpoints": {"streamable_http": "/mcp"},
            "oauth": {
                "protected_resource": f"{config.server_url}/.well-known/oauth-protected-resource",
                "authorization_server": f"{config.server_url}/.well-known/oauth-authorization-server",
            },
        }

    logger.info(f"[STARTUP] SERVER_URL: {config.server_url}")
    logger.info(f"[STARTUP] OAuth callback: {config.oauth_redirect_uri}")
    return app


# ============== Main Entry Point ==============

def run():
    import uvicorn

    config = load_config()
    setup_logging(config.log_level, config.log_format)
    logger.info(f"Starting MCP server with transport: {MCP_TRANSPORT}")
    uvicorn.run(create_app(config), host=config.host, port=config.port)


if __name__ == "__main__":
    run()
