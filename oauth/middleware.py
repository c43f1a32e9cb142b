"""Bearer token gate for the MCP endpoint.

Validates the locally issued access token, refreshes the upstream Zendesk token
when it is about to expire, and binds the session's Zendesk client to the
request context before handing over to the MCP app.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse, Response
from starlette.middleware.base import BaseHTTPMiddleware

from oauth.context import DownstreamClientPool, request_context
from oauth.errors import REAUTHORIZE_HINT, AuthExchangeError, SessionExpiredError
from oauth.refresh import TokenRefresher
from oauth.stores import Session, SessionStore

logger = logging.getLogger(__name__)

REALM = "mcp"


def unauthorized_response(server_url: str, message: str) -> JSONResponse:
    """401 with a challenge pointing at the protected resource metadata."""
    return JSONResponse(
        {"error": "unauthorized", "message": message, "hint": REAUTHORIZE_HINT},
        status_code=401,
        headers={
            "WWW-Authenticate": (
                f'Bearer realm="{REALM}", '
                f'resource_metadata="{server_url}/.well-known/oauth-protected-resource"'
            )
        },
    )


def insufficient_scope_response(required_scopes: list[str], missing: list[str]) -> JSONResponse:
    description = f"Missing required scopes: {' '.join(missing)}"
    return JSONResponse(
        {"error": "insufficient_scope", "message": description, "required_scopes": required_scopes},
        status_code=403,
        headers={
            "WWW-Authenticate": (
                f'Bearer realm="{REALM}", scope="{" ".join(required_scopes)}", '
                f'error="insufficient_scope", error_description="{description}"'
            )
        },
    )


def extract_bearer_token(auth_header: str):
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class BearerAuthMiddleware(BaseHTTPMiddleware):
    """Middleware to validate locally issued Bearer tokens on the MCP endpoint."""

    def __init__(
        self,
        app,
        store: SessionStore,
        refresher: TokenRefresher,
        pool: DownstreamClientPool,
        server_url: str,
        required_scopes: list[str] = None,
    ):
        super().__init__(app)
        self.store = store
        self.refresher = refresher
        self.pool = pool
        self.server_url = server_url
        self.required_scopes = required_scopes or []

    async def dispatch(self, request: Request, call_next):
        try:
            result = await self._authenticate(request)
        except Exception:
            logger.exception("[AUTH] Unexpected error while authenticating request")
            return JSONResponse(
                {"error": "internal_error", "message": "Internal server error"},
                status_code=500,
            )

        if isinstance(result, Response):
            return result

        session = result
        client = self.pool.get_or_create(session)
        request.state.zendesk_session_id = session.id
        with request_context(session.id, client):
            return await call_next(request)

    async def _authenticate(self, request: Request):
        token = extract_bearer_token(request.headers.get("Authorization", ""))
        if token is None:
            logger.info("[AUTH] Request rejected: no Bearer token")
            return unauthorized_response(self.server_url, "Missing or invalid Authorization header")

        session = await self.store.get_session(token)
        if session is None:
            logger.info("[AUTH] Request rejected: unknown token")
            return unauthorized_response(self.server_url, "Invalid or expired token")

        if session.is_local_token_expired(self.store.now()):
            await self.store.delete_session(token)
            self._release(session)
            logger.info(f"[AUTH] Request rejected: token expired for session {session.id}")
            return unauthorized_response(self.server_url, "Token expired")

        try:
            session = await self.refresher.ensure_fresh(token, session)
        except (AuthExchangeError, SessionExpiredError) as e:
            self._release(session)
            logger.warning(f"[AUTH] Request rejected: refresh failed for session {session.id}: {e.message}")
            return unauthorized_response(self.server_url, "Token refresh failed. Please re-authorize.")

        missing = [scope for scope in self.required_scopes if scope not in session.scopes]
        if missing:
            logger.info(f"[AUTH] Request rejected: session {session.id} lacks scopes {missing}")
            return insufficient_scope_response(self.required_scopes, missing)

        return session

    def _release(self, session: Session) -> None:
        self.pool.remove(session.id)
        self.refresher.forget(session.id)
