"""Per-request binding of the session's Zendesk client.

The bearer middleware binds the caller's client for the duration of one
request with `request_context()`. Code anywhere below it (MCP tools and
whatever they call) retrieves it with `get_zendesk_client()` instead of
threading a session id through every call. Context variables are copied per
task, so concurrent requests never see each other's binding.
"""

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Callable, Iterator, Optional

from oauth.stores import Session
from zendesk_client import ZendeskClient

logger = logging.getLogger(__name__)

_current_session_id: ContextVar[Optional[str]] = ContextVar("zendesk_session_id", default=None)
_current_client: ContextVar[Optional[ZendeskClient]] = ContextVar("zendesk_client", default=None)


class NoRequestContextError(RuntimeError):
    """Raised when a client is requested outside an authenticated request."""


class DownstreamClientPool:
    """At most one `ZendeskClient` per session id, created lazily."""

    def __init__(self, factory: Callable[[], ZendeskClient]):
        self._factory = factory
        self._clients: dict[str, ZendeskClient] = {}

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._clients

    def get_or_create(self, session: Session) -> ZendeskClient:
        client = self._clients.get(session.id)
        if client is None:
            client = self._factory()
            self._clients[session.id] = client
            logger.debug(f"[CONTEXT] Created client for session {session.id}")
        # Same instance across refreshes; only the credentials change
        if client.access_token != session.upstream_access_token:
            client.set_access_token(session.upstream_access_token, session.upstream_token_expiry)
        return client

    def remove(self, session_id: str) -> None:
        client = self._clients.pop(session_id, None)
        if client is not None:
            client.clear_access_token()
            logger.debug(f"[CONTEXT] Removed client for session {session_id}")


@contextmanager
def request_context(session_id: str, client: ZendeskClient) -> Iterator[ZendeskClient]:
    session_token = _current_session_id.set(session_id)
    client_token = _current_client.set(client)
    try:
        yield client
    finally:
        _current_client.reset(client_token)
        _current_session_id.reset(session_token)


def current_session_id() -> Optional[str]:
    return _current_session_id.get()


def get_zendesk_client() -> ZendeskClient:
    """Return the Zendesk client bound to the current request.

    Raises:
        NoRequestContextError: If called outside an authenticated request.
    """
    client = _current_client.get()
    if client is None:
        raise NoRequestContextError("No Zendesk client in the current request context")
    return client
