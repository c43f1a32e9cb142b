"""Session storage for the OAuth flow.

The store holds every piece of shared mutable auth state:
- pending authorizations (internal state -> upstream PKCE verifier + client info)
- one-time authorization codes (code -> upstream tokens awaiting exchange)
- active sessions (locally issued access token -> session)
- dynamic client registrations (client_id -> permitted redirect URIs)

`SessionStore` is the interface; `InMemorySessionStore` keeps everything in
process memory and is lost on restart. A shared backend (Redis, a database)
can be dropped in by implementing the same coroutines.
"""

import asyncio
import logging
import secrets
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from oauth.errors import CsrfError, GrantError
from oauth.pkce import verify_challenge
from oauth.upstream import UpstreamTokens

logger = logging.getLogger(__name__)

PENDING_TTL_SECONDS = 10 * 60
AUTHORIZATION_CODE_TTL_SECONDS = 10 * 60
LOCAL_TOKEN_TTL_SECONDS = 24 * 60 * 60
DEFAULT_REFRESH_BUFFER_SECONDS = 60


@dataclass
class PendingAuthorization:
    state: str
    upstream_verifier: str
    created_at: float
    client_redirect_uri: Optional[str] = None
    client_code_challenge: Optional[str] = None
    client_state: Optional[str] = None

    @property
    def expires_at(self) -> float:
        return self.created_at + PENDING_TTL_SECONDS

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class AuthorizationCode:
    code: str
    upstream_tokens: UpstreamTokens
    created_at: float
    client_redirect_uri: Optional[str] = None
    client_code_challenge: Optional[str] = None

    @property
    def expires_at(self) -> float:
        return self.created_at + AUTHORIZATION_CODE_TTL_SECONDS

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class Session:
    id: str
    upstream_access_token: str
    upstream_refresh_token: Optional[str]
    upstream_token_expiry: Optional[float]
    local_access_token: str
    local_token_expiry: float
    scopes: list[str] = field(default_factory=list)
    created_at: float = 0.0

    def is_local_token_expired(self, now: float) -> bool:
        return now >= self.local_token_expiry


@dataclass
class RegisteredClient:
    client_id: str
    redirect_uris: set[str]
    registered_at: float


@dataclass
class ExchangeResult:
    local_access_token: str
    local_expires_in: int
    session: Session


class SessionStore(ABC):
    """Atomic operations over the auth state.

    Each coroutine is indivisible with respect to every other operation on the
    same key. Implementations must be safe for arbitrary concurrent callers.
    """

    def __init__(self, clock: Callable[[], float] = time.time, require_client_pkce: bool = True):
        self._clock = clock
        self.require_client_pkce = require_client_pkce

    def now(self) -> float:
        return self._clock()

    @abstractmethod
    async def create_pending(
        self,
        state: str,
        upstream_verifier: str,
        client_redirect_uri: str = None,
        client_code_challenge: str = None,
        client_state: str = None,
    ) -> PendingAuthorization:
        """Store a pending authorization keyed by `state` for ten minutes."""

    @abstractmethod
    async def get_pending_by_state(self, state: str) -> Optional[PendingAuthorization]:
        """Look up a live pending authorization without consuming it."""

    @abstractmethod
    async def issue_authorization_code(self, pending: PendingAuthorization, upstream_tokens: UpstreamTokens) -> str:
        """Consume `pending` and mint a one-time code bound to the upstream tokens.

        Raises:
            CsrfError: The pending authorization was already consumed or expired.
        """

    @abstractmethod
    async def exchange_authorization_code(
        self, code: str, client_verifier: str, redirect_uri: str = None
    ) -> ExchangeResult:
        """Consume a code and mint a session with a fresh local access token.

        Raises:
            GrantError: For any failure, with no detail about which check failed.
        """

    @abstractmethod
    async def get_session(self, local_access_token: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def delete_session(self, local_access_token: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def update_upstream_tokens(
        self, local_access_token: str, tokens: UpstreamTokens, session_id: str = None
    ) -> bool:
        """Update the upstream credentials of a session in place.

        The local token expiry is never touched. Returns False, changing
        nothing, if the session is gone or (when `session_id` is given) the
        token now belongs to a different session.
        """

    @abstractmethod
    async def register_client(self, client_id: str, redirect_uris: Iterable[str]) -> RegisteredClient:
        ...

    @abstractmethod
    async def get_registered_client(self, client_id: str) -> Optional[RegisteredClient]:
        ...

    @abstractmethod
    async def sweep(self, now: float = None) -> list[Session]:
        """Remove expired pending authorizations, codes and sessions.

        Returns the removed sessions so their resources can be released.
        """

    @abstractmethod
    async def counts(self) -> dict:
        ...

    def is_upstream_token_expiring(
        self, session: Session, buffer_seconds: int = DEFAULT_REFRESH_BUFFER_SECONDS, now: float = None
    ) -> bool:
        if session.upstream_token_expiry is None:
            return True
        now = self.now() if now is None else now
        return now >= session.upstream_token_expiry - buffer_seconds


class InMemorySessionStore(SessionStore):
    """Process-local store. Sessions are lost on restart and not shared across workers."""

    def __init__(self, clock: Callable[[], float] = time.time, require_client_pkce: bool = True):
        super().__init__(clock=clock, require_client_pkce=require_client_pkce)
        self._lock = asyncio.Lock()
        self._pending: dict[str, PendingAuthorization] = {}
        self._codes: dict[str, AuthorizationCode] = {}
        self._sessions: dict[str, Session] = {}
        self._clients: dict[str, RegisteredClient] = {}

    async def create_pending(
        self,
        state: str,
        upstream_verifier: str,
        client_redirect_uri: str = None,
        client_code_challenge: str = None,
        client_state: str = None,
    ) -> PendingAuthorization:
        pending = PendingAuthorization(
            state=state,
            upstream_verifier=upstream_verifier,
            created_at=self.now(),
            client_redirect_uri=client_redirect_uri,
            client_code_challenge=client_code_challenge,
            client_state=client_state,
        )
        async with self._lock:
            if state in self._pending:
                raise ValueError("state already in use")
            self._pending[state] = pending
        return pending

    async def get_pending_by_state(self, state: str) -> Optional[PendingAuthorization]:
        async with self._lock:
            pending = self._pending.get(state)
            if pending is None:
                return None
            if pending.is_expired(self.now()):
                del self._pending[state]
                logger.info("[SESSION] Pending authorization expired before callback")
                return None
            return pending

    async def issue_authorization_code(self, pending: PendingAuthorization, upstream_tokens: UpstreamTokens) -> str:
        now = self.now()
        async with self._lock:
            current = self._pending.pop(pending.state, None)
            if current is not pending or current.is_expired(now):
                raise CsrfError("Invalid or expired state parameter")

            code = secrets.token_urlsafe(32)
            self._codes[code] = AuthorizationCode(
                code=code,
                upstream_tokens=upstream_tokens,
                created_at=now,
                client_redirect_uri=pending.client_redirect_uri,
                client_code_challenge=pending.client_code_challenge,
            )
        return code

    async def exchange_authorization_code(
        self, code: str, client_verifier: str, redirect_uri: str = None
    ) -> ExchangeResult:
        now = self.now()
        async with self._lock:
            # Popped before any check: a code is consumed by its first use, good or bad
            record = self._codes.pop(code, None) if code else None
            if record is None or record.is_expired(now):
                raise GrantError()

            if record.client_code_challenge:
                if not verify_challenge(client_verifier, record.client_code_challenge):
                    raise GrantError()
            elif self.require_client_pkce:
                raise GrantError()

            if redirect_uri and record.client_redirect_uri and redirect_uri != record.client_redirect_uri:
                raise GrantError()

            tokens = record.upstream_tokens
            local_access_token = secrets.token_urlsafe(32)
            session = Session(
                id=uuid.uuid4().hex,
                upstream_access_token=tokens.access_token,
                upstream_refresh_token=tokens.refresh_token,
                # expires_in counts from when Zendesk issued the tokens, at the callback
                upstream_token_expiry=record.created_at + tokens.expires_in,
                local_access_token=local_access_token,
                local_token_expiry=now + LOCAL_TOKEN_TTL_SECONDS,
                scopes=tokens.scopes,
                created_at=now,
            )
            self._sessions[local_access_token] = session

        logger.info(f"[SESSION] Session {session.id} created")
        return ExchangeResult(
            local_access_token=local_access_token,
            local_expires_in=LOCAL_TOKEN_TTL_SECONDS,
            session=session,
        )

    async def get_session(self, local_access_token: str) -> Optional[Session]:
        async with self._lock:
            return self._sessions.get(local_access_token)

    async def delete_session(self, local_access_token: str) -> Optional[Session]:
        async with self._lock:
            session = self._sessions.pop(local_access_token, None)
        if session:
            logger.info(f"[SESSION] Session {session.id} deleted")
        return session

    async def update_upstream_tokens(
        self, local_access_token: str, tokens: UpstreamTokens, session_id: str = None
    ) -> bool:
        now = self.now()
        async with self._lock:
            session = self._sessions.get(local_access_token)
            if session is None or (session_id is not None and session.id != session_id):
                return False
            session.upstream_access_token = tokens.access_token
            session.upstream_token_expiry = now + tokens.expires_in
            # Some providers rotate refresh tokens; keep the old one otherwise
            if tokens.refresh_token:
                session.upstream_refresh_token = tokens.refresh_token
            return True

    async def register_client(self, client_id: str, redirect_uris: Iterable[str]) -> RegisteredClient:
        async with self._lock:
            client = self._clients.get(client_id)
            if client is None:
                client = RegisteredClient(client_id=client_id, redirect_uris=set(), registered_at=self.now())
                self._clients[client_id] = client
            # One upstream client id is shared by every registrant
            client.redirect_uris.update(redirect_uris)
            return client

    async def get_registered_client(self, client_id: str) -> Optional[RegisteredClient]:
        async with self._lock:
            return self._clients.get(client_id)

    async def sweep(self, now: float = None) -> list[Session]:
        now = self.now() if now is None else now
        async with self._lock:
            for state in [s for s, p in self._pending.items() if p.is_expired(now)]:
                del self._pending[state]
            for code in [c for c, r in self._codes.items() if r.is_expired(now)]:
                del self._codes[code]
            expired = [t for t, s in self._sessions.items() if s.is_local_token_expired(now)]
            removed = [self._sessions.pop(token) for token in expired]

        counts = await self.counts()
        logger.info(
            f"[SESSION] Sweep complete. Removed {len(removed)} sessions; "
            f"active: {counts['active']}, pending: {counts['pending']}, codes: {counts['codes']}"
        )
        return removed

    async def counts(self) -> dict:
        async with self._lock:
            return {
                "active": len(self._sessions),
                "pending": len(self._pending),
                "codes": len(self._codes),
            }


async def sweep_periodically(
    store: SessionStore,
    interval: float,
    on_removed: Callable[[list[Session]], None] = None,
) -> None:
    """Run `store.sweep()` every `interval` seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await store.sweep()
        except Exception:
            logger.exception("[SESSION] Sweep failed")
            continue
        if removed and on_removed:
            on_removed(removed)
