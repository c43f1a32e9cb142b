"""Upstream token refresh with per-session single-flight and bounded retry.

Concurrent requests on the same session share one refresh: the first caller
refreshes under the session's lock, later callers wait on it and then see the
fresh token. Transient failures (network, timeout, 5xx) are retried with
exponential backoff; permanent failures (4xx) stop immediately. Any final
failure deletes the session so the client has to re-authorize.
"""

import asyncio
import logging
from typing import Awaitable, Callable

from oauth.errors import AuthExchangeError, SessionExpiredError
from oauth.stores import Session, SessionStore
from oauth.upstream import UpstreamExchangeClient

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, base: float = 1.0, cap: float = 2.0) -> float:
    """Delay before retry number `attempt` (1-based): base * 2^(attempt-1), capped."""
    return min(base * 2 ** (attempt - 1), cap)


class _SessionLock:
    __slots__ = ("lock", "waiters")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.waiters = 0


class TokenRefresher:
    def __init__(
        self,
        store: SessionStore,
        upstream: UpstreamExchangeClient,
        max_attempts: int = 2,
        base_delay: float = 1.0,
        max_delay: float = 2.0,
        buffer_seconds: int = 60,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.upstream = upstream
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.buffer_seconds = buffer_seconds
        self._sleep = sleep
        self._locks: dict[str, _SessionLock] = {}

    def pending_locks(self) -> int:
        return len(self._locks)

    def forget(self, session_id: str) -> None:
        """Drop the lock of a removed session unless someone is still waiting on it."""
        entry = self._locks.get(session_id)
        if entry is not None and entry.waiters == 0:
            del self._locks[session_id]

    async def ensure_fresh(self, local_access_token: str, session: Session) -> Session:
        """Return the session with upstream credentials valid beyond the buffer.

        Raises:
            SessionExpiredError: The session vanished or was replaced meanwhile.
            AuthExchangeError: Refresh failed; the session has been deleted.
        """
        if not self.store.is_upstream_token_expiring(session, self.buffer_seconds):
            return session

        entry = self._locks.get(session.id)
        if entry is None:
            entry = self._locks[session.id] = _SessionLock()
        entry.waiters += 1
        try:
            async with entry.lock:
                return await self._refresh_locked(local_access_token, session.id)
        finally:
            entry.waiters -= 1
            if entry.waiters == 0 and self._locks.get(session.id) is entry:
                del self._locks[session.id]

    async def _refresh_locked(self, local_access_token: str, session_id: str) -> Session:
        # Another caller may have refreshed (or removed) the session while we waited
        current = await self.store.get_session(local_access_token)
        if current is None or current.id != session_id:
            raise SessionExpiredError("Session no longer exists")
        if not self.store.is_upstream_token_expiring(current, self.buffer_seconds):
            return current

        if not current.upstream_refresh_token:
            await self.store.delete_session(local_access_token)
            raise SessionExpiredError("Upstream token expired and no refresh token is available")

        logger.info(f"[REFRESH] Refreshing upstream token for session {session_id}")
        try:
            tokens = await self._refresh_with_retry(current.upstream_refresh_token, session_id)
        except AuthExchangeError:
            await self.store.delete_session(local_access_token)
            raise

        if not await self.store.update_upstream_tokens(local_access_token, tokens, session_id=session_id):
            raise SessionExpiredError("Session was removed during token refresh")

        logger.info(f"[REFRESH] Upstream token refreshed for session {session_id}")
        refreshed = await self.store.get_session(local_access_token)
        if refreshed is None or refreshed.id != session_id:
            raise SessionExpiredError("Session was removed during token refresh")
        return refreshed

    async def _refresh_with_retry(self, refresh_token: str, session_id: str):
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self.upstream.refresh(refresh_token)
            except AuthExchangeError as e:
                if e.permanent:
                    logger.warning(f"[REFRESH] Refresh rejected for session {session_id}: {e.message}")
                    raise
                if attempt >= self.max_attempts:
                    logger.error(
                        f"[REFRESH] Refresh failed for session {session_id} after {attempt} attempts: {e.message}"
                    )
                    raise
                delay = backoff_delay(attempt, self.base_delay, self.max_delay)
                logger.warning(
                    f"[REFRESH] Refresh attempt {attempt}/{self.max_attempts} failed for session "
                    f"{session_id}, retrying in {delay}s: {e.message}"
                )
                await self._sleep(delay)
