"""Explicit engine sessions (connect / disconnect).

A session pins one engine client to its owner for reuse across requests.
Sessions expire after a period of inactivity and are checked for ownership
every time they are resolved, so a token can never be used by another user.
"""
import logging
import secrets
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Optional

from .engine import EngineClient

logger = logging.getLogger(__name__)


@dataclass
class ActiveSession:
    """One live, pooled engine client and who it belongs to."""
    session_id: str
    client: EngineClient
    owner_user_id: str
    connection_id: str
    created_at: float = field(default_factory=time.time)
    last_used_at: float = field(default_factory=time.time)


class SessionStore:
    """In-memory session map guarded by a lock.

    The lock only protects the map itself; clients are closed after they
    have been removed, outside the lock.
    """

    def __init__(self, max_age_seconds: float = 3600.0, clock: Callable[[], float] = time.time):
        self._max_age = max_age_seconds
        self._clock = clock
        self._sessions: dict[str, ActiveSession] = {}
        self._lock = Lock()

    def create(self, owner_user_id: str, connection_id: str, client: EngineClient) -> ActiveSession:
        self.cleanup_expired()
        now = self._clock()
        session = ActiveSession(
            session_id=secrets.token_urlsafe(32),
            client=client,
            owner_user_id=owner_user_id,
            connection_id=connection_id,
            created_at=now,
            last_used_at=now,
        )
        with self._lock:
            self._sessions[session.session_id] = session
        logger.info("Session created for user %s on connection %s", owner_user_id, connection_id)
        return session

    def get(self, session_id: str) -> Optional[ActiveSession]:
        """Return a live session and refresh its idle timer.

        Expired sessions are destroyed on the spot and reported as missing.
        """
        return self._lookup(session_id, refresh=True)

    def peek(self, session_id: str) -> Optional[ActiveSession]:
        """Like get(), but leaves the idle timer alone.

        Used before the owner has been checked.
        """
        return self._lookup(session_id, refresh=False)

    def _lookup(self, session_id: str, refresh: bool) -> Optional[ActiveSession]:
        now = self._clock()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if now - session.last_used_at > self._max_age:
                del self._sessions[session_id]
                expired = session
            else:
                if refresh:
                    session.last_used_at = now
                return session
        self._close(expired)
        return None

    def destroy(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        self._close(session)
        return True

    def destroy_user_sessions(self, user_id: str) -> int:
        """Destroy every session owned by a user (logout, account switch)."""
        with self._lock:
            doomed = [s for s in self._sessions.values() if s.owner_user_id == user_id]
            for session in doomed:
                del self._sessions[session.session_id]
        for session in doomed:
            self._close(session)
        return len(doomed)

    def cleanup_expired(self) -> int:
        now = self._clock()
        with self._lock:
            doomed = [s for s in self._sessions.values() if now - s.last_used_at > self._max_age]
            for session in doomed:
                del self._sessions[session.session_id]
        for session in doomed:
            self._close(session)
        if doomed:
            logger.info("Expired %d idle session(s)", len(doomed))
        return len(doomed)

    def count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def close_all(self) -> None:
        with self._lock:
            doomed = list(self._sessions.values())
            self._sessions.clear()
        for session in doomed:
            self._close(session)

    @staticmethod
    def _close(session: ActiveSession) -> None:
        try:
            session.client.close()
        except Exception:
            logger.exception("Failed to close engine client for session owned by %s", session.owner_user_id)
