"""
FAERS CORE - Session Store
==========================
Session lifecycle over the durable store and the in-process cache.

Single-session replacement holds a per-user lock and commits the
invalidation of old sessions and the insert of the new one in one
transaction, so no reader ever sees two live sessions for the user.
"""

import logging
import secrets
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from ..database.repositories import SessionRepository
from ..models import Session
from ..utils.timeutils import utcnow
from .session_cache import SessionCache

logger = logging.getLogger(__name__)

SESSION_ID_BYTES = 32


def generate_session_id() -> str:
    """Opaque, unguessable session identifier."""
    return secrets.token_urlsafe(SESSION_ID_BYTES)


class SessionStore:
    """Durable sessions with a cache fast path."""

    def __init__(
        self,
        repository: SessionRepository,
        cache: Optional[SessionCache] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._repository = repository
        self._clock = clock
        self.cache = cache or SessionCache(clock)
        self._user_locks: Dict[str, threading.Lock] = {}
        self._user_locks_guard = threading.Lock()

    @contextmanager
    def _user_lock(self, user_id: str) -> Iterator[None]:
        with self._user_locks_guard:
            lock = self._user_locks.setdefault(user_id, threading.Lock())
        with lock:
            yield

    def create(
        self,
        user_id: str,
        expires_at: datetime,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        session = self._repository.create(
            generate_session_id(), user_id, self._clock(), expires_at, ip_address, user_agent,
        )
        self.cache.put(session.id, user_id, session.expires_at)
        return session

    def replace_for_user(
        self,
        user_id: str,
        expires_at: datetime,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[Session, List[str]]:
        """
        Invalidate every active session of the user and create a new one.

        Returns:
            Tuple of (new session, ids of the sessions it replaced)
        """
        with self._user_lock(user_id):
            self.cache.discard_user(user_id)
            with self._repository.transaction() as tx:
                replaced = self._repository.invalidate_all_for_user(user_id, session=tx)
                session = self._repository.create(
                    generate_session_id(), user_id, self._clock(), expires_at,
                    ip_address, user_agent, session=tx,
                )
            self.cache.put(session.id, user_id, session.expires_at)

        if replaced:
            logger.info(f"Replaced {len(replaced)} existing session(s) for user {user_id}")
        return session, replaced

    def find_by_id(self, session_id: str) -> Optional[Session]:
        return self._repository.find_by_id(session_id)

    def find_active_for_user(self, user_id: str) -> List[Session]:
        return self._repository.find_active_by_user_id(user_id, self._clock())

    def count_active_for_user(self, user_id: str) -> int:
        return self._repository.count_active_for_user(user_id, self._clock())

    def is_cached(self, session_id: str) -> bool:
        return session_id in self.cache

    def is_valid(self, session_id: str) -> bool:
        """Cache hit answers directly; otherwise the durable store decides."""
        if session_id in self.cache:
            return True
        session = self._repository.find_by_id(session_id)
        if session is None or not session.is_valid_at(self._clock()):
            return False
        self.cache.put(session.id, session.user_id, session.expires_at)
        return True

    def touch(self, session_id: str) -> Optional[Session]:
        """Stamp last activity. Returns the durable session, live or not."""
        session = self._repository.update_activity(session_id, self._clock())
        if session is not None and session.is_valid_at(self._clock()):
            self.cache.put(session.id, session.user_id, session.expires_at)
        else:
            self.cache.discard(session_id)
        return session

    def extend(self, session_id: str, expires_at: datetime) -> Optional[Session]:
        session = self._repository.extend(session_id, expires_at, self._clock())
        if session is not None:
            self.cache.put(session.id, session.user_id, session.expires_at)
        return session

    def evict(self, session_id: str) -> None:
        """Drop a session from the cache only."""
        self.cache.discard(session_id)

    def invalidate(self, session_id: str) -> bool:
        self.cache.discard(session_id)
        return self._repository.invalidate(session_id)

    def invalidate_all_for_user(self, user_id: str) -> List[str]:
        with self._user_lock(user_id):
            self.cache.discard_user(user_id)
            return self._repository.invalidate_all_for_user(user_id)

    def cleanup_expired(self) -> int:
        """Remove expired sessions from both stores. Returns the durable count."""
        self.cache.purge_expired()
        count = self._repository.cleanup_expired(self._clock())
        if count:
            logger.info(f"Cleaned up {count} expired sessions")
        return count
