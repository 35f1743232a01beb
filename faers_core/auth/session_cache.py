"""
FAERS CORE - Session Cache
==========================
Thread-safe in-process cache in front of the durable session store.

The cache is only a fast path. A miss or an expired entry always falls
through to the database, which remains authoritative.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional

from ..utils.timeutils import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedSession:
    user_id: str
    expires_at: datetime


class SessionCache:
    """Session id -> (user id, expiry) map guarded by a single lock."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._entries: Dict[str, CachedSession] = {}
        self._lock = threading.RLock()
        self._clock = clock

    def get(self, session_id: str) -> Optional[CachedSession]:
        """Return the entry if present and not past its recorded expiry."""
        with self._lock:
            entry = self._entries.get(session_id)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[session_id]
                return None
            return entry

    def put(self, session_id: str, user_id: str, expires_at: datetime) -> None:
        with self._lock:
            self._entries[session_id] = CachedSession(user_id=user_id, expires_at=expires_at)

    def discard(self, session_id: str) -> None:
        with self._lock:
            self._entries.pop(session_id, None)

    def discard_user(self, user_id: str) -> int:
        """Drop every entry belonging to a user."""
        with self._lock:
            doomed = [sid for sid, entry in self._entries.items() if entry.user_id == user_id]
            for sid in doomed:
                del self._entries[sid]
            return len(doomed)

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            doomed = [sid for sid, entry in self._entries.items() if entry.expires_at <= now]
            for sid in doomed:
                del self._entries[sid]
            if doomed:
                logger.debug(f"Purged {len(doomed)} expired cached sessions")
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, session_id: str) -> bool:
        return self.get(session_id) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
