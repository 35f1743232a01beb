"""
FAERS CORE - Events
===================
Plain-data events published to the notification / UI layer.

Subscribers are called synchronously. A subscriber that raises is logged
and skipped; the error never reaches the publishing core operation.
"""

import logging
import threading
from datetime import datetime
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Type

from .utils.timeutils import utcnow

logger = logging.getLogger(__name__)


# ============================================================
# EVENTS
# ============================================================

@dataclass(frozen=True)
class DemoModeChanged:
    enabled: bool
    changed_at: datetime


@dataclass(frozen=True)
class SessionExpiryWarning:
    """The session will expire within the configured warning window."""
    session_id: str
    user_id: str
    expires_at: datetime
    seconds_remaining: int


@dataclass(frozen=True)
class WorkflowTransitioned:
    case_id: str
    from_status: str
    to_status: str
    actor_id: str
    actor_username: str
    occurred_at: datetime
    assignee: Optional[str] = None
    comment: Optional[str] = None
    signature_id: Optional[int] = None


# ============================================================
# DISPATCHER
# ============================================================

class EventDispatcher:
    """Synchronous in-process publish/subscribe keyed by event class."""

    def __init__(self):
        self._subscribers: Dict[type, List[Callable]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_type: Type, callback: Callable) -> None:
        """Subscribe to an event type."""
        with self._lock:
            self._subscribers.setdefault(event_type, []).append(callback)

    def unsubscribe(self, event_type: Type, callback: Callable) -> None:
        """Unsubscribe from an event type."""
        with self._lock:
            if event_type in self._subscribers:
                self._subscribers[event_type] = [
                    cb for cb in self._subscribers[event_type] if cb != callback
                ]

    def publish(self, event) -> int:
        """Deliver an event to its subscribers. Returns how many were called."""
        with self._lock:
            callbacks = list(self._subscribers.get(type(event), []))

        for callback in callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Subscriber callback error for {type(event).__name__}: {e}")
        return len(callbacks)


# ============================================================
# DEMO MODE
# ============================================================

@dataclass
class DemoModeState:
    """Demo mode flag. Every change is published as DemoModeChanged."""
    dispatcher: EventDispatcher
    clock: Callable[[], datetime] = utcnow
    is_active: bool = field(default=False, init=False)

    def activate(self) -> None:
        self._set(True)

    def deactivate(self) -> None:
        self._set(False)

    def _set(self, enabled: bool) -> None:
        self.is_active = enabled
        logger.info(f"Demo mode {'activated' if enabled else 'deactivated'}")
        self.dispatcher.publish(DemoModeChanged(enabled=enabled, changed_at=self.clock()))


# Singleton instance
_dispatcher: Optional[EventDispatcher] = None


def get_event_dispatcher() -> EventDispatcher:
    """Get singleton event dispatcher."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = EventDispatcher()
    return _dispatcher
