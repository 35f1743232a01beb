"""
FAERS CORE - Time Utilities
===========================
All timestamps handled by the core are timezone-aware UTC. The database
stores naive UTC values; these helpers convert at the boundary.
"""

import math
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current time as an aware UTC datetime. Default clock for all services."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Strip tzinfo after converting to UTC, for storage."""
    if value is None:
        return None
    return ensure_utc(value).replace(tzinfo=None)


def isoformat_utc(value: datetime) -> str:
    return ensure_utc(value).isoformat()


def minutes_until(target: datetime, now: datetime) -> int:
    """Whole minutes from now until target, rounded up. Never negative."""
    seconds = (ensure_utc(target) - ensure_utc(now)).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / 60)
