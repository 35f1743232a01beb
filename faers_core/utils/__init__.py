"""Shared utilities."""

from .timeutils import utcnow, ensure_utc, to_naive_utc, isoformat_utc, minutes_until

__all__ = [
    'utcnow',
    'ensure_utc',
    'to_naive_utc',
    'isoformat_utc',
    'minutes_until',
]
