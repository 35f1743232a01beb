"""
Tests for the session cache and session store.

Tests cover:
- Cache expiry and per-user eviction
- Single-session replacement
- Extension never moving expiry backwards
- Expired session cleanup
"""
import threading
from datetime import timedelta

import pytest

from faers_core.auth.session_cache import SessionCache
from faers_core.auth.sessions import SessionStore, generate_session_id
from faers_core.database.repositories import SessionRepository


@pytest.fixture
def store(db, clock):
    return SessionStore(SessionRepository(db), cache=SessionCache(clock), clock=clock)


class TestSessionCache:
    """Tests for SessionCache."""

    def test_returns_live_entry(self, clock):
        """Should return an entry before its expiry."""
        cache = SessionCache(clock)
        cache.put("s1", "u1", clock() + timedelta(minutes=30))
        assert cache.get("s1").user_id == "u1"
        assert "s1" in cache

    def test_drops_expired_entry(self, clock):
        """Should drop an entry once its expiry has passed."""
        cache = SessionCache(clock)
        cache.put("s1", "u1", clock() + timedelta(minutes=30))
        clock.advance(minutes=30)
        assert cache.get("s1") is None
        assert len(cache) == 0

    def test_discard_user(self, clock):
        """Should drop only the given user's entries."""
        cache = SessionCache(clock)
        expiry = clock() + timedelta(minutes=30)
        cache.put("s1", "u1", expiry)
        cache.put("s2", "u1", expiry)
        cache.put("s3", "u2", expiry)
        assert cache.discard_user("u1") == 2
        assert "s3" in cache
        assert len(cache) == 1

    def test_purge_expired(self, clock):
        """Should purge only expired entries."""
        cache = SessionCache(clock)
        cache.put("old", "u1", clock() + timedelta(minutes=5))
        cache.put("new", "u2", clock() + timedelta(minutes=60))
        clock.advance(minutes=10)
        assert cache.purge_expired() == 1
        assert "new" in cache

    def test_concurrent_puts(self, clock):
        """Should stay consistent under concurrent writers."""
        cache = SessionCache(clock)
        expiry = clock() + timedelta(minutes=30)

        def writer(prefix):
            for i in range(200):
                cache.put(f"{prefix}-{i}", prefix, expiry)

        threads = [threading.Thread(target=writer, args=(f"u{n}",)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert len(cache) == 800


class TestSessionStore:
    """Tests for SessionStore."""

    def test_session_ids_are_unique(self):
        """Should generate distinct opaque identifiers."""
        ids = {generate_session_id() for _ in range(100)}
        assert len(ids) == 100

    def test_create_caches_session(self, store, make_user, clock):
        """Should persist the session and cache it."""
        user = make_user("jdoe")
        session = store.create(user.id, clock() + timedelta(minutes=30), "10.0.0.1", "pytest")
        assert store.is_cached(session.id)
        assert store.find_by_id(session.id).ip_address == "10.0.0.1"
        assert store.count_active_for_user(user.id) == 1

    def test_replace_invalidates_previous(self, store, make_user, clock):
        """Should leave exactly one live session after replacement."""
        user = make_user("jdoe")
        first = store.create(user.id, clock() + timedelta(minutes=30))
        second, replaced = store.replace_for_user(user.id, clock() + timedelta(minutes=30))
        assert replaced == [first.id]
        assert not store.is_valid(first.id)
        assert store.is_valid(second.id)
        assert store.count_active_for_user(user.id) == 1

    def test_is_valid_falls_back_to_store(self, store, make_user, clock):
        """Should answer from the durable store after a cache loss."""
        user = make_user("jdoe")
        session = store.create(user.id, clock() + timedelta(minutes=30))
        store.cache.clear()
        assert store.is_valid(session.id)
        assert store.is_cached(session.id)

    def test_extend_never_decreases(self, store, make_user, clock):
        """Should ignore an extension to an earlier expiry."""
        user = make_user("jdoe")
        session = store.create(user.id, clock() + timedelta(minutes=30))
        extended = store.extend(session.id, clock() + timedelta(minutes=10))
        assert extended.expires_at == session.expires_at
        later = store.extend(session.id, clock() + timedelta(minutes=45))
        assert later.expires_at == clock() + timedelta(minutes=45)

    def test_cleanup_removes_only_expired(self, store, make_user, clock):
        """Should delete expired sessions and keep live ones."""
        user = make_user("jdoe")
        other = make_user("alice")
        short = store.create(user.id, clock() + timedelta(minutes=5))
        long = store.create(other.id, clock() + timedelta(minutes=60))
        clock.advance(minutes=10)
        assert store.cleanup_expired() == 1
        assert store.find_by_id(short.id) is None
        assert store.find_by_id(long.id) is not None
        assert store.cleanup_expired() == 0

    def test_invalidate_all_for_user(self, store, make_user, clock):
        """Should invalidate every session of the user."""
        user = make_user("jdoe")
        ids = {store.create(user.id, clock() + timedelta(minutes=30)).id for _ in range(3)}
        assert set(store.invalidate_all_for_user(user.id)) == ids
        assert store.count_active_for_user(user.id) == 0
