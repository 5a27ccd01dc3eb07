"""
tests/test_challenge_cache.py -- Unit tests for cache/store.py.

Covers:
  - take() returns a stored challenge exactly once
  - entries expire at exactly ttl seconds of age
  - purge_expired() removes only expired entries
  - the memory and SQLite backends behave identically
  - build_challenge_cache() URL parsing
  - RevokedTokens denylist and its purge
"""

from __future__ import annotations

import pytest

from cache.store import (
    Challenge,
    MemoryChallengeCache,
    RevokedTokens,
    SQLiteChallengeCache,
    build_challenge_cache,
)


class _Clock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def fake_time() -> _Clock:
    return _Clock()


@pytest.fixture(params=["memory", "sqlite"])
def cache(request, tmp_path, fake_time):
    if request.param == "memory":
        backend = MemoryChallengeCache(ttl=300, clock=fake_time)
    else:
        backend = SQLiteChallengeCache(tmp_path / "challenges.db", ttl=300, clock=fake_time)
    yield backend
    backend.close()


class TestTakeOnce:
    def test_take_returns_stored_challenge(self, cache) -> None:
        cache.put("login:alice:a1", Challenge(value="abc", subject="handle-1"))
        taken = cache.take("login:alice:a1")
        assert taken is not None
        assert taken.value == "abc"
        assert taken.subject == "handle-1"

    def test_second_take_returns_none(self, cache) -> None:
        cache.put("login:alice:a1", Challenge(value="abc"))
        assert cache.take("login:alice:a1") is not None
        assert cache.take("login:alice:a1") is None

    def test_unknown_key_returns_none(self, cache) -> None:
        assert cache.take("login:nobody:zzz") is None

    def test_put_replaces_existing_entry(self, cache) -> None:
        cache.put("k", Challenge(value="first"))
        cache.put("k", Challenge(value="second"))
        assert cache.take("k").value == "second"

    def test_distinct_attempt_keys_do_not_collide(self, cache) -> None:
        cache.put("login:alice:a1", Challenge(value="one"))
        cache.put("login:alice:a2", Challenge(value="two"))
        assert cache.take("login:alice:a1").value == "one"
        assert cache.take("login:alice:a2").value == "two"


class TestExpiry:
    def test_entry_just_inside_ttl_is_returned(self, cache, fake_time) -> None:
        cache.put("k", Challenge(value="v"))
        fake_time.now += 299
        assert cache.take("k") is not None

    def test_entry_at_ttl_is_expired(self, cache, fake_time) -> None:
        cache.put("k", Challenge(value="v"))
        fake_time.now += 300
        assert cache.take("k") is None

    def test_expired_entry_is_gone_after_take(self, cache, fake_time) -> None:
        cache.put("k", Challenge(value="v"))
        fake_time.now += 301
        assert cache.take("k") is None
        fake_time.now -= 301
        assert cache.take("k") is None

    def test_purge_removes_only_expired(self, cache, fake_time) -> None:
        cache.put("old", Challenge(value="1"))
        fake_time.now += 200
        cache.put("new", Challenge(value="2"))
        fake_time.now += 150
        assert cache.purge_expired() == 1
        assert cache.take("old") is None
        assert cache.take("new") is not None

    def test_purge_on_empty_cache(self, cache) -> None:
        assert cache.purge_expired() == 0


def test_memory_cache_len_tracks_entries(fake_time) -> None:
    cache = MemoryChallengeCache(ttl=60, clock=fake_time)
    cache.put("a", Challenge(value="1"))
    cache.put("b", Challenge(value="2"))
    assert len(cache) == 2
    cache.take("a")
    assert len(cache) == 1


def test_sqlite_cache_survives_reopen(tmp_path, fake_time) -> None:
    path = tmp_path / "challenges.db"
    first = SQLiteChallengeCache(path, ttl=300, clock=fake_time)
    first.put("register:bob:-:x", Challenge(value="v", subject="h"))
    first.close()

    second = SQLiteChallengeCache(path, ttl=300, clock=fake_time)
    taken = second.take("register:bob:-:x")
    second.close()
    assert taken is not None and taken.subject == "h"


class TestBuildChallengeCache:
    def test_memory_url(self) -> None:
        assert isinstance(build_challenge_cache("memory://", ttl=10), MemoryChallengeCache)

    def test_sqlite_url(self, tmp_path) -> None:
        cache = build_challenge_cache(f"sqlite:///{tmp_path / 'c.db'}", ttl=10)
        try:
            assert isinstance(cache, SQLiteChallengeCache)
            assert cache.ttl == 10
        finally:
            cache.close()

    def test_unknown_url_rejected(self) -> None:
        with pytest.raises(ValueError):
            build_challenge_cache("redis://localhost")


class TestRevokedTokens:
    def test_revoked_jti_is_reported(self, fake_time) -> None:
        revoked = RevokedTokens(clock=fake_time)
        revoked.revoke("jti-1", fake_time.now + 60)
        assert revoked.is_revoked("jti-1")
        assert not revoked.is_revoked("jti-2")

    def test_purge_drops_entries_past_token_expiry(self, fake_time) -> None:
        revoked = RevokedTokens(clock=fake_time)
        revoked.revoke("short", fake_time.now + 10)
        revoked.revoke("long", fake_time.now + 1000)
        fake_time.now += 10
        assert revoked.purge_expired() == 1
        assert not revoked.is_revoked("short")
        assert revoked.is_revoked("long")
