"""
cache/store.py -- Short-lived keyed storage for in-flight WebAuthn challenges.

A challenge is created by an "options" call and must be consumed by exactly
one matching "verify" call. take() is atomic get-and-remove: two concurrent
verify submissions for the same key cannot both receive the challenge.

Entries expire after a TTL (default 5 minutes). An expired entry is never
returned by take(); purge_expired() removes them in bulk and is called from
the API's background sweep to bound memory.

Two interchangeable implementations behind one interface:
  MemoryChallengeCache  -- dict + lock, single process (default)
  SQLiteChallengeCache  -- sqlite3 table, survives restarts and can be shared
                           by several worker processes on one host

Also home to RevokedTokens, the optional session-token denylist.

Usage:
    cache = build_challenge_cache("memory://", ttl=300)
    cache.put("login:alice:3f9c...", Challenge(value="..."))
    challenge = cache.take("login:alice:3f9c...")   # Challenge or None
    cache.take("login:alice:3f9c...")               # None -- already consumed
    cache.purge_expired()

Layer rule: stdlib only. No imports from api/, auth/, or core/.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger("bookshelf.cache")

_DEFAULT_TTL = 5 * 60  # seconds

_DDL = """
CREATE TABLE IF NOT EXISTS webauthn_challenges (
    cache_key   TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    subject     TEXT,
    created_at  REAL NOT NULL
);
"""


@dataclass
class Challenge:
    """One in-flight ceremony challenge.

    value is the base64url challenge the client must sign. subject is the
    user handle minted for a brand-new registration (None otherwise).
    created_at is wall-clock seconds, filled in by put() when left at 0.
    """

    value: str
    subject: Optional[str] = None
    created_at: float = field(default=0.0)


class ChallengeCache(ABC):
    """put / take-once / expire. Ceremony code depends only on this."""

    def __init__(self, ttl: int = _DEFAULT_TTL, clock: Callable[[], float] = time.time) -> None:
        self.ttl = ttl
        self.clock = clock

    def _expired(self, challenge: Challenge) -> bool:
        return self.clock() - challenge.created_at >= self.ttl

    @abstractmethod
    def put(self, key: str, challenge: Challenge) -> None:
        """Store challenge under key, replacing any existing entry."""

    @abstractmethod
    def take(self, key: str) -> Optional[Challenge]:
        """Remove and return the challenge for key, or None if absent or expired."""

    @abstractmethod
    def purge_expired(self) -> int:
        """Delete all expired entries. Returns the number removed."""

    def close(self) -> None:
        pass


class MemoryChallengeCache(ChallengeCache):
    def __init__(self, ttl: int = _DEFAULT_TTL, clock: Callable[[], float] = time.time) -> None:
        super().__init__(ttl, clock)
        self._entries: dict[str, Challenge] = {}
        self._lock = threading.Lock()

    def put(self, key: str, challenge: Challenge) -> None:
        if not challenge.created_at:
            challenge.created_at = self.clock()
        with self._lock:
            self._entries[key] = challenge

    def take(self, key: str) -> Optional[Challenge]:
        with self._lock:
            challenge = self._entries.pop(key, None)
        if challenge is None or self._expired(challenge):
            return None
        return challenge

    def purge_expired(self) -> int:
        with self._lock:
            expired = [k for k, c in self._entries.items() if self._expired(c)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class SQLiteChallengeCache(ChallengeCache):
    """SQLite-backed challenge storage.

    take() reads the row, then deletes it with a WHERE clause that also
    matches the value read. Only the caller whose DELETE reports rowcount 1
    owns the challenge, which keeps take-once semantics across processes
    sharing the same file.
    """

    def __init__(
        self,
        db_path: Path | str,
        ttl: int = _DEFAULT_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(ttl, clock)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)
        self._conn.commit()

    def put(self, key: str, challenge: Challenge) -> None:
        if not challenge.created_at:
            challenge.created_at = self.clock()
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO webauthn_challenges (cache_key, value, subject, created_at) "
                "VALUES (?, ?, ?, ?)",
                (key, challenge.value, challenge.subject, challenge.created_at),
            )
            self._conn.commit()

    def take(self, key: str) -> Optional[Challenge]:
        with self._lock:
            row = self._conn.execute(
                "SELECT value, subject, created_at FROM webauthn_challenges WHERE cache_key = ?",
                (key,),
            ).fetchone()
            if row is None:
                return None
            value, subject, created_at = row
            cursor = self._conn.execute(
                "DELETE FROM webauthn_challenges WHERE cache_key = ? AND value = ?",
                (key, value),
            )
            self._conn.commit()
        if cursor.rowcount != 1:
            return None
        challenge = Challenge(value=value, subject=subject, created_at=created_at)
        if self._expired(challenge):
            return None
        return challenge

    def purge_expired(self) -> int:
        cutoff = self.clock() - self.ttl
        with self._lock:
            cursor = self._conn.execute("DELETE FROM webauthn_challenges WHERE created_at <= ?", (cutoff,))
            self._conn.commit()
        return cursor.rowcount

    def close(self) -> None:
        self._conn.close()


def build_challenge_cache(url: str, ttl: int = _DEFAULT_TTL) -> ChallengeCache:
    """Construct a cache from a CHALLENGE_CACHE_URL value.

    memory://               -> MemoryChallengeCache
    sqlite:///path/to/file  -> SQLiteChallengeCache
    """
    if url == "memory://":
        return MemoryChallengeCache(ttl=ttl)
    if url.startswith("sqlite:///"):
        return SQLiteChallengeCache(url[len("sqlite:///") :], ttl=ttl)
    raise ValueError(f"Unsupported CHALLENGE_CACHE_URL: {url!r}")


class RevokedTokens:
    """Denylist of session token ids (jti) revoked before their expiry.

    Consulted only when validating a token. Entries are dropped once the
    token they block would have expired anyway, so the set stays small.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self.clock = clock
        self._entries: dict[str, float] = {}
        self._lock = threading.Lock()

    def revoke(self, jti: str, expires_at: float) -> None:
        with self._lock:
            self._entries[jti] = expires_at

    def is_revoked(self, jti: str) -> bool:
        with self._lock:
            return jti in self._entries

    def purge_expired(self) -> int:
        now = self.clock()
        with self._lock:
            stale = [jti for jti, exp in self._entries.items() if exp <= now]
            for jti in stale:
                del self._entries[jti]
        return len(stale)
