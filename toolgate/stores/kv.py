"""
Key-Value Store - TTL-aware state storage with atomic primitives.

The authorization flow and the payment gate never do read-then-write on
shared state. Every state transition they make goes through one of the
atomic primitives here (insert-if-absent, compare-and-set, pop), so the
same code is correct whether the backing store is this process's memory
or a PostgreSQL table shared by many workers.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import Callable


class KeyValueStore(ABC):
    """Async key-value store with per-entry expiry."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the live value for key, or None if absent or expired."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: float | None = None) -> None:
        """Unconditionally write key. ttl_seconds=None stores without expiry."""

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_seconds: float | None = None) -> bool:
        """Insert key only if no live entry exists. Returns True if written."""

    @abstractmethod
    async def compare_and_set(
        self, key: str, expected: str, new: str, ttl_seconds: float | None = None
    ) -> bool:
        """
        Replace the value of key only if it currently equals expected.

        With ttl_seconds=None the entry keeps its existing expiry.
        Returns True if the write happened.
        """

    @abstractmethod
    async def pop(self, key: str) -> str | None:
        """Atomically delete key and return its live value (None if absent or expired)."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete key. Returns True if a live entry was removed."""

    @abstractmethod
    async def scan(self, prefix: str) -> list[tuple[str, str]]:
        """Return live (key, value) pairs whose key starts with prefix, ordered by key."""

    @abstractmethod
    async def purge_expired(self) -> int:
        """Delete expired entries. Returns the number removed."""

    async def ping(self) -> bool:
        """Health check."""
        await self.get("health:ping")
        return True


class InMemoryKeyValueStore(KeyValueStore):
    """
    Process-local store for tests and single-process development.

    The lock only guards dictionary access and is never held across an
    await on anything else.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[str, float | None]] = {}
        self._lock = asyncio.Lock()

    def _expiry(self, ttl_seconds: float | None) -> float | None:
        return None if ttl_seconds is None else self._clock() + ttl_seconds

    def _live(self, key: str) -> tuple[str, float | None] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            return None
        return entry

    async def get(self, key: str) -> str | None:
        async with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def set(self, key: str, value: str, ttl_seconds: float | None = None) -> None:
        async with self._lock:
            self._entries[key] = (value, self._expiry(ttl_seconds))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: float | None = None) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._entries[key] = (value, self._expiry(ttl_seconds))
            return True

    async def compare_and_set(
        self, key: str, expected: str, new: str, ttl_seconds: float | None = None
    ) -> bool:
        async with self._lock:
            entry = self._live(key)
            if entry is None or entry[0] != expected:
                return False
            expires_at = entry[1] if ttl_seconds is None else self._expiry(ttl_seconds)
            self._entries[key] = (new, expires_at)
            return True

    async def pop(self, key: str) -> str | None:
        async with self._lock:
            entry = self._live(key)
            self._entries.pop(key, None)
            return entry[0] if entry else None

    async def delete(self, key: str) -> bool:
        async with self._lock:
            live = self._live(key) is not None
            self._entries.pop(key, None)
            return live

    async def scan(self, prefix: str) -> list[tuple[str, str]]:
        async with self._lock:
            matches: list[tuple[str, str]] = []
            for key in self._entries:
                if not key.startswith(prefix):
                    continue
                entry = self._live(key)
                if entry is not None:
                    matches.append((key, entry[0]))
            return sorted(matches)

    async def purge_expired(self) -> int:
        async with self._lock:
            now = self._clock()
            expired = [
                key
                for key, (_, expires_at) in self._entries.items()
                if expires_at is not None and expires_at <= now
            ]
            for key in expired:
                del self._entries[key]
            return len(expired)
