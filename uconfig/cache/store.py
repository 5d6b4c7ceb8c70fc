"""Cache store contract and an in-process implementation."""

import copy
import threading
import time
from collections.abc import Callable
from typing import Any, Protocol


class CacheUnavailableError(Exception):
    """The cache backend could not be reached."""


class CacheLock(Protocol):
    """Named advisory lock handed out by a cache store."""

    def acquire(self, blocking_timeout: float) -> bool:
        """Wait up to blocking_timeout seconds; return True when held."""
        ...

    def release(self) -> None:
        """Release the lock if held by this owner; otherwise do nothing."""
        ...


class CacheStore(Protocol):
    """Key/value cache shared between processes."""

    def get(self, key: str, default: Any = None) -> Any: ...

    def remember(self, key: str, ttl: int, producer: Callable[[], Any]) -> Any: ...

    def forever(self, key: str, value: Any) -> None: ...

    def forget(self, key: str) -> None: ...

    def lock(self, name: str, timeout: float) -> CacheLock: ...


class _MemoryLock:
    """Lock handle over a shared threading.Lock."""

    def __init__(self, lock: threading.Lock) -> None:
        self._lock = lock
        self._held = False

    def acquire(self, blocking_timeout: float) -> bool:
        self._held = self._lock.acquire(timeout=max(blocking_timeout, 0))
        return self._held

    def release(self) -> None:
        if self._held:
            self._held = False
            self._lock.release()


class MemoryCacheStore:
    """
    Cache store living in the current process.

    Values are deep-copied in and out so callers never share mutable state
    with the store, the same as a serializing backend would behave.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._items: dict[str, tuple[Any, float | None]] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.RLock()
        self._clock = clock

    def get(self, key: str, default: Any = None) -> Any:
        """Return the cached value or default when missing or expired."""
        with self._guard:
            item = self._items.get(key)
            if item is None:
                return default
            value, expires_at = item
            if expires_at is not None and expires_at <= self._clock():
                del self._items[key]
                return default
            return copy.deepcopy(value)

    def put(self, key: str, value: Any, ttl: int | None) -> None:
        """Store a value; ttl of None keeps it until forgotten."""
        expires_at = self._clock() + ttl if ttl is not None else None
        with self._guard:
            self._items[key] = (copy.deepcopy(value), expires_at)

    def remember(self, key: str, ttl: int, producer: Callable[[], Any]) -> Any:
        """Return the cached value, computing and storing it for ttl seconds on a miss."""
        missing = object()
        value = self.get(key, missing)
        if value is not missing:
            return value
        value = producer()
        self.put(key, value, ttl)
        return copy.deepcopy(value)

    def forever(self, key: str, value: Any) -> None:
        """Store a value without expiry."""
        self.put(key, value, None)

    def forget(self, key: str) -> None:
        """Drop a key."""
        with self._guard:
            self._items.pop(key, None)

    def flush(self) -> None:
        """Drop everything."""
        with self._guard:
            self._items.clear()

    def lock(self, name: str, timeout: float) -> _MemoryLock:
        """Return a handle on the named lock (timeout is unused in-process)."""
        with self._guard:
            shared = self._locks.setdefault(name, threading.Lock())
        return _MemoryLock(shared)
