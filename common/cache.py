"""TTL cache used in front of read-only collaborator lookups."""
from __future__ import annotations

from threading import Lock
from typing import Callable, Generic, Optional, TypeVar

from cachetools import TTLCache

T = TypeVar("T")


class SimpleTTLCache(Generic[T]):
    def __init__(self, ttl: int, maxsize: int = 256) -> None:
        self._cache: TTLCache[str, T] = TTLCache(maxsize=maxsize, ttl=ttl)
        self._lock = Lock()

    def get(self, key: str) -> Optional[T]:
        with self._lock:
            return self._cache.get(key)

    def set(self, key: str, value: T) -> None:
        with self._lock:
            self._cache[key] = value

    def get_or_load(self, key: str, loader: Callable[[], T]) -> T:
        cached = self.get(key)
        if cached is not None:
            return cached
        # loader runs outside the lock; two misses may both load, last one wins
        value = loader()
        self.set(key, value)
        return value

    def pop(self, key: str) -> None:
        with self._lock:
            self._cache.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
