"""Injected in-memory caches for question generation."""

import time
from collections import OrderedDict
from threading import Lock
from typing import Any, Callable, Hashable, Optional, Set, Tuple

SeenKey = Tuple[str, str]


class TTLCache:
    """Thread-safe LRU cache whose entries expire after ``ttl_seconds``."""

    def __init__(
        self,
        max_size: int = 512,
        ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._max_size = max_size
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._entries: "OrderedDict[Hashable, Tuple[float, Any]]" = OrderedDict()
        self._lock = Lock()

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            if key in self._entries:
                self._entries.pop(key)
            elif len(self._entries) >= self._max_size:
                # Evict least recently used
                self._entries.popitem(last=False)
            self._entries[key] = (self._clock() + self._ttl, value)

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return default
            self._entries.move_to_end(key)
            return value

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def pop_where(self, predicate: Callable[[Hashable], bool]) -> int:
        """Remove every entry whose key matches ``predicate``; returns how many."""
        with self._lock:
            keys = [key for key in self._entries if predicate(key)]
            for key in keys:
                del self._entries[key]
            return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def sweep(self) -> int:
        """Remove every expired entry and return how many were dropped."""
        now = self._clock()
        with self._lock:
            expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class SeenSetRegistry:
    """Thread-safe registry of per-(user, operation) seen signature sets.

    Holds at most ``max_keys`` sets. The least recently used set is evicted
    first, and a set nobody asked for within ``ttl_seconds`` expires. An
    evicted learner simply starts over with an empty set.
    """

    def __init__(
        self,
        capacity: int = 100,
        *,
        max_keys: int = 10000,
        ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if max_keys <= 0:
            raise ValueError("max_keys must be positive")
        self.capacity = capacity
        self._sets = TTLCache(max_size=max_keys, ttl_seconds=ttl_seconds, clock=clock)
        self._lock = Lock()

    def get(self, user_id: str, operation: str) -> Set[str]:
        """Return the live set for ``(user_id, operation)``, creating it on first use.

        Every call renews the set's expiry.
        """
        key = (str(user_id), str(operation))
        with self._lock:
            seen = self._sets.get(key)
            if seen is None:
                seen = set()
            self._sets.set(key, seen)
            return seen

    def reset(self, user_id: str, operation: Optional[str] = None) -> int:
        """Drop the seen sets of a user (optionally one operation). Returns how many."""
        user_key = str(user_id)
        with self._lock:
            return self._sets.pop_where(
                lambda key: key[0] == user_key and (operation is None or key[1] == str(operation))
            )

    def sweep(self) -> int:
        """Drop expired sets and return how many were removed."""
        return self._sets.sweep()

    def __len__(self) -> int:
        return len(self._sets)
