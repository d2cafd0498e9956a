"""TTL cache for computed match scores, keyed by (investor, company)."""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

V = TypeVar("V")

DEFAULT_TTL_SECONDS = 24 * 60 * 60


@dataclass
class _Entry(Generic[V]):
    value: V
    stored_at: float


class ScoreCache(Generic[V]):
    """Thread-safe pair cache with lazy expiry.

    Entries older than *ttl_seconds* are dropped when read; there is no
    background sweep. Concurrent writers for the same pair race and the
    last one wins.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[tuple[Any, Any], _Entry[V]] = {}

    def get(self, investor_id: Any, company_id: Any) -> V | None:
        key = (investor_id, company_id)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() - entry.stored_at > self.ttl_seconds:
                del self._entries[key]
                return None
            return entry.value

    def set(self, investor_id: Any, company_id: Any, value: V) -> None:
        with self._lock:
            self._entries[(investor_id, company_id)] = _Entry(value, self._clock())

    def invalidate(self, user_id: Any) -> int:
        """Drop every entry where *user_id* is either side of the pair."""
        with self._lock:
            stale = [k for k in self._entries if user_id in k]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
