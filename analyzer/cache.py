"""Get-or-compute cache with lazy freshness checks and one in-flight computation per key."""
from __future__ import annotations

import threading
from concurrent.futures import Future
from typing import Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class SingleFlightCache(Generic[K, V]):
    """Process-lifetime cache.

    Entries are never evicted in the background; `is_fresh` is evaluated on
    access. When an entry is missing or stale, the first caller runs
    `compute` and every concurrent caller for the same key waits on the same
    future. Failures propagate to all waiters and are not cached.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[K, V] = {}
        self._inflight: Dict[K, "Future[V]"] = {}

    def get(self, key: K) -> Optional[V]:
        with self._lock:
            return self._entries.get(key)

    def put(self, key: K, value: V) -> None:
        with self._lock:
            self._entries[key] = value

    def discard(self, key: K) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_or_compute(
        self,
        key: K,
        compute: Callable[[], V],
        is_fresh: Callable[[V], bool] = lambda _value: True,
    ) -> V:
        owner, future = self._claim(key, is_fresh)
        if not owner:
            return future.result()
        try:
            value = compute()
        except BaseException as exc:
            with self._lock:
                self._inflight.pop(key, None)
            future.set_exception(exc)
            raise
        with self._lock:
            self._entries[key] = value
            self._inflight.pop(key, None)
        future.set_result(value)
        return value

    def _claim(self, key: K, is_fresh: Callable[[V], bool]) -> Tuple[bool, "Future[V]"]:
        with self._lock:
            cached = self._entries.get(key)
            if cached is not None and is_fresh(cached):
                done: "Future[V]" = Future()
                done.set_result(cached)
                return False, done
            if cached is not None:
                del self._entries[key]
            pending = self._inflight.get(key)
            if pending is not None:
                return False, pending
            future: "Future[V]" = Future()
            self._inflight[key] = future
            return True, future
