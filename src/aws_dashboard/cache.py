from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Generic, Optional, Tuple, TypeVar

V = TypeVar("V")


class TTLCache(Generic[V]):
    """
    Thread-safe in-memory cache with a fixed time-to-live.

    Expiry is lazy: `get` treats a stale entry as absent but leaves it in
    place; entries are only replaced by `set` or dropped by `clear`.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._data: Dict[str, Tuple[V, float]] = {}

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def get(self, key: str) -> Tuple[Optional[V], bool]:
        with self._lock:
            entry = self._data.get(key)
        if entry is None:
            return None, False
        value, expires_at = entry
        if self._clock() > expires_at:
            return None, False
        return value, True

    def set(self, key: str, value: V) -> None:
        expires_at = self._clock() + self._ttl
        with self._lock:
            self._data[key] = (value, expires_at)

    def clear(self) -> None:
        with self._lock:
            self._data = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)
