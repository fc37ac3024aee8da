import math
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict


class RateLimiter:
    """In-memory rolling-window rate limiter per key (caller address).

    Not distributed; suitable for unit tests and single-process server.
    A limit of 0 disables throttling.
    """

    def __init__(self, limit: int = 0, window_seconds: int = 60, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        # store: key -> timestamps of accepted requests inside the window
        self._store: Dict[str, Deque[float]] = {}
        self.configure(limit, window_seconds)

    def configure(self, limit: int, window_seconds: int):
        if limit < 0 or window_seconds <= 0:
            raise ValueError("limit must be >= 0 and window_seconds > 0")
        with self._lock:
            self.limit = limit
            self.window_seconds = window_seconds
            self._store.clear()

    def _expire(self, hits: Deque[float], now: float):
        while hits and now - hits[0] >= self.window_seconds:
            hits.popleft()

    def allow(self, key: str) -> bool:
        if self.limit == 0:
            return True
        now = self._clock()
        with self._lock:
            hits = self._store.setdefault(key, deque())
            self._expire(hits, now)
            if len(hits) < self.limit:
                hits.append(now)
                return True
            return False

    def retry_after(self, key: str) -> int:
        """Seconds until the oldest hit for key leaves the window."""
        now = self._clock()
        with self._lock:
            hits = self._store.get(key)
            if not hits:
                return 0
            self._expire(hits, now)
            if len(hits) < self.limit:
                return 0
            return max(1, math.ceil(self.window_seconds - (now - hits[0])))

    def reset(self):
        with self._lock:
            self._store.clear()
