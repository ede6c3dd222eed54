"""
Per-client request limits for the public EduChain routes.

Each client key keeps the timestamps of its requests inside a sliding
window. Keys whose window has emptied are swept out once per window, so
the table only holds clients seen in the last minute.
"""

import time
import threading
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Optional


@dataclass
class RateLimitResult:
    allowed: bool
    retry_after: Optional[float] = None


class RateLimiter:
    """Sliding-window limiter: at most ``rpm`` requests per key per window."""

    def __init__(self, rpm: int, window_seconds: int = 60):
        self._limit = max(1, rpm)
        self._window = window_seconds
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._next_sweep = 0.0

    def __len__(self) -> int:
        with self._lock:
            return len(self._hits)

    def _sweep(self, window_start: float) -> None:
        stale = [k for k, q in self._hits.items() if not q or q[-1] < window_start]
        for k in stale:
            del self._hits[k]

    def check(self, key: str, now: Optional[float] = None) -> RateLimitResult:
        """Record a request for ``key`` unless it is over the limit."""
        now = time.time() if now is None else now
        window_start = now - self._window

        with self._lock:
            if now >= self._next_sweep:
                self._sweep(window_start)
                self._next_sweep = now + self._window

            q = self._hits.setdefault(key, deque())
            while q and q[0] < window_start:
                q.popleft()

            if len(q) >= self._limit:
                return RateLimitResult(allowed=False, retry_after=max(0.0, q[0] + self._window - now))

            q.append(now)
            return RateLimitResult(allowed=True)
