# licensing/services/rate_limit.py
import threading
import time
from collections import deque
from typing import Callable

from fastapi import HTTPException, Request


class RateLimiter:
    """
    Allow at most ``limit`` hits per key within any ``window_seconds`` span.

    State lives in this process only. Running several instances multiplies
    the effective limit by the instance count. Idle keys are swept every
    ``sweep_every`` hits so the table stays bounded by recent clients.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: int,
        clock: Callable[[], float] = time.monotonic,
        sweep_every: int = 1000,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self.clock = clock
        self.sweep_every = sweep_every
        self._hits: dict[str, deque] = {}
        self._hits_since_sweep = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._hits)

    def hit(self, key: str) -> bool:
        now = self.clock()
        cutoff = now - self.window_seconds
        with self._lock:
            self._hits_since_sweep += 1
            if self._hits_since_sweep >= self.sweep_every:
                self._sweep(cutoff)
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= self.limit:
                return False
            hits.append(now)
            return True

    def sweep(self) -> int:
        """Drop keys with no hits inside the window. Returns how many were dropped."""
        cutoff = self.clock() - self.window_seconds
        with self._lock:
            return self._sweep(cutoff)

    def _sweep(self, cutoff: float) -> int:
        stale = [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for key in stale:
            del self._hits[key]
        self._hits_since_sweep = 0
        return len(stale)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
            self._hits_since_sweep = 0


def _client_identifier(request: Request) -> str:
    # the peer address; X-Forwarded-For is caller-controlled unless a proxy rewrites the peer
    if request.client and request.client.host:
        return request.client.host
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return "unknown"


def rate_limit(prefix: str):
    """FastAPI dependency enforcing the app's RateLimiter per client IP."""

    def _dependency(request: Request):
        limiter = getattr(request.app.state, "rate_limiter", None)
        if limiter is None:
            return
        if not limiter.hit(f"{prefix}:{_client_identifier(request)}"):
            raise HTTPException(status_code=429, detail="Too many requests. Try again later.")

    return _dependency
