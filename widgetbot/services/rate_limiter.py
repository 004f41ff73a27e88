"""Thread-safe in-memory sliding-window rate limiter.

Design decisions
────────────────
• One **deque of timestamps** per key; entries older than the window are
  pruned on every check, so a key holds at most ``max_requests`` stamps.
• Keys whose window has emptied are **dropped**, and every check sweeps
  the map once per window, so the number of keys tracks the callers seen
  in the last window rather than every caller ever seen.
• **threading.Lock** for thread safety (FastAPI can run sync work in a
  thread pool, and the CLI shares the same instance).
• Denied requests are **not** recorded, so a caller hammering the endpoint
  regains budget as soon as the window slides.
• Purely ephemeral and per-process.  Behind several workers the effective
  budget is ``workers × max_requests``; a shared store is the deployment's
  concern.

Usage in ChatOrchestrator
─────────────────────────
>>> limiter = SlidingWindowRateLimiter(max_requests=10, window_seconds=60)
>>> limiter.check("bot-123:203.0.113.7")
True
>>> limiter.remaining("bot-123:203.0.113.7")
9
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Callable

from widgetbot.config import RATE_LIMIT_REQUESTS, RATE_LIMIT_WINDOW_SECONDS

logger = logging.getLogger(__name__)


def rate_limit_key(bot_id: str, client_ip: str) -> str:
    """Key the budget per bot and caller."""
    return f"{bot_id}:{client_ip or 'unknown'}"


class SlidingWindowRateLimiter:
    """At most ``max_requests`` allowed calls per key in any ``window_seconds``."""

    def __init__(
        self,
        max_requests: int = RATE_LIMIT_REQUESTS,
        window_seconds: float = RATE_LIMIT_WINDOW_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_requests = max_requests
        self._window = window_seconds
        self._clock = clock
        # key → timestamps of allowed calls, oldest first
        self._hits: dict[str, deque[float]] = {}
        self._last_sweep = clock()
        self._lock = threading.Lock()

    def _prune(self, hits: deque[float], now: float) -> None:
        while hits and now - hits[0] >= self._window:
            hits.popleft()

    def _sweep(self, now: float) -> None:
        """Drop every key with no call left inside the window."""
        stale = [key for key, hits in self._hits.items() if not hits or now - hits[-1] >= self._window]
        for key in stale:
            del self._hits[key]
        if stale:
            logger.debug("Rate limiter dropped %d idle key(s)", len(stale))
        self._last_sweep = now

    def check(self, key: str) -> bool:
        """Record a call for *key*; ``True`` if allowed, ``False`` if over budget."""
        now = self._clock()
        with self._lock:
            if now - self._last_sweep >= self._window:
                self._sweep(now)

            hits = self._hits.pop(key, None) or deque()
            self._prune(hits, now)
            if len(hits) >= self._max_requests:
                if hits:
                    self._hits[key] = hits
                logger.info("Rate limit exceeded for %s (%d in %.0fs)", key, len(hits), self._window)
                return False

            hits.append(now)
            self._hits[key] = hits
            return True

    def remaining(self, key: str) -> int:
        """Calls still allowed for *key* in the current window (no recording)."""
        now = self._clock()
        with self._lock:
            hits = self._hits.get(key)
            if hits is None:
                return max(0, self._max_requests)
            self._prune(hits, now)
            if not hits:
                del self._hits[key]
            return max(0, self._max_requests - len(hits))

    def reset(self) -> None:
        """Forget every key."""
        with self._lock:
            self._hits.clear()
