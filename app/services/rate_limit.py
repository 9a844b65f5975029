from __future__ import annotations

import time
from collections import deque
from typing import Callable, Deque, Dict


class SlidingWindowRateLimiter:
    """Per-caller request cap over a sliding time window.

    Accessed only from the event loop, so no locking.
    """

    def __init__(self, limit: int = 20, window: float = 60.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.limit = limit
        self.window = window
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}

    def allow(self, caller: str) -> bool:
        now = self._clock()
        hits = self._hits.setdefault(caller, deque())
        while hits and now - hits[0] >= self.window:
            hits.popleft()
        if len(hits) >= self.limit:
            return False
        hits.append(now)
        self.prune(now)
        return True

    def prune(self, now: float | None = None) -> int:
        """Drop callers with no hit inside the current window."""

        now = self._clock() if now is None else now
        stale = [caller for caller, hits in self._hits.items() if not hits or now - hits[-1] >= self.window]
        for caller in stale:
            del self._hits[caller]
        return len(stale)

    def __len__(self) -> int:
        return len(self._hits)
