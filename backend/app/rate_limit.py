from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from threading import Lock
from typing import Callable

from fastapi import HTTPException


@dataclass(frozen=True)
class Rule:
    name: str
    limit: int
    window_seconds: int
    detail: str = "Too many requests"


LOGIN = Rule("login", limit=10, window_seconds=10 * 60, detail="Too many login attempts")
PURCHASE = Rule("purchase", limit=20, window_seconds=10 * 60, detail="Too many purchase attempts")


class RateLimiter:
    """
    Sliding-window limiter kept in process memory.

    Limits are per worker; a multi-instance deployment needs a shared store.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = Lock()
        self._events: dict[tuple[str, str], deque[float]] = defaultdict(deque)

    def hit(self, rule: Rule, subject: str | int) -> None:
        """Record one attempt by `subject`; 429 with Retry-After once the rule's budget is spent."""
        now = self._clock()
        win_start = now - float(rule.window_seconds)
        with self._lock:
            q = self._events[(rule.name, str(subject))]
            while q and q[0] <= win_start:
                q.popleft()
            if len(q) >= int(rule.limit):
                retry_after = max(1, math.ceil(q[0] + rule.window_seconds - now))
                raise HTTPException(status_code=429, detail=rule.detail, headers={"Retry-After": str(retry_after)})
            q.append(now)

    def reset(self) -> None:
        with self._lock:
            self._events.clear()


limiter = RateLimiter()
