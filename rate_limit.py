from __future__ import annotations

import math
import os
import time
from collections import OrderedDict, deque
from threading import Lock
from typing import Callable, Deque, Optional

from fastapi import HTTPException

from settings import settings

DEFAULT_MAX_KEYS = 10_000


class InMemoryRateLimiter:
    """
    Sliding-window limiter. Timestamps older than the window are dropped on
    every check; when more than max_keys keys are tracked the least recently
    used key is evicted.
    """

    def __init__(self, *, max_keys: int = DEFAULT_MAX_KEYS, clock: Callable[[], float] = time.monotonic):
        self.max_keys = max_keys
        self._clock = clock
        self._lock = Lock()
        self._hits: "OrderedDict[str, Deque[float]]" = OrderedDict()

    def __len__(self) -> int:
        with self._lock:
            return len(self._hits)

    def check(self, key: str, limit: int, window_seconds: int) -> tuple[bool, int]:
        """Returns (allowed, retry_after_seconds)."""
        now = self._clock()
        with self._lock:
            q = self._hits.get(key)
            if q is None:
                q = deque()
                self._hits[key] = q
            self._hits.move_to_end(key)

            while q and (now - q[0]) >= window_seconds:
                q.popleft()

            if len(q) >= limit:
                retry_after = max(1, math.ceil(window_seconds - (now - q[0])))
                return False, retry_after

            q.append(now)
            while len(self._hits) > self.max_keys:
                self._hits.popitem(last=False)
            return True, 0

    def allow(self, key: str, limit: int, window_seconds: int) -> bool:
        allowed, _ = self.check(key, limit, window_seconds)
        return allowed


_limiter = InMemoryRateLimiter()


def rate_limit_enabled() -> bool:
    raw = os.getenv("RATE_LIMIT_ENABLED")
    if raw is None:
        return bool(settings.RATE_LIMIT_ENABLED)
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def operator_limit_per_min() -> int:
    raw = os.getenv("RATE_LIMIT_OPERATOR_PER_MIN")
    try:
        return max(1, int(raw)) if raw is not None else settings.RATE_LIMIT_OPERATOR_PER_MIN
    except ValueError:
        return settings.RATE_LIMIT_OPERATOR_PER_MIN


def rate_limit_or_429(
    *,
    key: str,
    limit: int,
    window_seconds: int,
    limiter: Optional[InMemoryRateLimiter] = None,
) -> None:
    allowed, retry_after = (limiter or _limiter).check(key, limit, window_seconds)
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail="RATE_LIMITED",
            headers={"Retry-After": str(retry_after)},
        )
