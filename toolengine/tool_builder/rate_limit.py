"""
Client-side sliding-window rate limiter, one per (tenant, tool).

Limiters live in a LimiterPool so a tool's window survives registry rebuilds;
a limiter is replaced only when that tool's own rateLimit changes.
"""

import asyncio
import time
from collections import deque
from typing import Deque, Dict, Optional, Tuple

from toolengine.tool_builder.models import RateLimitPolicy


class SlidingWindowLimiter:
    """Allows at most `requests` acquisitions in any `window` seconds; callers over the limit wait."""

    def __init__(self, requests: int, window: float):
        self.requests = requests
        self.window = window
        self._stamps: Deque[float] = deque()
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        while self._stamps and now - self._stamps[0] >= self.window:
            self._stamps.popleft()

    async def acquire(self) -> float:
        """Take a slot, suspending until one frees. Returns seconds spent waiting."""
        waited = 0.0
        async with self._lock:
            while True:
                now = time.monotonic()
                self._prune(now)
                if len(self._stamps) < self.requests:
                    self._stamps.append(now)
                    return waited
                delay = self.window - (now - self._stamps[0])
                await asyncio.sleep(max(delay, 0.001))
                waited += delay

    def matches(self, policy: RateLimitPolicy) -> bool:
        return self.requests == policy.requests and self.window == policy.window

    @property
    def in_window(self) -> int:
        self._prune(time.monotonic())
        return len(self._stamps)


class LimiterPool:
    """Limiters keyed by (tenant, tool id), shared by every registry built for the tenant."""

    def __init__(self):
        self._limiters: Dict[Tuple[str, str], SlidingWindowLimiter] = {}

    def limiter_for(self, tenant_id: str, tool_id: str,
                    policy: Optional[RateLimitPolicy]) -> Optional[SlidingWindowLimiter]:
        key = (tenant_id, tool_id)
        if policy is None:
            self._limiters.pop(key, None)
            return None
        limiter = self._limiters.get(key)
        if limiter is None or not limiter.matches(policy):
            limiter = SlidingWindowLimiter(policy.requests, policy.window)
            self._limiters[key] = limiter
        return limiter

    def discard(self, tenant_id: str, tool_id: str) -> None:
        self._limiters.pop((tenant_id, tool_id), None)

    def tracked(self) -> int:
        return len(self._limiters)
