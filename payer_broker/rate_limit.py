"""Fixed-window rate limiting for authorization requests.

The counter state lives behind `RateLimitStore` so a multi-instance
deployment can swap the in-process store for a shared one.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional, Protocol, Tuple

from pydantic import BaseModel

from .constants import AUTHORIZATION_RATE_LIMIT, AUTHORIZATION_RATE_WINDOW_HOURS
from .utils import Clock, utcnow

logger = logging.getLogger(__name__)


class RateLimitDecision(BaseModel):
    allowed: bool
    count: int
    limit: int
    reset_at: datetime


class RateLimitStore(Protocol):
    async def hit(
        self, key: str, limit: int, window: timedelta, now: datetime
    ) -> RateLimitDecision:
        """Atomically check the key's counter and count this request if allowed."""
        ...

    async def reset(self, key: Optional[str] = None) -> None:
        ...


class InMemoryRateLimitStore:
    """Process-local counters keyed by string, guarded by a single lock."""

    def __init__(self):
        self._entries: Dict[str, Tuple[int, datetime]] = {}
        self._lock = asyncio.Lock()

    async def hit(
        self, key: str, limit: int, window: timedelta, now: datetime
    ) -> RateLimitDecision:
        async with self._lock:
            count, reset_at = self._entries.get(key, (0, now))
            if reset_at <= now:
                count, reset_at = 0, now + window

            if count >= limit:
                return RateLimitDecision(allowed=False, count=count, limit=limit, reset_at=reset_at)

            count += 1
            self._entries[key] = (count, reset_at)
            return RateLimitDecision(allowed=True, count=count, limit=limit, reset_at=reset_at)

    async def reset(self, key: Optional[str] = None) -> None:
        async with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)


class RateLimiter:
    """Allows `limit` hits per key inside a window that starts on the first hit."""

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        limit: int = AUTHORIZATION_RATE_LIMIT,
        window: timedelta = timedelta(hours=AUTHORIZATION_RATE_WINDOW_HOURS),
        clock: Clock = utcnow,
    ):
        self.store = store or InMemoryRateLimitStore()
        self.limit = limit
        self.window = window
        self._clock = clock

    async def hit(self, key: str) -> RateLimitDecision:
        decision = await self.store.hit(key, self.limit, self.window, self._clock())
        if not decision.allowed:
            logger.warning(f"Rate limit reached for {key} ({decision.count}/{self.limit})")
        return decision
