"""Per-feed request spacing with exponential backoff on throttling."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class _FeedState:
    next_allowed_at: float = 0.0
    backoff: float = 0.0
    lock: Optional[asyncio.Lock] = None


class RateLimiter:
    """Enforces a minimum interval between calls to each feed.

    After a throttling or failed response the next call to that feed is
    pushed out by a backoff that doubles on every consecutive penalty, up to
    a cap, and resets on success.
    """

    def __init__(
        self,
        min_interval: float = 1.2,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.min_interval = min_interval
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._clock = clock
        self._sleep = sleep
        self._feeds: dict[str, _FeedState] = {}

    def _state(self, key: str) -> _FeedState:
        state = self._feeds.get(key)
        if state is None:
            state = _FeedState(lock=asyncio.Lock())
            self._feeds[key] = state
        return state

    async def acquire(self, key: str) -> None:
        """Wait until a call to the feed is allowed, then reserve the slot."""
        state = self._state(key)
        async with state.lock:
            wait = state.next_allowed_at - self._clock()
            if wait > 0:
                logger.debug(f"Rate limiter: waiting {wait:.2f}s before calling {key}")
                await self._sleep(wait)
            state.next_allowed_at = self._clock() + self.min_interval

    def penalize(self, key: str, retry_after: Optional[float] = None) -> float:
        """Record a throttled or failed call and push out the next one.

        Returns:
            The delay applied before the next call
        """
        state = self._state(key)
        if state.backoff <= 0:
            state.backoff = self.backoff_base
        else:
            state.backoff = min(state.backoff * 2, self.backoff_max)
        delay = max(state.backoff, retry_after or 0.0)
        delay = min(delay, self.backoff_max)
        state.next_allowed_at = max(state.next_allowed_at, self._clock() + delay)
        logger.info(f"Backing off {key} for {delay:.1f}s")
        return delay

    def succeeded(self, key: str) -> None:
        self._state(key).backoff = 0.0

    def current_backoff(self, key: str) -> float:
        return self._state(key).backoff
